from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import Optional

from database import AuctionType


class AuthRequest(BaseModel):
    username: str
    password: str


class AuthResponse(BaseModel):
    token: str


class CreateAuctionRequest(BaseModel):
    product_ref: str
    title: str
    auction_type: AuctionType = AuctionType.TIME_BASED
    starting_price: Decimal
    start_time: datetime
    end_time: datetime
    min_bid_increment: Decimal = Decimal("1")
    reserve_price: Optional[Decimal] = None
    buy_now_price: Optional[Decimal] = None
    dutch_start_price: Optional[Decimal] = None
    dutch_end_price: Optional[Decimal] = None
    dutch_decrement_amount: Optional[Decimal] = None
    dutch_decrement_interval: Optional[int] = None
    max_bids_per_user: Optional[int] = None
    auto_extend_minutes: int = 5
    max_extensions: Optional[int] = None


class UpdateAuctionRequest(BaseModel):
    """Partial edit of a draft; omitted fields keep their value, null clears an optional one."""
    product_ref: Optional[str] = None
    title: Optional[str] = None
    auction_type: Optional[AuctionType] = None
    starting_price: Optional[Decimal] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    min_bid_increment: Optional[Decimal] = None
    reserve_price: Optional[Decimal] = None
    buy_now_price: Optional[Decimal] = None
    dutch_start_price: Optional[Decimal] = None
    dutch_end_price: Optional[Decimal] = None
    dutch_decrement_amount: Optional[Decimal] = None
    dutch_decrement_interval: Optional[int] = None
    max_bids_per_user: Optional[int] = None
    auto_extend_minutes: Optional[int] = None
    max_extensions: Optional[int] = None


class AuctionResponse(BaseModel):
    id: int
    seller_id: str
    product_ref: str
    title: str
    auction_type: str
    status: str
    starting_price: Decimal
    current_price: Decimal
    reserve_price: Optional[Decimal]
    buy_now_price: Optional[Decimal]
    dutch_start_price: Optional[Decimal]
    dutch_end_price: Optional[Decimal]
    dutch_decrement_amount: Optional[Decimal]
    dutch_decrement_interval: Optional[int]
    min_bid_increment: Decimal
    max_bids_per_user: Optional[int]
    start_time: datetime
    end_time: datetime
    auto_extend_minutes: int
    extension_count: int
    bid_count: int
    view_count: int
    winner_id: Optional[str]
    winning_bid_id: Optional[int]
    order_id: Optional[int]
    final_price: Optional[Decimal]
    close_reason: Optional[str]
    needs_reconciliation: bool

    model_config = {"from_attributes": True}


class BidRequest(BaseModel):
    amount: Decimal
    max_auto_bid: Optional[Decimal] = None


class BidResponse(BaseModel):
    bid_id: int
    auction_id: int
    current_price: Decimal
    winning_bidder_id: Optional[str]
    end_time: datetime
    extended: bool
    auto_bids: int
    sealed: bool

    model_config = {"from_attributes": True}


class BidHistoryItem(BaseModel):
    id: int
    bidder_id: str
    amount: Optional[Decimal]  # None while a sealed bid is hidden from the caller
    is_sealed: bool
    is_winning: bool
    is_auto_bid: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class BuyNowRequest(BaseModel):
    expected_price: Decimal


class PurchaseResponse(BaseModel):
    auction_id: int
    order_id: int
    order_number: str
    amount: Decimal
    bid_id: int

    model_config = {"from_attributes": True}


class SettlementResponse(BaseModel):
    auction_id: int
    status: str
    close_reason: Optional[str]
    winner_id: Optional[str]
    winning_bid_id: Optional[int]
    order_id: Optional[int]
    order_number: Optional[str]
    amount: Optional[Decimal]
    settled_now: bool
    pending: bool

    model_config = {"from_attributes": True}


class WalletResponse(BaseModel):
    user_id: str
    balance: Decimal


class DepositRequest(BaseModel):
    amount: Decimal


class WatchResponse(BaseModel):
    auction_id: int
    watching: bool
