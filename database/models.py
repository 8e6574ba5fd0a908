from datetime import datetime
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Text, Boolean, UniqueConstraint, Index
from sqlalchemy.orm import declarative_base, relationship
from enum import Enum

Base = declarative_base()


class AuctionType(str, Enum):
    TIME_BASED = "time_based"
    BUY_NOW = "buy_now"
    DUTCH = "dutch"
    SEALED = "sealed"


class AuctionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"
    SOLD = "sold"


class CloseReason(str, Enum):
    WON = "won"
    SOLD = "sold"
    NO_BIDS = "no_bids"
    RESERVE_NOT_MET = "reserve_not_met"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"


class TransactionKind(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


TERMINAL_STATUSES = (
    AuctionStatus.ENDED.value,
    AuctionStatus.CANCELLED.value,
    AuctionStatus.SOLD.value,
)


class Auction(Base):
    __tablename__ = "auctions"

    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(String, nullable=False, index=True)
    product_ref = Column(String, nullable=False)
    title = Column(String, nullable=False)
    auction_type = Column(String, nullable=False, default=AuctionType.TIME_BASED.value)

    starting_price = Column(Numeric(12, 2), nullable=False)
    current_price = Column(Numeric(12, 2), nullable=False)
    reserve_price = Column(Numeric(12, 2), nullable=True)
    buy_now_price = Column(Numeric(12, 2), nullable=True)
    dutch_start_price = Column(Numeric(12, 2), nullable=True)
    dutch_end_price = Column(Numeric(12, 2), nullable=True)
    dutch_decrement_amount = Column(Numeric(12, 2), nullable=True)
    dutch_decrement_interval = Column(Integer, nullable=True)  # seconds
    min_bid_increment = Column(Numeric(12, 2), nullable=False, default=1)
    max_bids_per_user = Column(Integer, nullable=True)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False, index=True)
    auto_extend_minutes = Column(Integer, nullable=False, default=5)
    extension_count = Column(Integer, nullable=False, default=0)
    max_extensions = Column(Integer, nullable=True)  # falls back to DEFAULT_MAX_EXTENSIONS

    status = Column(String, nullable=False, default=AuctionStatus.DRAFT.value, index=True)
    close_reason = Column(String, nullable=True)
    winner_id = Column(String, nullable=True)
    winning_bid_id = Column(Integer, nullable=True)
    order_id = Column(Integer, nullable=True)
    final_price = Column(Numeric(12, 2), nullable=True)
    settlement_attempts = Column(Integer, nullable=False, default=0)
    needs_reconciliation = Column(Boolean, nullable=False, default=False, index=True)
    reconciliation_reason = Column(Text, nullable=True)
    starting_soon_notified = Column(Boolean, nullable=False, default=False)

    view_count = Column(Integer, nullable=False, default=0)
    bid_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    bids = relationship("Bid", back_populates="auction", order_by="Bid.id")
    watchers = relationship("AuctionWatcher", back_populates="auction")


class Bid(Base):
    __tablename__ = "auction_bids"
    __table_args__ = (
        Index("ix_auction_bids_auction_winning", "auction_id", "is_winning"),
    )

    # Autoincrement id doubles as the bid sequence number
    id = Column(Integer, primary_key=True, index=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=False, index=True)
    bidder_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    max_auto_bid = Column(Numeric(12, 2), nullable=True)
    is_sealed = Column(Boolean, nullable=False, default=False)
    is_winning = Column(Boolean, nullable=False, default=False)
    is_auto_bid = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    auction = relationship("Auction", back_populates="bids")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, nullable=False, unique=True)
    # One order per auction, enforced by the database
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=False, unique=True)
    buyer_id = Column(String, nullable=False, index=True)
    seller_id = Column(String, nullable=False, index=True)
    product_ref = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class WalletAccount(Base):
    __tablename__ = "wallet_accounts"

    user_id = Column(String, primary_key=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)  # negative for debits
    kind = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False, unique=True)
    reference = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class AuctionWatcher(Base):
    __tablename__ = "auction_watchers"
    __table_args__ = (
        UniqueConstraint("auction_id", "user_id", name="uq_auction_watchers_auction_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    auction_id = Column(Integer, ForeignKey("auctions.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    auction = relationship("Auction", back_populates="watchers")
