from fastapi import FastAPI, Depends, HTTPException, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional
import uuid
import jwt
import logging

from database import get_db, Auction, AuctionStatus, AuctionWatcher, TERMINAL_STATUSES
from . import config
from .bidding import BiddingEngine
from .clock import system_clock, to_naive_utc
from .errors import AuctionError, ConcurrentUpdate, InvariantViolation, NotFound, NotOwner
from .lifecycle import AuctionLifecycle
from .models import (
    AuthRequest, AuthResponse, CreateAuctionRequest, AuctionResponse, BidRequest, BidResponse,
    BidHistoryItem, BuyNowRequest, PurchaseResponse, SettlementResponse, WalletResponse,
    DepositRequest, WatchResponse, UpdateAuctionRequest,
)
from .notifier import build_notifier
from .pricing import effective_price
from .settlement import SettlementEngine
from .store import AuctionStore, BidLedger
from .wallet import WalletLedger

logger = logging.getLogger(__name__)

app = FastAPI(title="Auction Engine")
SECRET_KEY = config.SECRET_KEY

notifier = build_notifier()
store = AuctionStore()
ledger = BidLedger()
wallet = WalletLedger()
lifecycle = AuctionLifecycle(notifier=notifier)
bidding = BiddingEngine(notifier=notifier)
settlement = SettlementEngine(notifier=notifier, wallet=wallet)


@app.exception_handler(AuctionError)
async def auction_error_handler(request: Request, exc: AuctionError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(ConcurrentUpdate)
async def concurrent_update_handler(request: Request, exc: ConcurrentUpdate):
    return JSONResponse(
        status_code=503,
        content={"error": ConcurrentUpdate.kind, "detail": str(exc), "retryable": True}
    )


@app.exception_handler(OperationalError)
async def database_unavailable_handler(request: Request, exc: OperationalError):
    logger.error(f"Database unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "StoreUnavailable", "detail": "Database unavailable, please retry", "retryable": True}
    )


@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    return JSONResponse(
        status_code=500,
        content={"error": InvariantViolation.kind, "detail": str(exc), "retryable": False}
    )


def verify_token(authorization: str = Header(None)) -> str:
    """Verify and extract token from Authorization header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")

    token = authorization.split(" ")[1]
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


def _auction_response(auction: Auction) -> AuctionResponse:
    """Serialize an auction with its current (lazily decayed, for Dutch) price."""
    response = AuctionResponse.model_validate(auction)
    response.current_price = effective_price(auction, system_clock.now())
    return response


def _get_auction(db: Session, auction_id: int) -> Auction:
    auction = store.get(db, auction_id)
    if not auction:
        raise NotFound(f"Auction {auction_id} not found", auction_id=auction_id)
    return auction


@app.post("/auth", response_model=AuthResponse)
def auth(request: AuthRequest):
    """Issue an API token; the username becomes the caller's user id."""
    # Identity is out of scope here: any username/password receives a token
    token = jwt.encode(
        {"sub": request.username, "exp": datetime.utcnow() + timedelta(days=config.TOKEN_TTL_DAYS)},
        SECRET_KEY,
        algorithm="HS256"
    )
    return AuthResponse(token=token)


@app.post("/auctions", response_model=AuctionResponse, status_code=201)
def create_auction(request: CreateAuctionRequest, db: Session = Depends(get_db),
                   user_id: str = Depends(verify_token)):
    """Create a draft auction owned by the caller."""
    auction = lifecycle.create_auction(
        db,
        seller_id=user_id,
        product_ref=request.product_ref,
        title=request.title,
        auction_type=request.auction_type,
        starting_price=request.starting_price,
        start_time=to_naive_utc(request.start_time),
        end_time=to_naive_utc(request.end_time),
        min_bid_increment=request.min_bid_increment,
        reserve_price=request.reserve_price,
        buy_now_price=request.buy_now_price,
        dutch_start_price=request.dutch_start_price,
        dutch_end_price=request.dutch_end_price,
        dutch_decrement_amount=request.dutch_decrement_amount,
        dutch_decrement_interval=request.dutch_decrement_interval,
        max_bids_per_user=request.max_bids_per_user,
        auto_extend_minutes=request.auto_extend_minutes,
        max_extensions=request.max_extensions,
    )
    return _auction_response(auction)


@app.get("/auctions", response_model=List[AuctionResponse])
def list_auctions(status: Optional[AuctionStatus] = None, seller_id: Optional[str] = None,
                  db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    """
    List auctions. Without filters: active auctions that have not yet reached
    their end_time, soonest first. Drafts are only listed for their seller.
    """
    auctions = store.list_auctions(
        db, system_clock.now(), status=status.value if status else None, seller_id=seller_id
    )
    visible = [a for a in auctions if a.status != AuctionStatus.DRAFT.value or a.seller_id == user_id]
    return [_auction_response(a) for a in visible]


@app.get("/auctions/{auction_id}", response_model=AuctionResponse)
def get_auction(auction_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    """Get one auction; counts as a view."""
    _get_auction(db, auction_id)
    store.increment_views(db, auction_id)
    db.commit()
    return _auction_response(_get_auction(db, auction_id))


@app.patch("/auctions/{auction_id}", response_model=AuctionResponse)
def update_auction(auction_id: int, request: UpdateAuctionRequest, db: Session = Depends(get_db),
                   user_id: str = Depends(verify_token)):
    """Edit a draft auction. Only the fields present in the body change."""
    changes = request.model_dump(exclude_unset=True)
    for name in ("start_time", "end_time"):
        if changes.get(name) is not None:
            changes[name] = to_naive_utc(changes[name])
    auction = lifecycle.update_draft(db, auction_id, user_id, changes)
    return _auction_response(auction)


@app.get("/auctions/{auction_id}/bids", response_model=List[BidHistoryItem])
def list_bids(auction_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    """Bid history in admission order. Sealed amounts stay hidden from other users until close."""
    auction = _get_auction(db, auction_id)
    hide_sealed = auction.status not in TERMINAL_STATUSES
    items = []
    for bid in ledger.bids_for(db, auction_id):
        item = BidHistoryItem.model_validate(bid)
        if hide_sealed and bid.is_sealed and bid.bidder_id != user_id:
            item.amount = None
        items.append(item)
    return items


@app.post("/auctions/{auction_id}/publish", response_model=AuctionResponse)
def publish_auction(auction_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    return _auction_response(lifecycle.publish(db, auction_id, user_id))


@app.post("/auctions/{auction_id}/cancel", response_model=AuctionResponse)
def cancel_auction(auction_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    return _auction_response(lifecycle.cancel(db, auction_id, user_id))


@app.post("/auctions/{auction_id}/bids", response_model=BidResponse, status_code=201)
def place_bid(auction_id: int, request: BidRequest, db: Session = Depends(get_db),
              user_id: str = Depends(verify_token)):
    """Place a bid, optionally with an auto-bid ceiling."""
    outcome = bidding.place_bid(db, auction_id, user_id, request.amount, request.max_auto_bid)
    return BidResponse.model_validate(outcome)


@app.post("/auctions/{auction_id}/buy-now", response_model=PurchaseResponse, status_code=201)
def buy_now(auction_id: int, request: BuyNowRequest, db: Session = Depends(get_db),
            user_id: str = Depends(verify_token)):
    """Buy outright at the buy-now (or current Dutch) price the caller saw."""
    outcome = settlement.buy_now(db, auction_id, user_id, request.expected_price)
    return PurchaseResponse.model_validate(outcome)


@app.post("/auctions/{auction_id}/settle", response_model=SettlementResponse)
def settle_auction(auction_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    """
    Settle an expired auction now instead of waiting for the sweep. Idempotent.

    Only the seller may trigger it; everyone else relies on the sweep worker.
    """
    auction = _get_auction(db, auction_id)
    if auction.seller_id != user_id:
        raise NotOwner(f"Only the seller can settle auction {auction_id}", auction_id=auction_id)
    outcome = settlement.settle_on_expiry(db, auction_id)
    return SettlementResponse.model_validate(outcome)


@app.post("/auctions/{auction_id}/watch", response_model=WatchResponse)
def watch_auction(auction_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    _get_auction(db, auction_id)
    existing = db.query(AuctionWatcher).filter(
        AuctionWatcher.auction_id == auction_id,
        AuctionWatcher.user_id == user_id
    ).first()
    if not existing:
        db.add(AuctionWatcher(auction_id=auction_id, user_id=user_id))
        db.commit()
    return WatchResponse(auction_id=auction_id, watching=True)


@app.delete("/auctions/{auction_id}/watch", response_model=WatchResponse)
def unwatch_auction(auction_id: int, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    _get_auction(db, auction_id)
    db.query(AuctionWatcher).filter(
        AuctionWatcher.auction_id == auction_id,
        AuctionWatcher.user_id == user_id
    ).delete(synchronize_session=False)
    db.commit()
    return WatchResponse(auction_id=auction_id, watching=False)


@app.get("/wallet", response_model=WalletResponse)
def get_wallet(db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    return WalletResponse(user_id=user_id, balance=wallet.balance(db, user_id))


@app.post("/wallet/deposit", response_model=WalletResponse)
def deposit(request: DepositRequest, db: Session = Depends(get_db), user_id: str = Depends(verify_token)):
    """Credit the caller's wallet. Development stand-in for a payment provider top-up."""
    if request.amount <= Decimal("0"):
        raise HTTPException(status_code=422, detail="Deposit amount must be greater than zero")
    wallet.credit(db, user_id, request.amount, idempotency_key=f"deposit:{uuid.uuid4().hex}", reference="deposit")
    db.commit()
    logger.info(f"Deposited {request.amount} to {user_id}")
    return WalletResponse(user_id=user_id, balance=wallet.balance(db, user_id))
