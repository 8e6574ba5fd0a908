"""
Auction lifecycle: draft -> active -> {ended, cancelled, sold}.

ended/cancelled/sold are terminal. Settlement (server/settlement.py) performs
the ended/sold transitions; this module covers creation, draft edits, publish
and cancel.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from database import Auction, AuctionStatus, AuctionType, CloseReason
from .clock import Clock, system_clock
from .errors import AuctionClosed, InvalidAuction, NotFound, NotOwner
from .notifier import EventType, Notifier, LoggingNotifier
from .store import AuctionStore, BidLedger, run_with_cas_retry

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    AuctionStatus.DRAFT.value: {AuctionStatus.ACTIVE.value},
    AuctionStatus.ACTIVE.value: {
        AuctionStatus.ENDED.value,
        AuctionStatus.CANCELLED.value,
        AuctionStatus.SOLD.value,
    },
}


def check_transition(auction: Auction, target: AuctionStatus) -> None:
    """Raise AuctionClosed unless auction may move to target."""
    if target.value not in ALLOWED_TRANSITIONS.get(auction.status, set()):
        raise AuctionClosed(
            f"Auction {auction.id} cannot move from {auction.status} to {target.value}",
            auction_id=auction.id
        )


def is_open_for_trading(auction: Auction, now: datetime) -> bool:
    """Active and inside [start_time, end_time)."""
    return (
        auction.status == AuctionStatus.ACTIVE.value
        and auction.start_time <= now < auction.end_time
    )


def _positive(value, name: str) -> Decimal:
    if value is None or Decimal(value) <= 0:
        raise InvalidAuction(f"{name} must be greater than zero")
    return Decimal(value)


def validate_pricing(auction_type: AuctionType, starting_price: Decimal, min_bid_increment: Decimal,
                     buy_now_price: Optional[Decimal], reserve_price: Optional[Decimal],
                     dutch_start_price: Optional[Decimal], dutch_end_price: Optional[Decimal],
                     dutch_decrement_amount: Optional[Decimal],
                     dutch_decrement_interval: Optional[int]) -> None:
    if starting_price is None or Decimal(starting_price) < 0:
        raise InvalidAuction("starting_price must not be negative")
    _positive(min_bid_increment, "min_bid_increment")

    if auction_type == AuctionType.BUY_NOW:
        _positive(buy_now_price, "buy_now_price")
    if buy_now_price is not None and Decimal(buy_now_price) < Decimal(starting_price):
        raise InvalidAuction("buy_now_price must not be below starting_price")
    if reserve_price is not None and Decimal(reserve_price) < 0:
        raise InvalidAuction("reserve_price must not be negative")

    if auction_type == AuctionType.DUTCH:
        start = _positive(dutch_start_price, "dutch_start_price")
        if dutch_end_price is None or Decimal(dutch_end_price) < 0:
            raise InvalidAuction("dutch_end_price must not be negative")
        if Decimal(dutch_end_price) > start:
            raise InvalidAuction("dutch_end_price must not exceed dutch_start_price")
        _positive(dutch_decrement_amount, "dutch_decrement_amount")
        if not dutch_decrement_interval or dutch_decrement_interval <= 0:
            raise InvalidAuction("dutch_decrement_interval must be a positive number of seconds")


EDITABLE_FIELDS = (
    "product_ref", "title", "auction_type", "starting_price", "min_bid_increment", "reserve_price",
    "buy_now_price", "dutch_start_price", "dutch_end_price", "dutch_decrement_amount",
    "dutch_decrement_interval", "max_bids_per_user", "start_time", "end_time",
    "auto_extend_minutes", "max_extensions",
)
REQUIRED_FIELDS = (
    "product_ref", "title", "auction_type", "starting_price", "min_bid_increment",
    "start_time", "end_time", "auto_extend_minutes",
)


def check_settings(settings: dict) -> AuctionType:
    """Validate a full set of auction settings; returns the parsed auction type."""
    for name in REQUIRED_FIELDS:
        if settings.get(name) is None:
            raise InvalidAuction(f"{name} is required")
    try:
        auction_type = AuctionType(settings["auction_type"])
    except ValueError:
        raise InvalidAuction(f"Unknown auction type {settings['auction_type']!r}")
    if settings["end_time"] <= settings["start_time"]:
        raise InvalidAuction("end_time must be after start_time")
    if settings["auto_extend_minutes"] < 0:
        raise InvalidAuction("auto_extend_minutes must not be negative")
    if settings.get("max_bids_per_user") is not None and settings["max_bids_per_user"] <= 0:
        raise InvalidAuction("max_bids_per_user must be positive")
    validate_pricing(
        auction_type, settings["starting_price"], settings["min_bid_increment"],
        settings.get("buy_now_price"), settings.get("reserve_price"),
        settings.get("dutch_start_price"), settings.get("dutch_end_price"),
        settings.get("dutch_decrement_amount"), settings.get("dutch_decrement_interval"),
    )
    return auction_type


def opening_price(auction_type: AuctionType, settings: dict) -> Decimal:
    if auction_type == AuctionType.DUTCH:
        return settings["dutch_start_price"]
    if auction_type == AuctionType.BUY_NOW:
        return settings["buy_now_price"]
    return settings["starting_price"]


class AuctionLifecycle:
    """Create, edit, publish and cancel auctions."""

    def __init__(self, notifier: Optional[Notifier] = None, clock: Optional[Clock] = None):
        self.store = AuctionStore()
        self.ledger = BidLedger()
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or system_clock

    def create_auction(self, db: Session, seller_id: str, product_ref: str, title: str,
                       auction_type: AuctionType, starting_price: Decimal, start_time: datetime,
                       end_time: datetime, min_bid_increment: Decimal = Decimal("1"),
                       reserve_price: Optional[Decimal] = None, buy_now_price: Optional[Decimal] = None,
                       dutch_start_price: Optional[Decimal] = None, dutch_end_price: Optional[Decimal] = None,
                       dutch_decrement_amount: Optional[Decimal] = None,
                       dutch_decrement_interval: Optional[int] = None,
                       max_bids_per_user: Optional[int] = None, auto_extend_minutes: int = 5,
                       max_extensions: Optional[int] = None) -> Auction:
        """Create a draft auction after validating its pricing parameters."""
        settings = dict(
            product_ref=product_ref,
            title=title,
            auction_type=auction_type,
            starting_price=starting_price,
            min_bid_increment=min_bid_increment,
            reserve_price=reserve_price,
            buy_now_price=buy_now_price,
            dutch_start_price=dutch_start_price,
            dutch_end_price=dutch_end_price,
            dutch_decrement_amount=dutch_decrement_amount,
            dutch_decrement_interval=dutch_decrement_interval,
            max_bids_per_user=max_bids_per_user,
            start_time=start_time,
            end_time=end_time,
            auto_extend_minutes=auto_extend_minutes,
            max_extensions=max_extensions,
        )
        parsed_type = check_settings(settings)
        settings["auction_type"] = parsed_type.value
        auction = Auction(
            seller_id=seller_id,
            current_price=opening_price(parsed_type, settings),
            status=AuctionStatus.DRAFT.value,
            **settings
        )
        db.add(auction)
        db.commit()
        db.refresh(auction)
        logger.info(f"Auction {auction.id} created by {seller_id} ({parsed_type.value})")
        return auction

    def update_draft(self, db: Session, auction_id: int, actor_id: str, changes: dict) -> Auction:
        """
        Edit a draft before it is published.

        changes maps field names from EDITABLE_FIELDS to new values; the merged
        settings are validated as a whole, the same way create_auction does.
        """
        unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
        if unknown:
            raise InvalidAuction(f"Fields cannot be edited: {', '.join(unknown)}", auction_id=auction_id)

        def _update():
            auction = self._load_owned(db, auction_id, actor_id)
            if auction.status != AuctionStatus.DRAFT.value:
                raise AuctionClosed(
                    f"Auction {auction_id} is {auction.status}; only drafts can be edited", auction_id=auction_id
                )
            settings = {name: getattr(auction, name) for name in EDITABLE_FIELDS}
            settings.update(changes)
            parsed_type = check_settings(settings)
            values = dict(changes)
            values["auction_type"] = parsed_type.value
            values["current_price"] = opening_price(parsed_type, settings)
            self.store.compare_and_set(db, auction, values)
            return auction

        run_with_cas_retry(db, _update, label=f"update auction {auction_id}")
        logger.info(f"Draft auction {auction_id} updated: {', '.join(sorted(changes))}")
        return self.store.get(db, auction_id)

    def _load_owned(self, db: Session, auction_id: int, actor_id: str) -> Auction:
        auction = self.store.get_for_update(db, auction_id)
        if auction is None:
            raise NotFound(f"Auction {auction_id} not found", auction_id=auction_id)
        if auction.seller_id != actor_id:
            raise NotOwner(f"Auction {auction_id} belongs to another seller", auction_id=auction_id)
        return auction

    def publish(self, db: Session, auction_id: int, actor_id: str) -> Auction:
        """draft -> active. Bidding opens at start_time."""

        def _publish():
            auction = self._load_owned(db, auction_id, actor_id)
            check_transition(auction, AuctionStatus.ACTIVE)
            if auction.end_time <= self.clock.now():
                raise InvalidAuction(f"Auction {auction_id} has already passed its end_time")
            self.store.compare_and_set(db, auction, {"status": AuctionStatus.ACTIVE.value})
            return auction

        run_with_cas_retry(db, _publish, label=f"publish auction {auction_id}")
        logger.info(f"Auction {auction_id} published")
        return self.store.get(db, auction_id)

    def cancel(self, db: Session, auction_id: int, actor_id: str) -> Auction:
        """active -> cancelled. No settlement; bids are void."""
        affected = []

        def _cancel():
            auction = self._load_owned(db, auction_id, actor_id)
            check_transition(auction, AuctionStatus.CANCELLED)
            self.store.compare_and_set(db, auction, {
                "status": AuctionStatus.CANCELLED.value,
                "close_reason": CloseReason.CANCELLED.value,
            })
            affected[:] = self.ledger.bidder_ids(db, auction_id) + self.store.watcher_ids(db, auction_id)
            return auction

        run_with_cas_retry(db, _cancel, label=f"cancel auction {auction_id}")
        logger.info(f"Auction {auction_id} cancelled by {actor_id}")
        auction = self.store.get(db, auction_id)
        self.notifier.notify_many(affected, EventType.ENDED, {
            "auction_id": auction_id,
            "title": auction.title,
            "close_reason": CloseReason.CANCELLED.value,
        })
        return auction
