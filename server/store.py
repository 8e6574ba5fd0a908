"""
Data access for auctions and the append-only bid ledger.

Every state-changing write to an auction goes through compare_and_set(), an
UPDATE guarded by the version the writer read. Zero rows updated means another
writer got there first and the caller must re-read and re-validate.
"""
import time
import logging
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import func, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import Auction, Bid, Order, AuctionStatus, AuctionWatcher
from . import config
from .errors import StaleAuction, ConcurrentUpdate

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_with_cas_retry(db: Session, operation: Callable[[], T], label: str = "auction update",
                       max_retries: Optional[int] = None) -> T:
    """
    Run operation() and commit, retrying from a fresh read when it loses a race.

    operation re-reads and re-validates on every call. A lost compare-and-set
    (StaleAuction) or a unique-constraint collision rolls back and retries with
    exponential backoff (10 ms, 20 ms, 40 ms, ...). Domain errors roll back and
    propagate unchanged.
    """
    retries = config.CAS_MAX_RETRIES if max_retries is None else max_retries
    backoff_ms = config.CAS_BACKOFF_MS
    for attempt in range(retries + 1):
        try:
            result = operation()
            db.commit()
            return result
        except (StaleAuction, IntegrityError) as e:
            db.rollback()
            logger.info(f"{label}: lost race on attempt {attempt + 1}/{retries + 1} ({type(e).__name__})")
            if attempt == retries:
                break
            time.sleep(backoff_ms / 1000)
            backoff_ms *= 2
        except Exception:
            db.rollback()
            raise
    raise ConcurrentUpdate(f"{label}: concurrent update conflict, please retry")


class AuctionStore:
    """Reads and guarded writes on the auctions table."""

    def get(self, db: Session, auction_id: int) -> Optional[Auction]:
        return db.query(Auction).filter(Auction.id == auction_id).first()

    def get_for_update(self, db: Session, auction_id: int) -> Optional[Auction]:
        """
        Read the auction row fresh from the database.

        Takes a row lock on databases that support SELECT ... FOR UPDATE
        (ignored by SQLite); the version check in compare_and_set() still
        decides the race either way.
        """
        return (
            db.query(Auction)
            .filter(Auction.id == auction_id)
            .populate_existing()
            .with_for_update()
            .first()
        )

    def compare_and_set(self, db: Session, auction: Auction, values: dict) -> None:
        """Apply values if the row still carries the version we read; bumps the version."""
        expected_version = auction.version
        rows_updated = db.query(Auction).filter(
            Auction.id == auction.id,
            Auction.version == expected_version
        ).update(
            dict(values, version=expected_version + 1),
            synchronize_session=False
        )
        if rows_updated == 0:
            logger.info(f"Auction {auction.id} changed since version {expected_version}, retrying")
            raise StaleAuction(auction.id)

    def record_outcome(self, db: Session, auction_id: int, values: dict) -> None:
        """Write settlement results on an auction this transaction has already claimed."""
        db.query(Auction).filter(Auction.id == auction_id).update(values, synchronize_session=False)

    def list_active(self, db: Session, now: datetime) -> List[Auction]:
        return db.query(Auction).filter(
            Auction.status == AuctionStatus.ACTIVE.value,
            Auction.end_time > now
        ).order_by(Auction.end_time).all()

    def list_auctions(self, db: Session, now: datetime, status: Optional[str] = None,
                      seller_id: Optional[str] = None) -> List[Auction]:
        """Active auctions by default; otherwise filter by status and/or seller, newest first."""
        if status is None and seller_id is None:
            return self.list_active(db, now)
        query = db.query(Auction)
        if status is not None:
            query = query.filter(Auction.status == status)
        if seller_id is not None:
            query = query.filter(Auction.seller_id == seller_id)
        return query.order_by(Auction.created_at.desc(), Auction.id.desc()).all()

    def list_due_for_settlement(self, db: Session, now: datetime, limit: int = 100) -> List[int]:
        rows = db.query(Auction.id).filter(
            Auction.status == AuctionStatus.ACTIVE.value,
            Auction.end_time <= now,
            Auction.needs_reconciliation.is_(False)
        ).order_by(Auction.end_time).limit(limit).all()
        return [row[0] for row in rows]

    def list_starting_soon(self, db: Session, now: datetime, horizon: datetime) -> List[Auction]:
        return db.query(Auction).filter(
            Auction.status == AuctionStatus.ACTIVE.value,
            Auction.starting_soon_notified.is_(False),
            Auction.start_time > now,
            Auction.start_time <= horizon
        ).all()

    def claim_starting_soon(self, db: Session, auction_id: int) -> bool:
        """Mark the starting-soon announcement as sent; False if another worker already did."""
        rows_updated = db.query(Auction).filter(
            Auction.id == auction_id,
            Auction.starting_soon_notified.is_(False)
        ).update({"starting_soon_notified": True}, synchronize_session=False)
        return rows_updated == 1

    def list_settled_without_order(self, db: Session, limit: int = 100) -> List[int]:
        rows = db.query(Auction.id).filter(
            Auction.status.in_([AuctionStatus.ENDED.value, AuctionStatus.SOLD.value]),
            Auction.winner_id.isnot(None),
            Auction.needs_reconciliation.is_(False),
            ~exists().where(Order.auction_id == Auction.id)
        ).limit(limit).all()
        return [row[0] for row in rows]

    def increment_views(self, db: Session, auction_id: int) -> None:
        # Advisory counter; does not bump the version
        db.query(Auction).filter(Auction.id == auction_id).update(
            {"view_count": Auction.view_count + 1},
            synchronize_session=False
        )

    def flag_for_reconciliation(self, db: Session, auction_id: int, reason: str) -> None:
        db.query(Auction).filter(Auction.id == auction_id).update(
            {"needs_reconciliation": True, "reconciliation_reason": reason},
            synchronize_session=False
        )

    def watcher_ids(self, db: Session, auction_id: int) -> List[str]:
        rows = db.query(AuctionWatcher.user_id).filter(AuctionWatcher.auction_id == auction_id).all()
        return [row[0] for row in rows]


class BidLedger:
    """Append-only record of bids; is_winning is the only mutable column."""

    def append(self, db: Session, bid: Bid) -> Bid:
        db.add(bid)
        return bid

    def winning_bids(self, db: Session, auction_id: int) -> List[Bid]:
        return db.query(Bid).filter(
            Bid.auction_id == auction_id,
            Bid.is_winning.is_(True)
        ).order_by(Bid.id).populate_existing().all()

    def bids_for(self, db: Session, auction_id: int) -> List[Bid]:
        return db.query(Bid).filter(Bid.auction_id == auction_id).order_by(Bid.id).all()

    def count_for_bidder(self, db: Session, auction_id: int, bidder_id: str) -> int:
        return db.query(func.count(Bid.id)).filter(
            Bid.auction_id == auction_id,
            Bid.bidder_id == bidder_id,
            Bid.is_auto_bid.is_(False)
        ).scalar() or 0

    def bidder_ids(self, db: Session, auction_id: int) -> List[str]:
        rows = db.query(Bid.bidder_id).filter(Bid.auction_id == auction_id).distinct().all()
        return [row[0] for row in rows]

    def ranked_by_bidder(self, db: Session, auction_id: int) -> List[Bid]:
        """
        Each bidder's best bid, highest amount first; equal amounts rank the
        earlier bid first.
        """
        ranked = db.query(Bid).filter(Bid.auction_id == auction_id).order_by(
            Bid.amount.desc(), Bid.id.asc()
        ).all()
        best = []
        seen = set()
        for bid in ranked:
            if bid.bidder_id in seen:
                continue
            seen.add(bid.bidder_id)
            best.append(bid)
        return best
