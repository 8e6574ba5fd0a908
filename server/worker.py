import time
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from database import SessionLocal
from . import config
from .clock import Clock, system_clock
from .errors import AuctionError, InvariantViolation
from .notifier import EventType, Notifier, LoggingNotifier
from .settlement import SettlementEngine
from .store import AuctionStore

logger = logging.getLogger(__name__)

AUDIT_EVERY_PASSES = 30


class Worker:
    """Background sweeper: settles expired auctions and sends starting-soon notices."""

    def __init__(self, notifier: Optional[Notifier] = None, clock: Optional[Clock] = None,
                 session_factory=None):
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or system_clock
        self.session_factory = session_factory or SessionLocal
        self.settlement = SettlementEngine(notifier=self.notifier, clock=self.clock)
        self.store = AuctionStore()
        self.running = False
        self.passes = 0

    def _settle_expired(self, db: Session) -> int:
        """Settle every active auction past its end_time. Returns how many closed."""
        due = self.store.list_due_for_settlement(db, self.clock.now(), limit=config.SWEEP_BATCH_SIZE)
        settled = 0
        for auction_id in due:
            try:
                outcome = self.settlement.settle_on_expiry(db, auction_id)
                if outcome.settled_now:
                    settled += 1
            except InvariantViolation as e:
                # Already flagged by the settlement engine; the sweep skips it from now on
                logger.error(f"Auction {auction_id} needs manual reconciliation: {e}")
            except AuctionError as e:
                logger.warning(f"Could not settle auction {auction_id}: {e.kind}: {e.message}")
            except Exception as e:
                logger.error(f"Error settling auction {auction_id}: {e}", exc_info=True)
                db.rollback()
                continue
        return settled

    def _announce_starting_soon(self, db: Session) -> int:
        """Notify watchers of auctions opening within STARTING_SOON_MINUTES, once per auction."""
        now = self.clock.now()
        horizon = now + timedelta(minutes=config.STARTING_SOON_MINUTES)
        announced = 0
        for auction in self.store.list_starting_soon(db, now, horizon):
            try:
                claimed = self.store.claim_starting_soon(db, auction.id)
                db.commit()
                if not claimed:
                    continue
                self.notifier.notify_many(self.store.watcher_ids(db, auction.id), EventType.STARTING_SOON, {
                    "auction_id": auction.id,
                    "title": auction.title,
                    "start_time": auction.start_time,
                })
                announced += 1
            except Exception as e:
                logger.error(f"Error announcing auction {auction.id}: {e}", exc_info=True)
                db.rollback()
                continue
        return announced

    def _audit(self, db: Session):
        flagged = self.settlement.audit_settled(db, limit=config.SWEEP_BATCH_SIZE)
        if flagged:
            logger.error(f"Settlement audit flagged auctions {flagged}")

    def run_once(self):
        """One sweep pass, each phase in its own session."""
        db = self.session_factory()
        try:
            settled = self._settle_expired(db)
            if settled:
                logger.info(f"Sweep settled {settled} auction(s)")
        finally:
            db.close()

        notice_db = self.session_factory()
        try:
            self._announce_starting_soon(notice_db)
        finally:
            notice_db.close()

        if self.passes % AUDIT_EVERY_PASSES == 0:
            audit_db = self.session_factory()
            try:
                self._audit(audit_db)
            except Exception as e:
                logger.error(f"Error in settlement audit: {e}", exc_info=True)
                audit_db.rollback()
            finally:
                audit_db.close()
        self.passes += 1

    def run_loop(self):
        """Main worker loop."""
        self.running = True
        logger.info("Worker loop started")

        while self.running:
            try:
                self.run_once()
                time.sleep(config.SWEEP_INTERVAL_SECONDS)
            except KeyboardInterrupt:
                logger.info("Worker loop interrupted")
                self.running = False
                break
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)
                time.sleep(1)

    def stop(self):
        """Stop the worker loop."""
        self.running = False
