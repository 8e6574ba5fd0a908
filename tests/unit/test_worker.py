import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from database.models import Auction, Order, AuctionStatus, CloseReason
from server.bidding import BiddingEngine
from server.worker import Worker


@pytest.fixture
def worker(notifier, session_factory):
    return Worker(notifier=notifier, session_factory=session_factory)


def _expire(db_session, auction):
    auction.end_time = datetime.utcnow() - timedelta(seconds=1)
    db_session.commit()


def test_sweep_settles_expired_auctions_once(db_session, worker, notifier, make_auction, fund):
    fund("alice", "500")
    expired = make_auction()
    running = make_auction()
    BiddingEngine(notifier=notifier).place_bid(db_session, expired.id, "alice", Decimal("60"))
    _expire(db_session, expired)

    worker.run_once()
    worker.run_once()

    db_session.expire_all()
    expired = db_session.query(Auction).filter(Auction.id == expired.id).first()
    running = db_session.query(Auction).filter(Auction.id == running.id).first()
    assert expired.status == AuctionStatus.ENDED.value
    assert expired.winner_id == "alice"
    assert running.status == AuctionStatus.ACTIVE.value
    assert db_session.query(Order).count() == 1
    assert notifier.recipients("won") == ["alice"]


def test_sweep_continues_past_failing_auction(db_session, worker, make_auction):
    first = make_auction()
    second = make_auction()
    _expire(db_session, first)
    _expire(db_session, second)

    real_settle = worker.settlement.settle_on_expiry

    def flaky(db, auction_id):
        if auction_id == first.id:
            raise RuntimeError("boom")
        return real_settle(db, auction_id)

    with patch.object(worker.settlement, "settle_on_expiry", side_effect=flaky):
        worker.run_once()

    db_session.expire_all()
    statuses = {a.id: a.status for a in db_session.query(Auction).all()}
    assert statuses[first.id] == AuctionStatus.ACTIVE.value
    assert statuses[second.id] == AuctionStatus.ENDED.value


def test_sweep_skips_flagged_auctions(db_session, worker, make_auction):
    auction = make_auction(needs_reconciliation=True, reconciliation_reason="manual hold")
    _expire(db_session, auction)

    worker.run_once()

    db_session.expire_all()
    assert db_session.query(Auction).filter(Auction.id == auction.id).first().status == AuctionStatus.ACTIVE.value


def test_starting_soon_announced_once(db_session, worker, notifier, make_auction, watch):
    now = datetime.utcnow()
    soon = make_auction(start_time=now + timedelta(minutes=10), end_time=now + timedelta(hours=2))
    later = make_auction(start_time=now + timedelta(hours=3), end_time=now + timedelta(hours=5))
    watch(soon.id, "alice")
    watch(soon.id, "bob")
    watch(later.id, "carol")

    worker.run_once()
    worker.run_once()

    assert notifier.recipients("starting_soon") == ["alice", "bob"]


def test_audit_runs_on_first_pass(db_session, worker, make_auction):
    broken = make_auction(status=AuctionStatus.SOLD.value, winner_id="alice", close_reason=CloseReason.SOLD.value)

    worker.run_once()

    db_session.expire_all()
    assert db_session.query(Auction).filter(Auction.id == broken.id).first().needs_reconciliation is True


def test_stop():
    worker = Worker()
    worker.running = True
    worker.stop()
    assert worker.running is False
