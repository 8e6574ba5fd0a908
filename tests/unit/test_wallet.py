import re
import pytest
from decimal import Decimal

from database.models import WalletTransaction
from server.errors import InsufficientFunds
from server.orders import OrderService, generate_order_number
from server.wallet import WalletLedger, settlement_key


@pytest.fixture
def wallet():
    return WalletLedger()


def test_balance_of_unknown_user_is_zero(db_session, wallet):
    assert wallet.balance(db_session, "nobody") == Decimal("0")


def test_credit_then_debit(db_session, wallet):
    wallet.credit(db_session, "alice", Decimal("100"), "fund-1")
    wallet.debit(db_session, "alice", Decimal("30"), "spend-1", reference="auction:1")
    db_session.commit()

    assert wallet.balance(db_session, "alice") == Decimal("70")
    txns = db_session.query(WalletTransaction).order_by(WalletTransaction.id).all()
    assert [(t.kind, t.amount) for t in txns] == [("credit", Decimal("100")), ("debit", Decimal("-30"))]


def test_debit_replay_is_noop(db_session, wallet):
    wallet.credit(db_session, "alice", Decimal("100"), "fund-1")
    first = wallet.debit(db_session, "alice", Decimal("30"), "spend-1")
    second = wallet.debit(db_session, "alice", Decimal("30"), "spend-1")
    db_session.commit()

    assert first.id == second.id
    assert wallet.balance(db_session, "alice") == Decimal("70")


def test_credit_replay_is_noop(db_session, wallet):
    wallet.credit(db_session, "seller", Decimal("50"), "auction:1:settlement:1:credit")
    wallet.credit(db_session, "seller", Decimal("50"), "auction:1:settlement:1:credit")
    db_session.commit()
    assert wallet.balance(db_session, "seller") == Decimal("50")


def test_insufficient_funds_changes_nothing(db_session, wallet):
    wallet.credit(db_session, "alice", Decimal("20"), "fund-1")
    db_session.commit()

    with pytest.raises(InsufficientFunds):
        wallet.debit(db_session, "alice", Decimal("20.01"), "spend-1")
    db_session.rollback()

    assert wallet.balance(db_session, "alice") == Decimal("20")
    assert db_session.query(WalletTransaction).filter(WalletTransaction.idempotency_key == "spend-1").first() is None


def test_debit_without_account(db_session, wallet):
    with pytest.raises(InsufficientFunds):
        wallet.debit(db_session, "ghost", Decimal("1"), "spend-1")


def test_settlement_key():
    assert settlement_key(7, 2, "debit") == "auction:7:settlement:2:debit"


def test_order_number_format():
    number = generate_order_number()
    assert re.fullmatch(r"ORD-[0-9A-Z]+-[0-9A-Z]{4}", number)


def test_create_order(db_session, sample_auction):
    orders = OrderService()
    order = orders.create_order(db_session, "alice", "seller", "product-1", Decimal("70"), sample_auction.id)
    db_session.commit()

    assert orders.for_auction(db_session, sample_auction.id).id == order.id
    assert order.amount == Decimal("70")
