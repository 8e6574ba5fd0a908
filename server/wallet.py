"""
Wallet ledger: per-user balances with idempotent debit/credit.

Operations run inside the caller's session and never commit, so a settlement
can enlist the debit, the seller credit and the order in one transaction.
"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from database import WalletAccount, WalletTransaction, TransactionKind
from .errors import InsufficientFunds

logger = logging.getLogger(__name__)


def settlement_key(auction_id: int, attempt: int, leg: str) -> str:
    """Idempotency key for one leg (debit/credit) of a settlement attempt."""
    return f"auction:{auction_id}:settlement:{attempt}:{leg}"


class WalletLedger:

    def balance(self, db: Session, user_id: str) -> Decimal:
        account = db.query(WalletAccount).filter(WalletAccount.user_id == user_id).first()
        return Decimal(account.balance) if account else Decimal("0")

    def _existing(self, db: Session, idempotency_key: str) -> Optional[WalletTransaction]:
        return db.query(WalletTransaction).filter(
            WalletTransaction.idempotency_key == idempotency_key
        ).first()

    def _ensure_account(self, db: Session, user_id: str) -> None:
        if not db.query(WalletAccount).filter(WalletAccount.user_id == user_id).first():
            db.add(WalletAccount(user_id=user_id, balance=Decimal("0")))
            db.flush()

    def debit(self, db: Session, user_id: str, amount: Decimal, idempotency_key: str,
              reference: Optional[str] = None) -> WalletTransaction:
        """
        Take amount from user_id's balance.

        Raises InsufficientFunds if the balance cannot cover it. Replaying a key
        returns the transaction recorded the first time.
        """
        existing = self._existing(db, idempotency_key)
        if existing:
            logger.info(f"Debit {idempotency_key} already applied, skipping")
            return existing

        # Conditional update: the balance check and the decrement are one statement
        rows_updated = db.query(WalletAccount).filter(
            WalletAccount.user_id == user_id,
            WalletAccount.balance >= amount
        ).update(
            {"balance": WalletAccount.balance - amount},
            synchronize_session=False
        )
        if rows_updated == 0:
            raise InsufficientFunds(f"Balance of {user_id} cannot cover {amount}")

        txn = WalletTransaction(
            user_id=user_id,
            amount=-Decimal(amount),
            kind=TransactionKind.DEBIT.value,
            idempotency_key=idempotency_key,
            reference=reference,
        )
        db.add(txn)
        db.flush()
        return txn

    def credit(self, db: Session, user_id: str, amount: Decimal, idempotency_key: str,
               reference: Optional[str] = None) -> WalletTransaction:
        existing = self._existing(db, idempotency_key)
        if existing:
            logger.info(f"Credit {idempotency_key} already applied, skipping")
            return existing

        self._ensure_account(db, user_id)
        db.query(WalletAccount).filter(WalletAccount.user_id == user_id).update(
            {"balance": WalletAccount.balance + amount},
            synchronize_session=False
        )
        txn = WalletTransaction(
            user_id=user_id,
            amount=Decimal(amount),
            kind=TransactionKind.CREDIT.value,
            idempotency_key=idempotency_key,
            reference=reference,
        )
        db.add(txn)
        db.flush()
        return txn
