from .models import (
    Auction, Bid, Order, WalletAccount, WalletTransaction, AuctionWatcher,
    AuctionType, AuctionStatus, CloseReason, TransactionKind, TERMINAL_STATUSES,
)
from .session import init_db, get_db, SessionLocal

__all__ = [
    "Auction", "Bid", "Order", "WalletAccount", "WalletTransaction", "AuctionWatcher",
    "AuctionType", "AuctionStatus", "CloseReason", "TransactionKind", "TERMINAL_STATUSES",
    "init_db", "get_db", "SessionLocal",
]
