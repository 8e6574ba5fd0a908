"""
Error kinds raised by the bidding and settlement engines.

Domain errors describe why a request was refused; the caller must re-read the
auction before trying again. Infrastructure errors (ConcurrentUpdate, database
outages) are safe to retry with backoff.
"""
from decimal import Decimal
from typing import Optional


class AuctionError(Exception):
    """Base class for domain failures returned to the caller."""

    kind = "AuctionError"
    status_code = 400

    def __init__(self, message: str = "", auction_id: Optional[int] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.auction_id = auction_id

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class NotFound(AuctionError):
    kind = "NotFound"
    status_code = 404


class AuctionClosed(AuctionError):
    kind = "AuctionClosed"
    status_code = 409


class AlreadySold(AuctionClosed):
    kind = "AlreadySold"


class BidTooLow(AuctionError):
    kind = "BidTooLow"
    status_code = 409

    def __init__(self, message: str = "", auction_id: Optional[int] = None, minimum: Optional[Decimal] = None):
        super().__init__(message, auction_id)
        self.minimum = minimum

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.minimum is not None:
            data["minimum"] = str(self.minimum)
        return data


class AlreadyWinning(AuctionError):
    kind = "AlreadyWinning"
    status_code = 409


class BidLimitExceeded(AuctionError):
    kind = "BidLimitExceeded"
    status_code = 429


class PriceChanged(AuctionError):
    kind = "PriceChanged"
    status_code = 409

    def __init__(self, message: str = "", auction_id: Optional[int] = None, current_price: Optional[Decimal] = None):
        super().__init__(message, auction_id)
        self.current_price = current_price

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.current_price is not None:
            data["current_price"] = str(self.current_price)
        return data


class InsufficientFunds(AuctionError):
    kind = "InsufficientFunds"
    status_code = 402


class UnsupportedOperation(AuctionError):
    kind = "UnsupportedOperation"
    status_code = 422


class InvalidBid(AuctionError):
    kind = "InvalidBid"
    status_code = 422


class InvalidAuction(AuctionError):
    kind = "InvalidAuction"
    status_code = 422


class OwnAuction(AuctionError):
    kind = "OwnAuction"
    status_code = 403


class NotOwner(AuctionError):
    kind = "NotOwner"
    status_code = 403


class ConcurrentUpdate(Exception):
    """Compare-and-set retries exhausted; outcome is safe to retry."""

    kind = "ConcurrentUpdate"


class StaleAuction(Exception):
    """The auction version moved between read and write."""


class InvariantViolation(Exception):
    """Store state breaks an invariant; the auction needs manual reconciliation."""

    kind = "InvariantViolation"

    def __init__(self, auction_id: int, reason: str):
        super().__init__(f"Auction {auction_id}: {reason}")
        self.auction_id = auction_id
        self.reason = reason
