"""
Settlement engine: turns a purchase or a closed auction into exactly one
funded order.

Every settlement is a single transaction containing the version
compare-and-set on the auction, the buyer debit, the seller credit, the
winning bid flag and the order row. If any step fails the whole unit rolls
back, and a concurrent settlement of the same auction loses the
compare-and-set and then finds the auction terminal.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from database import (
    Auction, Bid, AuctionStatus, AuctionType, CloseReason, TERMINAL_STATUSES,
)
from .clock import Clock, system_clock
from .errors import (
    AlreadySold, AuctionClosed, InsufficientFunds, InvariantViolation, NotFound,
    OwnAuction, PriceChanged, UnsupportedOperation,
)
from .lifecycle import check_transition, is_open_for_trading
from .notifier import EventType, Notifier, LoggingNotifier
from .orders import OrderService
from .pricing import purchase_price, reserve_met
from .store import AuctionStore, BidLedger, run_with_cas_retry
from .wallet import WalletLedger, settlement_key

logger = logging.getLogger(__name__)


@dataclass
class PurchaseOutcome:
    auction_id: int
    order_id: int
    order_number: str
    amount: Decimal
    bid_id: int


@dataclass
class SettlementOutcome:
    auction_id: int
    status: str
    close_reason: Optional[str] = None
    winner_id: Optional[str] = None
    winning_bid_id: Optional[int] = None
    order_id: Optional[int] = None
    order_number: Optional[str] = None
    amount: Optional[Decimal] = None
    settled_now: bool = False
    pending: bool = False


@dataclass
class _Announcement:
    winner_id: Optional[str]
    losers: Set[str]
    payload: dict


class SettlementEngine:
    """BuyNow, Dutch purchase and expiry settlement."""

    def __init__(self, notifier: Optional[Notifier] = None, clock: Optional[Clock] = None,
                 wallet: Optional[WalletLedger] = None, orders: Optional[OrderService] = None):
        self.store = AuctionStore()
        self.ledger = BidLedger()
        self.wallet = wallet or WalletLedger()
        self.orders = orders or OrderService()
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or system_clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _winning_bids(self, db: Session, auction: Auction) -> List[Bid]:
        winning = self.ledger.winning_bids(db, auction.id)
        if len(winning) > 1:
            raise InvariantViolation(auction.id, f"{len(winning)} bids marked winning")
        return winning

    def _audit_terminal(self, db: Session, auction: Auction) -> None:
        """Check a settled auction still carries its order and a single winning bid."""
        if auction.winner_id is None:
            return
        if self.orders.for_auction(db, auction.id) is None:
            raise InvariantViolation(auction.id, f"{auction.status} with winner {auction.winner_id} but no order")
        winning = self._winning_bids(db, auction)
        if not winning or winning[0].id != auction.winning_bid_id:
            raise InvariantViolation(auction.id, "winning bid flag does not match winning_bid_id")

    def _recorded(self, db: Session, auction: Auction) -> SettlementOutcome:
        order = self.orders.for_auction(db, auction.id)
        return SettlementOutcome(
            auction_id=auction.id,
            status=auction.status,
            close_reason=auction.close_reason,
            winner_id=auction.winner_id,
            winning_bid_id=auction.winning_bid_id,
            order_id=order.id if order else None,
            order_number=order.order_number if order else None,
            amount=Decimal(auction.final_price) if auction.final_price is not None else None,
        )

    def _flag(self, db: Session, error: InvariantViolation) -> None:
        logger.error(f"Invariant violation, halting automatic settlement: {error}")
        self.store.flag_for_reconciliation(db, error.auction_id, error.reason)
        db.commit()

    def _announce(self, announcement: Optional[_Announcement]) -> None:
        if announcement is None:
            return
        if announcement.winner_id:
            self.notifier.notify(announcement.winner_id, EventType.WON, announcement.payload)
        losers = announcement.losers - {announcement.winner_id}
        self.notifier.notify_many(losers, EventType.ENDED, announcement.payload)

    def _interested(self, db: Session, auction: Auction) -> Set[str]:
        return (
            set(self.ledger.bidder_ids(db, auction.id))
            | set(self.store.watcher_ids(db, auction.id))
            | {auction.seller_id}
        )

    def _pay(self, db: Session, auction: Auction, buyer_id: str, amount: Decimal, attempt: int) -> None:
        """Debit the buyer and credit the seller for one settlement attempt."""
        reference = f"auction:{auction.id}"
        self.wallet.debit(db, buyer_id, amount, settlement_key(auction.id, attempt, "debit"), reference)
        self.wallet.credit(db, auction.seller_id, amount, settlement_key(auction.id, attempt, "credit"), reference)

    # ------------------------------------------------------------------
    # BuyNow
    # ------------------------------------------------------------------

    def buy_now(self, db: Session, auction_id: int, buyer_id: str, expected_price: Decimal) -> PurchaseOutcome:
        """
        Buy the auction outright at its buy-now price (or current Dutch price).

        Raises NotFound, AlreadySold, AuctionClosed, UnsupportedOperation,
        OwnAuction, PriceChanged or InsufficientFunds. Of several concurrent
        calls exactly one succeeds; the rest see AlreadySold.
        """
        expected_price = Decimal(expected_price)
        announcement = {}

        def _buy():
            now = self.clock.now()
            auction = self.store.get_for_update(db, auction_id)
            if auction is None:
                raise NotFound(f"Auction {auction_id} not found", auction_id=auction_id)
            if auction.status == AuctionStatus.SOLD.value:
                raise AlreadySold(f"Auction {auction_id} has already been sold", auction_id=auction_id)
            if not is_open_for_trading(auction, now):
                raise AuctionClosed(f"Auction {auction_id} is not open for purchase", auction_id=auction_id)
            price = purchase_price(auction, now)
            if price is None:
                raise UnsupportedOperation(f"Auction {auction_id} has no buy-now price", auction_id=auction_id)
            if (auction.auction_type == AuctionType.TIME_BASED.value
                    and auction.bid_count > 0
                    and Decimal(auction.current_price) >= price):
                raise UnsupportedOperation("Bidding has passed the buy-now price", auction_id=auction_id)
            if auction.seller_id == buyer_id:
                raise OwnAuction("Sellers cannot buy their own auction", auction_id=auction_id)
            if expected_price != price:
                raise PriceChanged(
                    f"Price is now {price}, not {expected_price}", auction_id=auction_id, current_price=price
                )

            previous = self._winning_bids(db, auction)
            attempt = auction.settlement_attempts + 1
            check_transition(auction, AuctionStatus.SOLD)
            # The claim comes first; a concurrent buyer fails here and retries into AlreadySold
            self.store.compare_and_set(db, auction, {
                "status": AuctionStatus.SOLD.value,
                "close_reason": CloseReason.SOLD.value,
                "current_price": price,
                "bid_count": auction.bid_count + 1,
                "settlement_attempts": attempt,
            })
            self._pay(db, auction, buyer_id, price, attempt)

            for bid in previous:
                bid.is_winning = False
            bid = self.ledger.append(db, Bid(
                auction_id=auction.id,
                bidder_id=buyer_id,
                amount=price,
                is_sealed=False,
                is_winning=True,
                is_auto_bid=False,
                created_at=now,
            ))
            db.flush()
            order = self.orders.create_order(
                db, buyer_id, auction.seller_id, auction.product_ref, price, auction.id
            )
            self.store.record_outcome(db, auction.id, {
                "winner_id": buyer_id,
                "winning_bid_id": bid.id,
                "order_id": order.id,
                "final_price": price,
            })
            announcement["value"] = _Announcement(
                winner_id=buyer_id,
                losers=self._interested(db, auction),
                payload={
                    "auction_id": auction.id,
                    "title": auction.title,
                    "close_reason": CloseReason.SOLD.value,
                    "amount": price,
                    "order_number": order.order_number,
                },
            )
            return PurchaseOutcome(
                auction_id=auction.id,
                order_id=order.id,
                order_number=order.order_number,
                amount=price,
                bid_id=bid.id,
            )

        try:
            outcome = run_with_cas_retry(db, _buy, label=f"buy-now on auction {auction_id}")
        except InvariantViolation as e:
            self._flag(db, e)
            raise
        except InsufficientFunds:
            logger.info(f"Buy-now on auction {auction_id} by {buyer_id} rejected: insufficient funds")
            raise

        logger.info(
            f"Auction {auction_id} sold to {buyer_id} for {outcome.amount}, order {outcome.order_number}"
        )
        self._announce(announcement.get("value"))
        return outcome

    # ------------------------------------------------------------------
    # SettleOnExpiry
    # ------------------------------------------------------------------

    def _candidates(self, db: Session, auction: Auction) -> Tuple[List[Bid], Optional[str]]:
        """
        Bids to try in order, or the reason the auction closes unsold.

        time_based: the standing winner, then each other bidder's best bid as
        fallbacks. sealed: every bidder's best bid, highest first, earliest
        first on ties. Bids below the reserve are never candidates.
        """
        if auction.auction_type == AuctionType.TIME_BASED.value:
            winning = self._winning_bids(db, auction)
            if not winning:
                return [], CloseReason.NO_BIDS.value
            leader = winning[0]
            if not reserve_met(auction, Decimal(auction.current_price)):
                return [], CloseReason.RESERVE_NOT_MET.value
            fallbacks = [
                bid for bid in self.ledger.ranked_by_bidder(db, auction.id)
                if bid.bidder_id != leader.bidder_id and reserve_met(auction, Decimal(bid.amount))
            ]
            return [leader] + fallbacks, None

        if auction.auction_type == AuctionType.SEALED.value:
            ranked = self.ledger.ranked_by_bidder(db, auction.id)
            if not ranked:
                return [], CloseReason.NO_BIDS.value
            eligible = [bid for bid in ranked if reserve_met(auction, Decimal(bid.amount))]
            if not eligible:
                return [], CloseReason.RESERVE_NOT_MET.value
            return eligible, None

        # buy_now / dutch auctions that reach end_time were never purchased
        return [], CloseReason.NO_BIDS.value

    def settle_on_expiry(self, db: Session, auction_id: int) -> SettlementOutcome:
        """
        Close an active auction whose end_time has passed.

        Idempotent: a terminal auction returns its recorded outcome unchanged;
        an auction that has not reached end_time (or was extended) reports
        pending. If the winner cannot pay, the next-highest bidder meeting the
        reserve is tried; if nobody can pay the auction ends unsold with
        close_reason payment_failed.
        """
        announcement = {}

        def _settle():
            now = self.clock.now()
            auction = self.store.get_for_update(db, auction_id)
            if auction is None:
                raise NotFound(f"Auction {auction_id} not found", auction_id=auction_id)
            if auction.status in TERMINAL_STATUSES:
                self._audit_terminal(db, auction)
                return self._recorded(db, auction)
            if auction.status != AuctionStatus.ACTIVE.value or now < auction.end_time:
                return SettlementOutcome(auction_id=auction.id, status=auction.status, pending=True)
            if auction.needs_reconciliation:
                logger.warning(f"Auction {auction_id} awaits manual reconciliation, not settling")
                return SettlementOutcome(auction_id=auction.id, status=auction.status, pending=True)

            candidates, unsold_reason = self._candidates(db, auction)
            attempt = auction.settlement_attempts
            chosen = None
            for candidate in candidates:
                attempt += 1
                try:
                    self._pay(db, auction, candidate.bidder_id, Decimal(candidate.amount), attempt)
                except InsufficientFunds:
                    logger.warning(
                        f"Auction {auction_id}: {candidate.bidder_id} cannot pay {candidate.amount}, "
                        f"trying next bidder"
                    )
                    continue
                chosen = candidate
                break

            if candidates and chosen is None:
                unsold_reason = CloseReason.PAYMENT_FAILED.value

            sealed = auction.auction_type == AuctionType.SEALED.value
            if chosen is None:
                target = AuctionStatus.ENDED
                values = {"status": target.value, "close_reason": unsold_reason}
            else:
                target = AuctionStatus.SOLD if sealed else AuctionStatus.ENDED
                values = {
                    "status": target.value,
                    "close_reason": CloseReason.SOLD.value if sealed else CloseReason.WON.value,
                    "winner_id": chosen.bidder_id,
                    "winning_bid_id": chosen.id,
                    "final_price": chosen.amount,
                }
                if sealed:
                    # Reveal: the sealed price becomes the auction price
                    values["current_price"] = chosen.amount
            values["settlement_attempts"] = attempt
            check_transition(auction, target)
            self.store.compare_and_set(db, auction, values)

            payload = {
                "auction_id": auction.id,
                "title": auction.title,
                "close_reason": values["close_reason"],
            }
            if chosen is None:
                announcement["value"] = _Announcement(None, self._interested(db, auction), payload)
                return SettlementOutcome(
                    auction_id=auction.id,
                    status=target.value,
                    close_reason=unsold_reason,
                    settled_now=True,
                )

            for bid in self._winning_bids(db, auction):
                if bid.id != chosen.id:
                    bid.is_winning = False
            chosen.is_winning = True
            db.flush()
            order = self.orders.create_order(
                db, chosen.bidder_id, auction.seller_id, auction.product_ref, Decimal(chosen.amount), auction.id
            )
            self.store.record_outcome(db, auction.id, {"order_id": order.id})
            payload.update(amount=Decimal(chosen.amount), order_number=order.order_number)
            announcement["value"] = _Announcement(chosen.bidder_id, self._interested(db, auction), payload)
            return SettlementOutcome(
                auction_id=auction.id,
                status=target.value,
                close_reason=values["close_reason"],
                winner_id=chosen.bidder_id,
                winning_bid_id=chosen.id,
                order_id=order.id,
                order_number=order.order_number,
                amount=Decimal(chosen.amount),
                settled_now=True,
            )

        try:
            outcome = run_with_cas_retry(db, _settle, label=f"settle auction {auction_id}")
        except InvariantViolation as e:
            self._flag(db, e)
            raise

        if outcome.settled_now:
            logger.info(
                f"Auction {auction_id} closed as {outcome.status} ({outcome.close_reason}), "
                f"winner={outcome.winner_id}, amount={outcome.amount}, order={outcome.order_number}"
            )
            self._announce(announcement.get("value"))
        return outcome

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit_settled(self, db: Session, limit: int = 100) -> List[int]:
        """Flag settled auctions that have a winner but no order; returns their ids."""
        flagged = []
        for auction_id in self.store.list_settled_without_order(db, limit=limit):
            reason = "settled with a winner but no order"
            logger.error(f"Auction {auction_id} {reason}, flagging for manual reconciliation")
            self.store.flag_for_reconciliation(db, auction_id, reason)
            flagged.append(auction_id)
        db.commit()
        return flagged
