"""
Bidding engine: admits bids, maintains current_price, resolves auto-bids and
extends the deadline for late bids.

Each PlaceBid call runs as one transaction: read the auction, validate, plan
the admitted bids (the human bid plus any auto-bid counters), then claim the
auction with a version compare-and-set before writing the bids. A writer that
loses the compare-and-set re-runs the whole call against the new state.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Set

from sqlalchemy.orm import Session

from database import Auction, Bid, AuctionType
from . import config
from .clock import Clock, system_clock
from .errors import (
    AlreadyWinning, AuctionClosed, BidLimitExceeded, BidTooLow, InvalidBid,
    InvariantViolation, NotFound, OwnAuction, UnsupportedOperation,
)
from .lifecycle import is_open_for_trading
from .notifier import EventType, Notifier, LoggingNotifier
from .pricing import minimum_next_bid
from .store import AuctionStore, BidLedger, run_with_cas_retry

logger = logging.getLogger(__name__)

BIDDABLE_TYPES = (AuctionType.TIME_BASED.value, AuctionType.SEALED.value)


@dataclass
class BidStep:
    """One bid the engine will admit."""
    bidder_id: str
    amount: Decimal
    ceiling: Optional[Decimal]
    is_auto: bool = False


@dataclass
class BidOutcome:
    bid_id: int
    auction_id: int
    current_price: Decimal
    winning_bidder_id: Optional[str]
    end_time: datetime
    extended: bool = False
    auto_bids: int = 0
    sealed: bool = False
    outbid: Set[str] = field(default_factory=set)


def _reach(ceiling: Optional[Decimal], start: Decimal, increment: Decimal) -> int:
    """Number of whole increments above start that ceiling covers, or -1."""
    if ceiling is None or ceiling < start:
        return -1
    return int((ceiling - start) // increment)


def _first_miss(reach: int, parity: int) -> int:
    """First exchange number of the given parity (1 odd, 0 even) that reach cannot cover."""
    step = max(reach + 1, 2 - parity)
    return step if step % 2 == parity else step + 1


def resolve_auto_bids(incumbent: Optional[BidStep], challenger: BidStep,
                      increment: Decimal) -> List[BidStep]:
    """
    Plan the bids admitted after challenger's bid, in admission order.

    The first step is always the challenger's own bid. The party it outbids
    counters at price + increment while its ceiling covers that, and the
    two parties alternate until one cannot respond. Counter k lands at
    challenger.amount + k * increment: the incumbent makes the odd counters,
    the challenger the even ones. Only the last two counters are planned,
    which gives the same final price and winner as playing every exchange.

    Equal ceilings go to the earlier bidder: when both declared the same
    ceiling and the challenger is left holding a price at or below it, the
    incumbent takes the bid at that ceiling.
    """
    steps = [challenger]
    if incumbent is None:
        return steps

    start = challenger.amount
    last = min(
        _first_miss(_reach(incumbent.ceiling, start, increment), 1),
        _first_miss(_reach(challenger.ceiling, start, increment), 0),
    ) - 1
    for k in range(max(1, last - 1), last + 1):
        party = incumbent if k % 2 else challenger
        steps.append(BidStep(party.bidder_id, start + k * increment, party.ceiling, is_auto=True))

    price = steps[-1].amount
    if (last % 2 == 0
            and incumbent.ceiling is not None
            and incumbent.ceiling == challenger.ceiling
            and incumbent.ceiling >= price):
        steps.append(BidStep(incumbent.bidder_id, incumbent.ceiling, incumbent.ceiling, is_auto=True))
    return steps


class BiddingEngine:
    """PlaceBid and its auto-bid / anti-snipe side effects."""

    def __init__(self, notifier: Optional[Notifier] = None, clock: Optional[Clock] = None):
        self.store = AuctionStore()
        self.ledger = BidLedger()
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or system_clock

    def _current_winner(self, db: Session, auction: Auction) -> Optional[Bid]:
        winning = self.ledger.winning_bids(db, auction.id)
        if len(winning) > 1:
            raise InvariantViolation(auction.id, f"{len(winning)} bids marked winning")
        return winning[0] if winning else None

    def _extension(self, auction: Auction, now: datetime):
        """New end_time and extension count if a bid at now falls in the anti-snipe window."""
        if not auction.auto_extend_minutes:
            return auction.end_time, auction.extension_count
        window = timedelta(minutes=auction.auto_extend_minutes)
        if auction.end_time - now > window:
            return auction.end_time, auction.extension_count
        cap = auction.max_extensions if auction.max_extensions is not None else config.DEFAULT_MAX_EXTENSIONS
        if auction.extension_count >= cap:
            logger.info(f"Auction {auction.id} reached its extension cap ({cap}), not extending")
            return auction.end_time, auction.extension_count
        return auction.end_time + window, auction.extension_count + 1

    def _validate(self, db: Session, auction: Optional[Auction], auction_id: int, bidder_id: str,
                  amount: Decimal, max_auto_bid: Optional[Decimal], now: datetime) -> Optional[Bid]:
        if auction is None:
            raise NotFound(f"Auction {auction_id} not found", auction_id=auction_id)
        if not is_open_for_trading(auction, now):
            raise AuctionClosed(f"Auction {auction_id} is not accepting bids", auction_id=auction_id)
        if auction.auction_type not in BIDDABLE_TYPES:
            raise UnsupportedOperation(
                f"{auction.auction_type} auctions are bought outright, not bid on", auction_id=auction_id
            )
        if auction.seller_id == bidder_id:
            raise OwnAuction("Sellers cannot bid on their own auction", auction_id=auction_id)
        if max_auto_bid is not None and max_auto_bid < amount:
            raise InvalidBid("max_auto_bid must be at least the bid amount", auction_id=auction_id)
        if max_auto_bid is not None and auction.auction_type == AuctionType.SEALED.value:
            raise InvalidBid("Sealed auctions do not take auto-bid ceilings", auction_id=auction_id)

        minimum = minimum_next_bid(auction)
        if amount < minimum:
            raise BidTooLow(f"Bid must be at least {minimum}", auction_id=auction_id, minimum=minimum)

        winner = None
        if auction.auction_type != AuctionType.SEALED.value:
            winner = self._current_winner(db, auction)
            if winner is not None and winner.bidder_id == bidder_id:
                raise AlreadyWinning("You already hold the winning bid", auction_id=auction_id)

        if auction.max_bids_per_user is not None:
            placed = self.ledger.count_for_bidder(db, auction.id, bidder_id)
            if placed >= auction.max_bids_per_user:
                raise BidLimitExceeded(
                    f"Bid limit of {auction.max_bids_per_user} per user reached", auction_id=auction_id
                )
        return winner

    def _admit_sealed(self, db: Session, auction: Auction, bidder_id: str, amount: Decimal,
                      now: datetime) -> BidOutcome:
        # Ranking is deferred to the reveal at close; price and end_time stay put
        self.store.compare_and_set(db, auction, {"bid_count": auction.bid_count + 1})
        bid = self.ledger.append(db, Bid(
            auction_id=auction.id,
            bidder_id=bidder_id,
            amount=amount,
            is_sealed=True,
            is_winning=False,
            created_at=now,
        ))
        db.flush()
        return BidOutcome(
            bid_id=bid.id,
            auction_id=auction.id,
            current_price=Decimal(auction.current_price),
            winning_bidder_id=None,
            end_time=auction.end_time,
            sealed=True,
        )

    def _admit_open(self, db: Session, auction: Auction, winner: Optional[Bid], bidder_id: str,
                    amount: Decimal, max_auto_bid: Optional[Decimal], now: datetime) -> BidOutcome:
        incumbent = None
        if winner is not None:
            incumbent = BidStep(
                winner.bidder_id,
                Decimal(winner.amount),
                Decimal(winner.max_auto_bid) if winner.max_auto_bid is not None else None,
            )
        challenger = BidStep(bidder_id, amount, max_auto_bid)
        plan = resolve_auto_bids(incumbent, challenger, Decimal(auction.min_bid_increment))
        final = plan[-1]

        end_time, extension_count = self._extension(auction, now)
        self.store.compare_and_set(db, auction, {
            "current_price": final.amount,
            "bid_count": auction.bid_count + len(plan),
            "end_time": end_time,
            "extension_count": extension_count,
        })

        if winner is not None:
            winner.is_winning = False
        bids = []
        for index, step in enumerate(plan):
            bids.append(self.ledger.append(db, Bid(
                auction_id=auction.id,
                bidder_id=step.bidder_id,
                amount=step.amount,
                max_auto_bid=step.ceiling,
                is_sealed=False,
                is_winning=index == len(plan) - 1,
                is_auto_bid=step.is_auto,
                created_at=now,
            )))
        db.flush()

        # Everyone who lost the lead during this call and did not get it back
        outbid = {step.bidder_id for step in plan[:-1]}
        if winner is not None:
            outbid.add(winner.bidder_id)
        outbid.discard(final.bidder_id)

        return BidOutcome(
            bid_id=bids[0].id,
            auction_id=auction.id,
            current_price=final.amount,
            winning_bidder_id=final.bidder_id,
            end_time=end_time,
            extended=end_time != auction.end_time,
            auto_bids=len(plan) - 1,
            outbid=outbid,
        )

    def place_bid(self, db: Session, auction_id: int, bidder_id: str, amount: Decimal,
                  max_auto_bid: Optional[Decimal] = None) -> BidOutcome:
        """
        Admit a bid or raise the reason it was refused.

        Raises NotFound, AuctionClosed, UnsupportedOperation, OwnAuction,
        InvalidBid, BidTooLow, AlreadyWinning or BidLimitExceeded. A call that
        keeps losing the compare-and-set raises ConcurrentUpdate.
        """
        amount = Decimal(amount)
        max_auto_bid = Decimal(max_auto_bid) if max_auto_bid is not None else None

        def _place():
            now = self.clock.now()
            auction = self.store.get_for_update(db, auction_id)
            winner = self._validate(db, auction, auction_id, bidder_id, amount, max_auto_bid, now)
            if auction.auction_type == AuctionType.SEALED.value:
                return self._admit_sealed(db, auction, bidder_id, amount, now)
            return self._admit_open(db, auction, winner, bidder_id, amount, max_auto_bid, now)

        try:
            outcome = run_with_cas_retry(db, _place, label=f"bid on auction {auction_id}")
        except InvariantViolation as e:
            logger.error(f"Invariant violation while bidding: {e}")
            self.store.flag_for_reconciliation(db, e.auction_id, e.reason)
            db.commit()
            raise

        if outcome.sealed:
            logger.info(f"Sealed bid {outcome.bid_id} admitted on auction {auction_id} from {bidder_id}")
            return outcome

        logger.info(
            f"Bid {outcome.bid_id} on auction {auction_id}: {bidder_id} bid {amount}, "
            f"price now {outcome.current_price} held by {outcome.winning_bidder_id} "
            f"({outcome.auto_bids} auto-bids)"
        )
        if outcome.extended:
            logger.info(f"Auction {auction_id} extended to {outcome.end_time}")

        self.notifier.notify_many(outcome.outbid, EventType.OUTBID, {
            "auction_id": auction_id,
            "current_price": outcome.current_price,
            "end_time": outcome.end_time,
        })
        return outcome
