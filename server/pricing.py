import math
from datetime import datetime
from decimal import Decimal
from typing import Optional

from database import Auction, AuctionType


def dutch_price(auction: Auction, now: datetime) -> Decimal:
    """
    Current Dutch price, computed lazily from the decay schedule.

    price = max(end, start - floor(elapsed / interval) * decrement), with
    elapsed measured from start_time. Before start_time the start price applies.
    """
    start_price = Decimal(auction.dutch_start_price)
    floor_price = Decimal(auction.dutch_end_price)
    elapsed = (now - auction.start_time).total_seconds()
    if elapsed <= 0 or not auction.dutch_decrement_interval:
        return start_price
    intervals = math.floor(elapsed / auction.dutch_decrement_interval)
    decayed = start_price - intervals * Decimal(auction.dutch_decrement_amount)
    return max(floor_price, decayed)


def effective_price(auction: Auction, now: datetime) -> Decimal:
    """Price a reader should see: decayed for open Dutch auctions, stored otherwise."""
    if auction.auction_type == AuctionType.DUTCH.value and auction.winner_id is None:
        return dutch_price(auction, now)
    return Decimal(auction.current_price)


def minimum_next_bid(auction: Auction) -> Decimal:
    return Decimal(auction.current_price) + Decimal(auction.min_bid_increment)


def purchase_price(auction: Auction, now: datetime) -> Optional[Decimal]:
    """Price BuyNow charges, or None when the auction cannot be bought outright."""
    if auction.auction_type == AuctionType.DUTCH.value:
        return dutch_price(auction, now)
    if auction.buy_now_price is not None:
        return Decimal(auction.buy_now_price)
    return None


def reserve_met(auction: Auction, amount: Decimal) -> bool:
    return auction.reserve_price is None or Decimal(amount) >= Decimal(auction.reserve_price)
