import random
import string
import time
import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from database import Order

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_order_number() -> str:
    """ORD-<millisecond timestamp in base 36>-<4 random characters>."""
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(random.choice(_BASE36) for _ in range(4))
    return f"ORD-{timestamp}-{suffix}"


class OrderService:
    """Creates the order for a settled auction inside the caller's transaction."""

    def create_order(self, db: Session, buyer_id: str, seller_id: str, product_ref: str,
                     amount: Decimal, auction_id: int) -> Order:
        order = Order(
            order_number=generate_order_number(),
            auction_id=auction_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            product_ref=product_ref,
            amount=amount,
        )
        db.add(order)
        # Flush so the unique constraint on auction_id fires inside this transaction
        db.flush()
        logger.info(f"Order {order.order_number} created for auction {auction_id}: buyer={buyer_id}, amount={amount}")
        return order

    def for_auction(self, db: Session, auction_id: int):
        return db.query(Order).filter(Order.auction_id == auction_id).first()
