import logging
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from zrp.db import utcnow
from zrp.errors import ConcurrentTransitionError, InvalidTransitionError, NotFoundError
from zrp.models import SalesOrder

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    ALLOCATED = "allocated"
    PICKED = "picked"
    SHIPPED = "shipped"
    INVOICED = "invoiced"


# The only legal (from, to) edges of the sales order lifecycle.
TRANSITIONS: frozenset[tuple[OrderStatus, OrderStatus]] = frozenset(
    {
        (OrderStatus.DRAFT, OrderStatus.CONFIRMED),
        (OrderStatus.CONFIRMED, OrderStatus.ALLOCATED),
        (OrderStatus.ALLOCATED, OrderStatus.PICKED),
        (OrderStatus.PICKED, OrderStatus.SHIPPED),
        (OrderStatus.SHIPPED, OrderStatus.INVOICED),
    }
)


def required_status(target: OrderStatus) -> Optional[OrderStatus]:
    for source, destination in TRANSITIONS:
        if destination == target:
            return source
    return None


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return (current, target) in TRANSITIONS


_sales_orders = SalesOrder.__table__


class OrderStateMachine:
    """Validates and applies sales order status changes.

    ``transition`` is a compare-and-swap: the UPDATE only matches while the
    row still holds the status that was validated, so of two racing callers
    exactly one wins and the other gets ConcurrentTransitionError. Nothing
    is committed here; stages call this first inside their unit of work so
    a later failure rolls the status back with everything else.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def load(self, order_id: str) -> SalesOrder:
        order = self.db.get(SalesOrder, order_id, populate_existing=True)
        if order is None:
            raise NotFoundError(f"sales order {order_id} not found")
        return order

    def check(self, order: SalesOrder, target: OrderStatus) -> OrderStatus:
        current = OrderStatus(order.status)
        if not can_transition(current, target):
            required = required_status(target)
            raise InvalidTransitionError(
                order.id,
                current.value,
                target.value,
                required.value if required else None,
            )
        return current

    def transition(self, order_id: str, target: OrderStatus) -> OrderStatus:
        """Move ``order_id`` to ``target``; return the status it left."""
        order = self.load(order_id)
        expected = self.check(order, target)
        result = self.db.execute(
            update(_sales_orders)
            .where(_sales_orders.c.id == order_id, _sales_orders.c.status == expected.value)
            .values(status=target.value, updated_at=utcnow())
        )
        if result.rowcount == 0:
            logger.warning(
                "lost status race on %s: expected %s, requested %s", order_id, expected.value, target.value
            )
            raise ConcurrentTransitionError(
                f"sales order {order_id} is no longer {expected.value}; "
                f"another request changed it before {target.value}"
            )
        logger.info("sales order %s: %s -> %s", order_id, expected.value, target.value)
        return expected
