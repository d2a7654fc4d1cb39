import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from zrp.audit import Notifier, log_audit
from zrp.db import unit_of_work
from zrp.errors import InsufficientInventoryError
from zrp.ledger import InventoryLedger
from zrp.models import SalesOrder, SalesOrderLine
from zrp.orders import SalesOrderService, require_lines
from zrp.state_machine import OrderStatus

logger = logging.getLogger(__name__)

_order_lines = SalesOrderLine.__table__


class AllocationEngine:
    """Reserves stock for every line of a confirmed order, all or nothing."""

    def __init__(self, db: Session, notifier: Optional[Notifier] = None) -> None:
        self.db = db
        self.orders = SalesOrderService(db)
        self.ledger = InventoryLedger(db, notifier)

    def check_availability(self, lines: list[SalesOrderLine]) -> None:
        """Raise for the first line whose part cannot cover its quantity.

        Lines sharing an IPN draw on the same availability.
        """
        needed: dict[str, int] = {}
        for line in lines:
            needed[line.ipn] = needed.get(line.ipn, 0) + line.qty
            available = self.ledger.available(line.ipn) or 0
            if needed[line.ipn] > available:
                raise InsufficientInventoryError(line.ipn, needed[line.ipn], available)

    def allocate(self, order_id: str, actor: str) -> SalesOrder:
        order = self.orders.get(order_id)
        self.orders.states.check(order, OrderStatus.ALLOCATED)
        lines = self.orders.lines(order_id)
        require_lines(lines, order_id)
        try:
            self.check_availability(lines)
        except InsufficientInventoryError as exc:
            logger.warning("allocation of %s rejected: %s", order_id, exc)
            raise

        reference = f"SO:{order_id}"
        with unit_of_work(self.db):
            self.orders.states.transition(order_id, OrderStatus.ALLOCATED)
            for line in lines:
                # re-checks availability in the same statement; another order
                # may have reserved the part since check_availability ran
                self.ledger.reserve(line.ipn, line.qty, reference, f"Reserved {line.qty} for {order_id}")
                self.db.execute(
                    update(_order_lines).where(_order_lines.c.id == line.id).values(qty_allocated=line.qty)
                )
            log_audit(
                self.db,
                actor,
                OrderStatus.ALLOCATED.value,
                "sales_order",
                order_id,
                f"Allocated {len(lines)} lines for {order_id}",
            )
        logger.info("allocated %s (%d lines)", order_id, len(lines))
        return self.orders.get(order_id)
