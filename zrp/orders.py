import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from zrp.audit import log_audit
from zrp.db import unit_of_work, utcnow
from zrp.errors import ValidationError
from zrp.models import Invoice, SalesOrder, SalesOrderLine, ShipmentLine
from zrp.sequences import next_id
from zrp.state_machine import OrderStateMachine, OrderStatus

logger = logging.getLogger(__name__)


@dataclass
class NewOrderLine:
    ipn: str
    qty: int
    unit_price: Decimal = Decimal("0")
    description: str = ""
    notes: str = ""


class SalesOrderService:
    def __init__(self, db: Session) -> None:
        self.db = db
        self.states = OrderStateMachine(db)

    def create(
        self,
        customer: str,
        lines: list[NewOrderLine],
        actor: str,
        quote_id: Optional[str] = None,
        notes: str = "",
    ) -> SalesOrder:
        if not customer or not customer.strip():
            raise ValidationError("customer is required")
        for index, line in enumerate(lines):
            if not line.ipn:
                raise ValidationError(f"lines[{index}].ipn is required")
            if line.qty <= 0:
                raise ValidationError(f"lines[{index}].qty must be positive, got {line.qty}")
            if line.unit_price < 0:
                raise ValidationError(f"lines[{index}].unit_price must be non-negative, got {line.unit_price}")

        with unit_of_work(self.db):
            now = utcnow()
            order = SalesOrder(
                id=next_id(self.db, SalesOrder, "SO", 4),
                quote_id=quote_id,
                customer=customer,
                status=OrderStatus.DRAFT.value,
                notes=notes,
                created_by=actor,
                created_at=now,
                updated_at=now,
            )
            self.db.add(order)
            self.db.flush()
            for line in lines:
                self.db.add(
                    SalesOrderLine(
                        sales_order_id=order.id,
                        ipn=line.ipn,
                        description=line.description,
                        qty=line.qty,
                        unit_price=line.unit_price,
                        notes=line.notes,
                    )
                )
            log_audit(self.db, actor, "created", "sales_order", order.id, f"Created {order.id} for {customer}")
            order_id = order.id
        logger.info("created sales order %s for %s with %d lines", order_id, customer, len(lines))
        return self.get(order_id)

    def get(self, order_id: str) -> SalesOrder:
        return self.states.load(order_id)

    def lines(self, order_id: str) -> list[SalesOrderLine]:
        return list(
            self.db.execute(
                select(SalesOrderLine)
                .where(SalesOrderLine.sales_order_id == order_id)
                .order_by(SalesOrderLine.id)
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def shipment_id(self, order_id: str) -> Optional[str]:
        return self.db.execute(
            select(ShipmentLine.shipment_id).where(ShipmentLine.sales_order_id == order_id).limit(1)
        ).scalar_one_or_none()

    def invoice_id(self, order_id: str) -> Optional[str]:
        return self.db.execute(
            select(Invoice.id).where(Invoice.sales_order_id == order_id).limit(1)
        ).scalar_one_or_none()

    def query(self, status: Optional[str] = None, customer: Optional[str] = None):
        query = self.db.query(SalesOrder)
        if status is not None:
            try:
                OrderStatus(status)
            except ValueError:
                raise ValidationError(f"unknown sales order status {status!r}") from None
            query = query.filter(SalesOrder.status == status)
        if customer is not None:
            query = query.filter(SalesOrder.customer.like(f"%{customer}%"))
        return query

    def confirm(self, order_id: str, actor: str) -> SalesOrder:
        self.states.check(self.get(order_id), OrderStatus.CONFIRMED)
        require_lines(self.lines(order_id), order_id)
        with unit_of_work(self.db):
            previous = self.states.transition(order_id, OrderStatus.CONFIRMED)
            log_audit(
                self.db,
                actor,
                OrderStatus.CONFIRMED.value,
                "sales_order",
                order_id,
                f"Transitioned {order_id} from {previous.value} to {OrderStatus.CONFIRMED.value}",
            )
        return self.get(order_id)


def require_lines(lines: list[SalesOrderLine], order_id: str) -> None:
    if not lines:
        raise ValidationError(f"sales order {order_id} has no lines")

