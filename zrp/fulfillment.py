"""Pick, ship and invoice stages of a sales order.

Each stage checks the order's exact prior status before touching
anything, then runs its status compare-and-swap first inside one unit of
work so the losing side of a race never reaches the ledger.
"""

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from zrp.audit import Notifier, log_audit
from zrp.config import settings
from zrp.db import unit_of_work, utcnow
from zrp.errors import InsufficientInventoryError, NotFoundError
from zrp.ledger import InventoryLedger
from zrp.models import InventoryRecord, Invoice, InvoiceLine, SalesOrder, SalesOrderLine, Shipment, ShipmentLine
from zrp.orders import SalesOrderService, require_lines
from zrp.sequences import next_id
from zrp.state_machine import OrderStatus

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

_order_lines = SalesOrderLine.__table__


def line_amount(qty: int, unit_price) -> Decimal:
    return Decimal(qty) * Decimal(str(unit_price))


def line_total(qty: int, unit_price) -> Decimal:
    return line_amount(qty, unit_price).quantize(CENTS, rounding=ROUND_HALF_UP)


def invoice_total(amounts) -> Decimal:
    """Sum unrounded line amounts, then round once to cents."""
    return sum(amounts, Decimal("0")).quantize(CENTS, rounding=ROUND_HALF_UP)


def order_total(lines: list[SalesOrderLine]) -> Decimal:
    return invoice_total(line_amount(line.qty, line.unit_price) for line in lines)


class FulfillmentPipeline:
    def __init__(
        self,
        db: Session,
        notifier: Optional[Notifier] = None,
        tax_rate: Optional[float] = None,
        due_days: Optional[int] = None,
    ) -> None:
        self.db = db
        self.orders = SalesOrderService(db)
        self.ledger = InventoryLedger(db, notifier)
        self.tax_rate = Decimal(str(settings.invoice_tax_rate if tax_rate is None else tax_rate))
        self.due_days = settings.invoice_due_days if due_days is None else due_days

    def _prepare(self, order_id: str, target: OrderStatus) -> tuple[SalesOrder, list[SalesOrderLine]]:
        order = self.orders.get(order_id)
        self.orders.states.check(order, target)
        lines = self.orders.lines(order_id)
        require_lines(lines, order_id)
        return order, lines

    def _set_line_qty(self, line: SalesOrderLine, **values) -> None:
        self.db.execute(update(_order_lines).where(_order_lines.c.id == line.id).values(**values))

    def pick(self, order_id: str, actor: str) -> SalesOrder:
        # picking only records that the parts were pulled; stock is untouched
        _, lines = self._prepare(order_id, OrderStatus.PICKED)
        with unit_of_work(self.db):
            self.orders.states.transition(order_id, OrderStatus.PICKED)
            for line in lines:
                self._set_line_qty(line, qty_picked=line.qty)
            log_audit(self.db, actor, OrderStatus.PICKED.value, "sales_order", order_id, f"Picked {order_id}")
        return self.orders.get(order_id)

    def _check_stock_for_shipping(self, lines: list[SalesOrderLine]) -> None:
        needed: dict[str, int] = {}
        for line in lines:
            needed[line.ipn] = needed.get(line.ipn, 0) + line.qty
        for ipn, qty in needed.items():
            row = self.db.execute(
                select(InventoryRecord.qty_on_hand, InventoryRecord.qty_reserved).where(
                    InventoryRecord.ipn == ipn
                )
            ).first()
            if row is None:
                raise InsufficientInventoryError(ipn, qty, 0)
            on_hand, reserved = row
            if on_hand < qty or reserved < qty:
                raise InsufficientInventoryError(ipn, qty, min(on_hand, reserved))

    def ship(self, order_id: str, actor: str) -> SalesOrder:
        order, lines = self._prepare(order_id, OrderStatus.SHIPPED)
        self._check_stock_for_shipping(lines)

        reference = f"SO:{order_id}"
        with unit_of_work(self.db):
            self.orders.states.transition(order_id, OrderStatus.SHIPPED)
            now = utcnow()
            shipment = Shipment(
                id=next_id(self.db, Shipment, "SH", 4),
                type="outbound",
                status="packed",
                to_address=order.customer,
                notes=f"Shipment for {order_id}",
                created_by=actor,
                created_at=now,
                updated_at=now,
            )
            self.db.add(shipment)
            self.db.flush()
            for line in lines:
                self.ledger.apply_delta(
                    line.ipn,
                    -line.qty,
                    -line.qty,
                    "issue",
                    reference,
                    f"Shipped {line.qty} for {order_id}",
                )
                self.db.add(
                    ShipmentLine(
                        shipment_id=shipment.id,
                        ipn=line.ipn,
                        qty=line.qty,
                        sales_order_id=order_id,
                    )
                )
                self._set_line_qty(line, qty_shipped=line.qty)
            shipment_id = shipment.id
            log_audit(
                self.db,
                actor,
                OrderStatus.SHIPPED.value,
                "sales_order",
                order_id,
                f"Shipped {order_id} via shipment {shipment_id}",
            )
        logger.info("shipped %s via %s", order_id, shipment_id)
        self.ledger.notify_low_stock()
        return self.orders.get(order_id)

    def invoice(self, order_id: str, actor: str) -> SalesOrder:
        order, lines = self._prepare(order_id, OrderStatus.INVOICED)
        total = order_total(lines)
        tax = (total * self.tax_rate).quantize(CENTS, rounding=ROUND_HALF_UP)

        with unit_of_work(self.db):
            self.orders.states.transition(order_id, OrderStatus.INVOICED)
            invoice_id = next_id(self.db, Invoice, "INV", 4)
            today = utcnow().date()
            self.db.add(
                Invoice(
                    id=invoice_id,
                    invoice_number=invoice_id,
                    sales_order_id=order_id,
                    customer=order.customer,
                    issue_date=today,
                    due_date=today + timedelta(days=self.due_days),
                    status="draft",
                    total=total,
                    tax=tax,
                    created_at=utcnow(),
                )
            )
            self.db.flush()
            for line in lines:
                self.db.add(
                    InvoiceLine(
                        invoice_id=invoice_id,
                        ipn=line.ipn,
                        description=line.description or line.ipn,
                        quantity=line.qty,
                        unit_price=line.unit_price,
                        total=line_total(line.qty, line.unit_price),
                    )
                )
            log_audit(
                self.db,
                actor,
                OrderStatus.INVOICED.value,
                "sales_order",
                order_id,
                f"Created invoice {invoice_id} for {order_id} ({total})",
            )
        logger.info("invoiced %s as %s, total %s", order_id, invoice_id, total)
        return self.orders.get(order_id)

    def get_shipment(self, shipment_id: str) -> tuple[Shipment, list[ShipmentLine]]:
        shipment = self.db.get(Shipment, shipment_id)
        if shipment is None:
            raise NotFoundError(f"shipment {shipment_id} not found")
        lines = self.db.execute(
            select(ShipmentLine).where(ShipmentLine.shipment_id == shipment_id).order_by(ShipmentLine.id)
        ).scalars()
        return shipment, list(lines)

    def get_invoice(self, invoice_id: str) -> tuple[Invoice, list[InvoiceLine]]:
        invoice = self.db.get(Invoice, invoice_id, populate_existing=True)
        if invoice is None:
            raise NotFoundError(f"invoice {invoice_id} not found")
        lines = self.db.execute(
            select(InvoiceLine).where(InvoiceLine.invoice_id == invoice_id).order_by(InvoiceLine.id)
        ).scalars()
        return invoice, list(lines)

    def recompute_invoice_total(self, invoice_id: str) -> Invoice:
        """Re-derive an invoice total from its lines."""
        _, lines = self.get_invoice(invoice_id)
        total = invoice_total(line_amount(line.quantity, line.unit_price) for line in lines)
        tax = (total * self.tax_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        invoices = Invoice.__table__
        with unit_of_work(self.db):
            self.db.execute(update(invoices).where(invoices.c.id == invoice_id).values(total=total, tax=tax))
        invoice, _ = self.get_invoice(invoice_id)
        return invoice
