from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from zrp.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")

TRANSACTION_TYPES = ("receive", "issue", "adjust", "transfer", "return", "scrap")
ORDER_STATUSES = ("draft", "confirmed", "allocated", "picked", "shipped", "invoiced")


def _in(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class InventoryRecord(Base):
    __tablename__ = "inventory"

    ipn: Mapped[str] = mapped_column(Text, primary_key=True)
    qty_on_hand: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    qty_reserved: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    location: Mapped[str | None] = mapped_column(Text)
    reorder_point: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    reorder_qty: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    mpn: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("qty_on_hand >= 0", name="inventory_qty_on_hand_non_negative"),
        CheckConstraint("qty_reserved >= 0", name="inventory_qty_reserved_non_negative"),
        CheckConstraint("reorder_point >= 0", name="inventory_reorder_point_non_negative"),
        CheckConstraint("reorder_qty >= 0", name="inventory_reorder_qty_non_negative"),
    )


class InventoryTransaction(Base):
    __tablename__ = "inventory_transactions"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    ipn: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    qty: Mapped[float] = mapped_column(Float, nullable=False)
    reserved_qty: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    reference: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(_in("type", TRANSACTION_TYPES), name="inventory_transaction_type"),
        Index("ix_inventory_transactions_ipn", "ipn"),
    )


class SalesOrder(Base):
    __tablename__ = "sales_orders"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    quote_id: Mapped[str | None] = mapped_column(Text)
    customer: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="draft")
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_by: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(_in("status", ORDER_STATUSES), name="sales_order_status"),
        Index("ix_sales_orders_status", "status"),
        Index("ix_sales_orders_customer", "customer"),
    )


class SalesOrderLine(Base):
    __tablename__ = "sales_order_lines"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    sales_order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("sales_orders.id"), nullable=False
    )
    ipn: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    qty_allocated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    qty_picked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    qty_shipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unit_price: Mapped[Numeric] = mapped_column(Numeric(12, 4), nullable=False, default=0)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    __table_args__ = (
        CheckConstraint("qty > 0", name="sales_order_line_qty_positive"),
        CheckConstraint("qty_allocated >= 0", name="sales_order_line_qty_allocated"),
        CheckConstraint("qty_picked >= 0", name="sales_order_line_qty_picked"),
        CheckConstraint("qty_shipped >= 0", name="sales_order_line_qty_shipped"),
        CheckConstraint("unit_price >= 0", name="sales_order_line_unit_price"),
        Index("ix_sales_order_lines_order_id", "sales_order_id"),
    )


class Shipment(Base):
    __tablename__ = "shipments"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    type: Mapped[str] = mapped_column(Text, nullable=False, default="outbound")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="draft")
    to_address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_by: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(_in("type", ("inbound", "outbound", "transfer")), name="shipment_type"),
        CheckConstraint(
            _in("status", ("draft", "packed", "shipped", "delivered", "cancelled")),
            name="shipment_status",
        ),
    )


class ShipmentLine(Base):
    __tablename__ = "shipment_lines"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    shipment_id: Mapped[str] = mapped_column(Text, ForeignKey("shipments.id"), nullable=False)
    ipn: Mapped[str] = mapped_column(Text, nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    sales_order_id: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        CheckConstraint("qty > 0", name="shipment_line_qty_positive"),
        Index("ix_shipment_lines_sales_order_id", "sales_order_id"),
    )


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    invoice_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    sales_order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("sales_orders.id"), nullable=False
    )
    customer: Mapped[str] = mapped_column(Text, nullable=False)
    issue_date: Mapped[Date] = mapped_column(Date, nullable=False)
    due_date: Mapped[Date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="draft")
    total: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    tax: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            _in("status", ("draft", "sent", "paid", "overdue", "cancelled")),
            name="invoice_status",
        ),
        Index("ix_invoices_sales_order_id", "sales_order_id"),
    )


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(Text, ForeignKey("invoices.id"), nullable=False)
    ipn: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Numeric] = mapped_column(Numeric(12, 4), nullable=False)
    total: Mapped[Numeric] = mapped_column(Numeric(12, 2), nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="invoice_line_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="invoice_line_unit_price"),
        CheckConstraint("total >= 0", name="invoice_line_total"),
    )


class ReceivingInspection(Base):
    __tablename__ = "receiving_inspections"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    po_id: Mapped[str] = mapped_column(Text, nullable=False)
    po_line_id: Mapped[int] = mapped_column(Integer, nullable=False)
    ipn: Mapped[str] = mapped_column(Text, nullable=False)
    qty_received: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    qty_passed: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    qty_failed: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    qty_on_hold: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    inspector: Mapped[str | None] = mapped_column(Text)
    inspected_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("qty_received >= 0", name="receiving_qty_received"),
        CheckConstraint("qty_passed >= 0", name="receiving_qty_passed"),
        CheckConstraint("qty_failed >= 0", name="receiving_qty_failed"),
        CheckConstraint("qty_on_hold >= 0", name="receiving_qty_on_hold"),
        Index("ix_receiving_inspections_po_id", "po_id"),
    )


class NonConformanceRecord(Base):
    __tablename__ = "ncrs"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    ipn: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    reference: Mapped[str | None] = mapped_column(Text)
    defect_type: Mapped[str | None] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(Text, nullable=False, default="minor")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="open")
    created_by: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(_in("severity", ("minor", "major", "critical")), name="ncr_severity"),
        CheckConstraint(
            _in("status", ("open", "investigating", "resolved", "closed")), name="ncr_status"
        ),
        Index("ix_ncrs_ipn", "ipn"),
    )


class AuditEntry(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(Text, nullable=False, default="system")
    action: Mapped[str] = mapped_column(Text, nullable=False)
    module: Mapped[str] = mapped_column(Text, nullable=False)
    record_id: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_audit_log_module_record", "module", "record_id"),)


class IdSequence(Base):
    __tablename__ = "id_sequences"

    name: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
