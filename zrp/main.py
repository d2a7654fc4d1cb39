from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from zrp.allocation import AllocationEngine
from zrp.config import settings
from zrp.db import SessionLocal, check_connection, unit_of_work
from zrp.errors import ZRPError
from zrp.fulfillment import FulfillmentPipeline
from zrp.ledger import InventoryLedger
from zrp.models import (
    AuditEntry,
    InventoryRecord,
    InventoryTransaction,
    Invoice,
    InvoiceLine,
    NonConformanceRecord,
    ReceivingInspection,
    SalesOrder,
    Shipment,
    ShipmentLine,
)
from zrp.orders import NewOrderLine, SalesOrderService
from zrp.receiving import Disposition, ReceivingInspectionEngine

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="ZRP Inventory Core")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(x_username: Optional[str] = Header(default=None, alias="X-Username")) -> str:
    return x_username or "system"


@app.exception_handler(ZRPError)
async def zrp_error_handler(request: Request, exc: ZRPError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "code": exc.code})


def _paginate_by_id(query, model, limit: int, cursor: Optional[Any]) -> tuple[list[Any], Optional[Any]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[Any], next_cursor: Optional[Any]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value) -> Optional[str]:
    if value is None:
        return None
    return str(Decimal(str(value)).quantize(Decimal("0.01")))


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check(db: Session = Depends(get_db)) -> dict:
    if not check_connection(db):
        raise HTTPException(status_code=503, detail="database unavailable")
    return {"status": "healthy"}


def _inventory_data(record: InventoryRecord) -> dict:
    return {
        "ipn": record.ipn,
        "qty_on_hand": record.qty_on_hand,
        "qty_reserved": record.qty_reserved,
        "qty_available": record.qty_on_hand - record.qty_reserved,
        "location": record.location,
        "reorder_point": record.reorder_point,
        "reorder_qty": record.reorder_qty,
        "description": record.description,
        "mpn": record.mpn,
        "updated_at": _iso(record.updated_at),
    }


def _transaction_data(txn: InventoryTransaction) -> dict:
    return {
        "transaction_id": txn.id,
        "ipn": txn.ipn,
        "type": txn.type,
        "qty": txn.qty,
        "reserved_qty": txn.reserved_qty,
        "reference": txn.reference,
        "notes": txn.notes,
        "created_at": _iso(txn.created_at),
    }


class InventoryTransact(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"ipn": "CAP-0402-100N", "type": "receive", "qty": 250, "reference": "PO-2026-0012"}
        }
    }
    ipn: str = Field(min_length=1)
    type: str
    qty: float
    reference: Optional[str] = None
    notes: str = ""


class InventoryEnsure(BaseModel):
    model_config = {"json_schema_extra": {"example": {"description": "100nF 0402 X7R", "mpn": "GRM155R71C104KA88D"}}}
    description: str = ""
    mpn: str = ""


class InventoryDelta(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "on_hand_delta": -5,
                "reserved_delta": -5,
                "type": "issue",
                "reference": "SO:SO-2026-0001",
                "notes": "manual issue",
            }
        }
    }
    on_hand_delta: float = 0
    reserved_delta: float = 0
    type: str
    reference: Optional[str] = None
    notes: str = ""


@app.get("/api/v1/inventory", tags=["Inventory"])
def list_inventory(
    low_stock: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> dict:
    records = InventoryLedger(db).list_records(low_stock=low_stock)
    return {"data": [_inventory_data(record) for record in records], "meta": _meta()}


@app.get("/api/v1/inventory/{ipn}", tags=["Inventory"])
def get_inventory(ipn: str, db: Session = Depends(get_db)) -> dict:
    return {"data": _inventory_data(InventoryLedger(db).get(ipn)), "meta": _meta()}


@app.get("/api/v1/inventory/{ipn}/history", tags=["Inventory"])
def get_inventory_history(ipn: str, db: Session = Depends(get_db)) -> dict:
    ledger = InventoryLedger(db)
    ledger.get(ipn)
    return {"data": [_transaction_data(txn) for txn in ledger.history(ipn)], "meta": _meta()}


@app.post("/api/v1/inventory/transact", tags=["Inventory"])
def transact_inventory(
    payload: InventoryTransact,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    ledger = InventoryLedger(db)
    with unit_of_work(db):
        ledger.transact(payload.ipn, payload.type, payload.qty, payload.reference, payload.notes)
    logger.info("%s recorded %s of %g for %s", actor, payload.type, payload.qty, payload.ipn)
    ledger.notify_low_stock()
    return {"data": _inventory_data(ledger.get(payload.ipn)), "meta": _meta()}


@app.post("/api/v1/inventory/{ipn}:ensure", tags=["Inventory"])
def ensure_inventory(
    ipn: str,
    payload: Optional[InventoryEnsure] = None,
    db: Session = Depends(get_db),
) -> dict:
    payload = payload or InventoryEnsure()
    ledger = InventoryLedger(db)
    with unit_of_work(db):
        ledger.ensure_exists(ipn, payload.description, payload.mpn)
    return {"data": _inventory_data(ledger.get(ipn)), "meta": _meta()}


@app.post("/api/v1/inventory/{ipn}/deltas", tags=["Inventory"])
def apply_inventory_delta(ipn: str, payload: InventoryDelta, db: Session = Depends(get_db)) -> dict:
    ledger = InventoryLedger(db)
    with unit_of_work(db):
        ledger.apply_delta(
            ipn,
            payload.on_hand_delta,
            payload.reserved_delta,
            payload.type,
            payload.reference,
            payload.notes,
        )
    ledger.notify_low_stock()
    return {"data": _inventory_data(ledger.get(ipn)), "meta": _meta()}


class SalesOrderLineInput(BaseModel):
    ipn: str = Field(min_length=1)
    qty: int = Field(gt=0)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    description: str = ""
    notes: str = ""


class SalesOrderCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "customer": "Acme Robotics",
                "quote_id": "Q-2026-0007",
                "lines": [{"ipn": "CAP-0402-100N", "qty": 10, "unit_price": "0.0450"}],
            }
        }
    }
    customer: str = Field(min_length=1)
    quote_id: Optional[str] = None
    notes: str = ""
    lines: list[SalesOrderLineInput] = Field(default_factory=list)


def _order_data(service: SalesOrderService, order: SalesOrder, with_lines: bool = True) -> dict:
    data = {
        "sales_order_id": order.id,
        "quote_id": order.quote_id,
        "customer": order.customer,
        "status": order.status,
        "notes": order.notes,
        "created_by": order.created_by,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }
    if with_lines:
        data["lines"] = [
            {
                "line_id": line.id,
                "ipn": line.ipn,
                "description": line.description,
                "qty": line.qty,
                "qty_allocated": line.qty_allocated,
                "qty_picked": line.qty_picked,
                "qty_shipped": line.qty_shipped,
                "unit_price": str(line.unit_price),
                "notes": line.notes,
            }
            for line in service.lines(order.id)
        ]
        data["shipment_id"] = service.shipment_id(order.id)
        data["invoice_id"] = service.invoice_id(order.id)
    return data


@app.post("/api/v1/sales-orders", tags=["Sales Orders"])
def create_sales_order(
    payload: SalesOrderCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    service = SalesOrderService(db)
    order = service.create(
        payload.customer,
        [
            NewOrderLine(
                ipn=line.ipn,
                qty=line.qty,
                unit_price=line.unit_price,
                description=line.description,
                notes=line.notes,
            )
            for line in payload.lines
        ],
        actor,
        quote_id=payload.quote_id,
        notes=payload.notes,
    )
    return {"data": _order_data(service, order), "meta": _meta()}


@app.get("/api/v1/sales-orders", tags=["Sales Orders"])
def list_sales_orders(
    status: Optional[str] = Query(default=None),
    customer: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    service = SalesOrderService(db)
    query = service.query(status=status, customer=customer)
    orders, next_cursor = _paginate_by_id(query, SalesOrder, limit, cursor)
    data = [_order_data(service, order, with_lines=False) for order in orders]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/sales-orders/{order_id}", tags=["Sales Orders"])
def get_sales_order(order_id: str, db: Session = Depends(get_db)) -> dict:
    service = SalesOrderService(db)
    return {"data": _order_data(service, service.get(order_id)), "meta": _meta()}


@app.post("/api/v1/sales-orders/{order_id}/confirm", tags=["Sales Orders"])
def confirm_sales_order(order_id: str, db: Session = Depends(get_db), actor: str = Depends(get_actor)) -> dict:
    service = SalesOrderService(db)
    return {"data": _order_data(service, service.confirm(order_id, actor)), "meta": _meta()}


@app.post("/api/v1/sales-orders/{order_id}/allocate", tags=["Sales Orders"])
def allocate_sales_order(order_id: str, db: Session = Depends(get_db), actor: str = Depends(get_actor)) -> dict:
    order = AllocationEngine(db).allocate(order_id, actor)
    return {"data": _order_data(SalesOrderService(db), order), "meta": _meta()}


@app.post("/api/v1/sales-orders/{order_id}/pick", tags=["Sales Orders"])
def pick_sales_order(order_id: str, db: Session = Depends(get_db), actor: str = Depends(get_actor)) -> dict:
    order = FulfillmentPipeline(db).pick(order_id, actor)
    return {"data": _order_data(SalesOrderService(db), order), "meta": _meta()}


@app.post("/api/v1/sales-orders/{order_id}/ship", tags=["Sales Orders"])
def ship_sales_order(order_id: str, db: Session = Depends(get_db), actor: str = Depends(get_actor)) -> dict:
    order = FulfillmentPipeline(db).ship(order_id, actor)
    return {"data": _order_data(SalesOrderService(db), order), "meta": _meta()}


@app.post("/api/v1/sales-orders/{order_id}/invoice", tags=["Sales Orders"])
def invoice_sales_order(order_id: str, db: Session = Depends(get_db), actor: str = Depends(get_actor)) -> dict:
    order = FulfillmentPipeline(db).invoice(order_id, actor)
    return {"data": _order_data(SalesOrderService(db), order), "meta": _meta()}


def _shipment_data(shipment: Shipment, lines: list[ShipmentLine]) -> dict:
    return {
        "shipment_id": shipment.id,
        "type": shipment.type,
        "status": shipment.status,
        "to_address": shipment.to_address,
        "notes": shipment.notes,
        "created_by": shipment.created_by,
        "created_at": _iso(shipment.created_at),
        "lines": [
            {"ipn": line.ipn, "qty": line.qty, "sales_order_id": line.sales_order_id}
            for line in lines
        ],
    }


def _invoice_data(invoice: Invoice, lines: list[InvoiceLine]) -> dict:
    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "sales_order_id": invoice.sales_order_id,
        "customer": invoice.customer,
        "issue_date": _iso(invoice.issue_date),
        "due_date": _iso(invoice.due_date),
        "status": invoice.status,
        "total": _money(invoice.total),
        "tax": _money(invoice.tax),
        "paid_at": _iso(invoice.paid_at),
        "lines": [
            {
                "ipn": line.ipn,
                "description": line.description,
                "quantity": line.quantity,
                "unit_price": str(line.unit_price),
                "total": _money(line.total),
            }
            for line in lines
        ],
    }


@app.get("/api/v1/shipments/{shipment_id}", tags=["Shipments"])
def get_shipment(shipment_id: str, db: Session = Depends(get_db)) -> dict:
    shipment, lines = FulfillmentPipeline(db).get_shipment(shipment_id)
    return {"data": _shipment_data(shipment, lines), "meta": _meta()}


@app.get("/api/v1/invoices/{invoice_id}", tags=["Invoices"])
def get_invoice(invoice_id: str, db: Session = Depends(get_db)) -> dict:
    invoice, lines = FulfillmentPipeline(db).get_invoice(invoice_id)
    return {"data": _invoice_data(invoice, lines), "meta": _meta()}


@app.post("/api/v1/invoices/{invoice_id}:recompute", tags=["Invoices"])
def recompute_invoice(invoice_id: str, db: Session = Depends(get_db)) -> dict:
    pipeline = FulfillmentPipeline(db)
    pipeline.recompute_invoice_total(invoice_id)
    invoice, lines = pipeline.get_invoice(invoice_id)
    return {"data": _invoice_data(invoice, lines), "meta": _meta()}


class GoodsReceipt(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"po_id": "PO-2026-0012", "po_line_id": 1, "ipn": "CAP-0402-100N", "qty": 100}
        }
    }
    po_id: str = Field(min_length=1)
    po_line_id: int
    ipn: str = Field(min_length=1)
    qty: float = Field(gt=0)
    skip_inspection: bool = False


class InspectionDisposition(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"qty_passed": 80, "qty_failed": 15, "qty_on_hold": 5, "inspector": "qa1", "notes": "bent leads"}
        }
    }
    qty_passed: float = Field(default=0, ge=0)
    qty_failed: float = Field(default=0, ge=0)
    qty_on_hold: float = Field(default=0, ge=0)
    inspector: str = ""
    notes: str = ""


def _inspection_data(inspection: ReceivingInspection) -> dict:
    return {
        "inspection_id": inspection.id,
        "po_id": inspection.po_id,
        "po_line_id": inspection.po_line_id,
        "ipn": inspection.ipn,
        "qty_received": inspection.qty_received,
        "qty_passed": inspection.qty_passed,
        "qty_failed": inspection.qty_failed,
        "qty_on_hold": inspection.qty_on_hold,
        "inspector": inspection.inspector,
        "inspected_at": _iso(inspection.inspected_at),
        "notes": inspection.notes,
        "created_at": _iso(inspection.created_at),
    }


@app.post("/api/v1/receiving", tags=["Receiving"])
def receive_goods(
    payload: GoodsReceipt,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    inspection = ReceivingInspectionEngine(db).receive(
        payload.po_id,
        payload.po_line_id,
        payload.ipn,
        payload.qty,
        actor,
        skip_inspection=payload.skip_inspection,
    )
    warnings = []
    if inspection is None:
        warnings.append(f"{payload.ipn} credited to stock without inspection")
    data = _inspection_data(inspection) if inspection is not None else None
    return {"data": data, "meta": _meta(warnings=warnings)}


@app.get("/api/v1/receiving", tags=["Receiving"])
def list_receiving(
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    inspections = ReceivingInspectionEngine(db).list_inspections(status)
    return {"data": [_inspection_data(inspection) for inspection in inspections], "meta": _meta()}


@app.get("/api/v1/receiving/{inspection_id}", tags=["Receiving"])
def get_receiving(inspection_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _inspection_data(ReceivingInspectionEngine(db).get(inspection_id)), "meta": _meta()}


@app.post("/api/v1/receiving/{inspection_id}/inspect", tags=["Receiving"])
def inspect_receiving(
    inspection_id: int,
    payload: InspectionDisposition,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    inspection = ReceivingInspectionEngine(db).dispose(
        inspection_id,
        Disposition(
            qty_passed=payload.qty_passed,
            qty_failed=payload.qty_failed,
            qty_on_hold=payload.qty_on_hold,
            inspector=payload.inspector,
            notes=payload.notes,
        ),
        actor,
    )
    return {"data": _inspection_data(inspection), "meta": _meta()}


@app.get("/api/v1/ncrs", tags=["Quality"])
def list_ncrs(
    ipn: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(NonConformanceRecord)
    if ipn is not None:
        query = query.filter(NonConformanceRecord.ipn == ipn)
    ncrs, next_cursor = _paginate_by_id(query, NonConformanceRecord, limit, cursor)
    data = [
        {
            "ncr_id": ncr.id,
            "title": ncr.title,
            "description": ncr.description,
            "ipn": ncr.ipn,
            "quantity": ncr.quantity,
            "reference": ncr.reference,
            "defect_type": ncr.defect_type,
            "severity": ncr.severity,
            "status": ncr.status,
            "created_by": ncr.created_by,
            "created_at": _iso(ncr.created_at),
        }
        for ncr in ncrs
    ]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/audit-log", tags=["Audit"])
def list_audit_log(
    module: Optional[str] = Query(default=None),
    record_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(AuditEntry)
    if module is not None:
        query = query.filter(AuditEntry.module == module)
    if record_id is not None:
        query = query.filter(AuditEntry.record_id == record_id)
    entries, next_cursor = _paginate_by_id(query, AuditEntry, limit, cursor)
    data = [
        {
            "audit_id": entry.id,
            "username": entry.username,
            "action": entry.action,
            "module": entry.module,
            "record_id": entry.record_id,
            "summary": entry.summary,
            "created_at": _iso(entry.created_at),
        }
        for entry in entries
    ]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}
