import pytest
from sqlalchemy import func, select

from zrp.errors import NotFoundError, ValidationError
from zrp.ledger import InventoryLedger
from zrp.models import AuditEntry, InventoryTransaction, NonConformanceRecord
from zrp.receiving import Disposition, ReceivingInspectionEngine


def _count(db, model, *criteria) -> int:
    return db.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()


def _pending(db, notifier=None, qty=100, ipn="R-100") -> tuple[ReceivingInspectionEngine, int]:
    engine = ReceivingInspectionEngine(db, notifier)
    inspection = engine.receive("PO-2026-0001", 1, ipn, qty, "dock")
    return engine, inspection.id


def test_receipt_opens_pending_inspection_without_touching_stock(db) -> None:
    engine, inspection_id = _pending(db)

    inspection = engine.get(inspection_id)
    assert inspection.qty_received == 100
    assert inspection.inspected_at is None
    assert [i.id for i in engine.list_inspections("pending")] == [inspection_id]
    assert engine.list_inspections("inspected") == []
    with pytest.raises(NotFoundError):
        InventoryLedger(db).get("R-100")


def test_all_passed_credits_full_quantity(db) -> None:
    engine, inspection_id = _pending(db)

    inspection = engine.dispose(inspection_id, Disposition(qty_passed=100, inspector="qa1"), "bob")

    assert inspection.inspected_at is not None
    assert inspection.inspector == "qa1"
    assert InventoryLedger(db).get("R-100").qty_on_hand == 100
    txns = db.execute(select(InventoryTransaction).where(InventoryTransaction.ipn == "R-100")).scalars().all()
    assert [(t.type, t.qty, t.reference) for t in txns] == [("receive", 100, "PO:PO-2026-0001")]
    assert _count(db, NonConformanceRecord) == 0


def test_all_failed_opens_one_ncr_and_credits_nothing(db, notifier) -> None:
    engine, inspection_id = _pending(db, notifier)

    engine.dispose(inspection_id, Disposition(qty_failed=100, notes="cracked"), "bob")

    with pytest.raises(NotFoundError):
        InventoryLedger(db).get("R-100")
    ncr = db.execute(select(NonConformanceRecord)).scalar_one()
    assert ncr.ipn == "R-100"
    assert ncr.quantity == 100
    assert ncr.reference == "PO:PO-2026-0001"
    assert ncr.created_by == "bob"
    assert ncr.id.startswith("NCR-") and ncr.id.endswith("-001")
    assert [(event, record_id) for event, record_id, _ in notifier.events] == [("ncr.created", ncr.id)]


def test_mixed_disposition(db) -> None:
    engine, inspection_id = _pending(db)

    inspection = engine.dispose(
        inspection_id, Disposition(qty_passed=80, qty_failed=15, qty_on_hold=5), "bob"
    )

    assert InventoryLedger(db).get("R-100").qty_on_hand == 80
    assert inspection.qty_on_hold == 5
    assert db.execute(select(NonConformanceRecord.quantity)).scalar_one() == 15
    entry = db.execute(
        select(AuditEntry).where(AuditEntry.module == "receiving", AuditEntry.action == "inspected")
    ).scalar_one()
    assert entry.summary == f"Inspected RI-{inspection_id}: 80 passed, 15 failed, 5 on-hold"
    assert entry.username == "bob"


def test_second_disposition_is_rejected_without_side_effects(db) -> None:
    engine, inspection_id = _pending(db)
    engine.dispose(inspection_id, Disposition(qty_passed=100), "bob")
    audits = _count(db, AuditEntry)
    txns = _count(db, InventoryTransaction)

    with pytest.raises(NotFoundError, match="already completed"):
        engine.dispose(inspection_id, Disposition(qty_passed=100), "bob")

    assert InventoryLedger(db).get("R-100").qty_on_hand == 100
    assert _count(db, AuditEntry) == audits
    assert _count(db, InventoryTransaction) == txns


def test_quantities_cannot_exceed_received(db) -> None:
    engine, inspection_id = _pending(db, qty=10)

    with pytest.raises(ValidationError) as excinfo:
        engine.dispose(inspection_id, Disposition(qty_passed=8, qty_failed=3), "bob")

    assert "(11)" in str(excinfo.value)
    assert "(10)" in str(excinfo.value)
    assert engine.get(inspection_id).inspected_at is None


def test_negative_component_is_rejected(db) -> None:
    engine, inspection_id = _pending(db, qty=10)

    with pytest.raises(ValidationError, match="qty_failed"):
        engine.dispose(inspection_id, Disposition(qty_passed=15, qty_failed=-5), "bob")

    assert engine.get(inspection_id).inspected_at is None
    assert _count(db, InventoryTransaction) == 0


def test_unknown_inspection(db) -> None:
    with pytest.raises(NotFoundError):
        ReceivingInspectionEngine(db).dispose(999, Disposition(qty_passed=1), "bob")


def test_skip_inspection_credits_directly(db) -> None:
    engine = ReceivingInspectionEngine(db)

    assert engine.receive("PO-2026-0002", 3, "C-200", 25, "dock", skip_inspection=True) is None

    assert InventoryLedger(db).get("C-200").qty_on_hand == 25
    assert engine.list_inspections() == []


def test_receipt_validates_quantity(db) -> None:
    with pytest.raises(ValidationError):
        ReceivingInspectionEngine(db).receive("PO-2026-0001", 1, "R-100", 0, "dock")
    with pytest.raises(ValidationError):
        ReceivingInspectionEngine(db).list_inspections("lost")
