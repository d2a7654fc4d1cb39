from decimal import Decimal

import pytest
from sqlalchemy import select

from zrp.allocation import AllocationEngine
from zrp.db import unit_of_work
from zrp.errors import InsufficientInventoryError, InvalidTransitionError
from zrp.ledger import InventoryLedger
from zrp.models import AuditEntry
from zrp.orders import NewOrderLine, SalesOrderService


def test_allocation_fails_when_stock_is_short(db, stock, confirmed_order) -> None:
    stock("R-100", 5)
    order_id = confirmed_order(("R-100", 10, "2.00"))

    with pytest.raises(InsufficientInventoryError) as excinfo:
        AllocationEngine(db).allocate(order_id, "alice")

    assert "R-100" in str(excinfo.value)
    assert SalesOrderService(db).get(order_id).status == "confirmed"
    assert InventoryLedger(db).get("R-100").qty_reserved == 0


def test_allocation_reserves_every_line(db, stock, confirmed_order) -> None:
    stock("R-100", 100)
    stock("C-200", 40)
    order_id = confirmed_order(("R-100", 10, "2.00"), ("C-200", 15, "0.10"))

    order = AllocationEngine(db).allocate(order_id, "alice")

    assert order.status == "allocated"
    ledger = InventoryLedger(db)
    assert ledger.get("R-100").qty_reserved == 10
    assert ledger.get("R-100").qty_on_hand == 100
    assert ledger.get("C-200").qty_reserved == 15
    assert [line.qty_allocated for line in SalesOrderService(db).lines(order_id)] == [10, 15]

    reservation = ledger.history("R-100")[0]
    assert reservation.reference == f"SO:{order_id}"
    assert reservation.reserved_qty == 10
    assert db.execute(
        select(AuditEntry).where(AuditEntry.record_id == order_id, AuditEntry.action == "allocated")
    ).scalar_one().username == "alice"


def test_lines_sharing_a_part_are_checked_together(db, stock, confirmed_order) -> None:
    stock("R-100", 12)
    order_id = confirmed_order(("R-100", 8, "1.00"), ("R-100", 8, "1.00"))

    with pytest.raises(InsufficientInventoryError):
        AllocationEngine(db).allocate(order_id, "alice")
    assert InventoryLedger(db).get("R-100").qty_reserved == 0


def test_missing_inventory_record_counts_as_zero(db, confirmed_order) -> None:
    order_id = confirmed_order(("NEW-1", 1, "1.00"))
    with pytest.raises(InsufficientInventoryError) as excinfo:
        AllocationEngine(db).allocate(order_id, "alice")
    assert excinfo.value.available == 0


def test_partial_reservation_rolls_back(db, stock, confirmed_order, monkeypatch) -> None:
    stock("R-100", 50)
    stock("C-200", 50)
    order_id = confirmed_order(("R-100", 10, "1.00"), ("C-200", 10, "1.00"))
    engine = AllocationEngine(db)

    # pre-check passes, then another order takes C-200 before our reservation lands
    monkeypatch.setattr(engine, "check_availability", lambda lines: None)
    with unit_of_work(db):
        engine.ledger.reserve("C-200", 45, "SO:other")

    with pytest.raises(InsufficientInventoryError):
        engine.allocate(order_id, "alice")

    ledger = InventoryLedger(db)
    assert ledger.get("R-100").qty_reserved == 0
    assert ledger.get("C-200").qty_reserved == 45
    assert SalesOrderService(db).get(order_id).status == "confirmed"


def test_allocate_requires_confirmed(db, stock) -> None:
    stock("R-100", 10)
    order = SalesOrderService(db).create("Acme", [NewOrderLine(ipn="R-100", qty=1, unit_price=Decimal("1"))], "alice")
    with pytest.raises(InvalidTransitionError, match="status=confirmed"):
        AllocationEngine(db).allocate(order.id, "alice")
