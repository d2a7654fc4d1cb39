import pytest
from sqlalchemy import func, insert, select

from zrp.db import unit_of_work
from zrp.errors import InsufficientInventoryError, NotFoundError, StorageError, ValidationError
from zrp.ledger import InventoryLedger
from zrp.models import InventoryRecord, InventoryTransaction


def _txn_count(db, ipn: str) -> int:
    return db.execute(
        select(func.count()).select_from(InventoryTransaction).where(InventoryTransaction.ipn == ipn)
    ).scalar_one()


def test_ensure_exists_is_idempotent(db) -> None:
    ledger = InventoryLedger(db)
    with unit_of_work(db):
        ledger.ensure_exists("R-100", description="10k resistor")
        ledger.apply_delta("R-100", 25, 0, "receive", "seed")
    with unit_of_work(db):
        ledger.ensure_exists("R-100", description="overwritten?")

    record = ledger.get("R-100")
    assert record.qty_on_hand == 25
    assert record.qty_reserved == 0
    assert record.description == "10k resistor"


def test_each_delta_logs_exactly_one_transaction(db) -> None:
    ledger = InventoryLedger(db)
    with unit_of_work(db):
        ledger.ensure_exists("C-200")
        ledger.apply_delta("C-200", 10, 0, "receive", "PO:PO-2026-0001")
        ledger.apply_delta("C-200", 0, 4, "adjust", "SO:SO-2026-0001")
        ledger.apply_delta("C-200", -4, -4, "issue", "SO:SO-2026-0001")

    assert _txn_count(db, "C-200") == 3
    record = ledger.get("C-200")
    assert record.qty_on_hand == 6
    assert record.qty_reserved == 0

    newest = ledger.history("C-200")[0]
    assert newest.type == "issue"
    assert newest.qty == 4
    assert newest.reserved_qty == -4


def test_negative_balance_is_rejected_and_rolled_back(db) -> None:
    ledger = InventoryLedger(db)
    with unit_of_work(db):
        ledger.ensure_exists("U-300")
        ledger.apply_delta("U-300", 3, 0, "receive", "seed")

    with pytest.raises(StorageError) as excinfo:
        with unit_of_work(db):
            ledger.apply_delta("U-300", -5, 0, "issue", "too many")
    assert "U-300" in str(excinfo.value)

    record = ledger.get("U-300")
    assert record.qty_on_hand == 3
    assert _txn_count(db, "U-300") == 1


def test_negative_reserved_is_rejected(db) -> None:
    ledger = InventoryLedger(db)
    with unit_of_work(db):
        ledger.ensure_exists("U-301")
        ledger.apply_delta("U-301", 3, 0, "receive", "seed")

    with pytest.raises(StorageError):
        with unit_of_work(db):
            ledger.apply_delta("U-301", 0, -1, "adjust", "unreserve")
    assert ledger.get("U-301").qty_reserved == 0


def test_delta_on_unknown_part_is_not_found(db) -> None:
    ledger = InventoryLedger(db)
    with pytest.raises(NotFoundError):
        with unit_of_work(db):
            ledger.apply_delta("NOPE-1", 1, 0, "receive", None)


def test_invalid_transaction_type(db) -> None:
    ledger = InventoryLedger(db)
    with pytest.raises(ValidationError):
        ledger.apply_delta("R-100", 1, 0, "borrow", None)


def test_reserve_cannot_exceed_available(db) -> None:
    ledger = InventoryLedger(db)
    with unit_of_work(db):
        ledger.ensure_exists("IC-400")
        ledger.apply_delta("IC-400", 10, 0, "receive", "seed")
    with unit_of_work(db):
        ledger.reserve("IC-400", 7, "SO:SO-2026-0001")

    with pytest.raises(InsufficientInventoryError) as excinfo:
        with unit_of_work(db):
            ledger.reserve("IC-400", 4, "SO:SO-2026-0002")
    assert "IC-400" in str(excinfo.value)
    assert excinfo.value.available == 3

    record = ledger.get("IC-400")
    assert record.qty_reserved == 7
    assert ledger.available("IC-400") == 3


def test_transact_debit_respects_reservations(db) -> None:
    ledger = InventoryLedger(db)
    with unit_of_work(db):
        ledger.transact("IC-401", "receive", 10)
        ledger.reserve("IC-401", 8, "SO:SO-2026-0003")

    with pytest.raises(InsufficientInventoryError):
        with unit_of_work(db):
            ledger.transact("IC-401", "scrap", 5, notes="water damage")

    with unit_of_work(db):
        ledger.transact("IC-401", "scrap", 2, notes="water damage")
    assert ledger.get("IC-401").qty_on_hand == 8


def test_transact_rejects_transfer_and_bad_quantities(db) -> None:
    ledger = InventoryLedger(db)
    with pytest.raises(ValidationError):
        ledger.transact("R-100", "transfer", 1)
    with pytest.raises(ValidationError):
        ledger.transact("R-100", "receive", 0)
    with pytest.raises(ValidationError):
        ledger.transact("R-100", "adjust", 0)


def test_low_stock_notification_after_debit(db, notifier) -> None:
    ledger = InventoryLedger(db, notifier)
    with unit_of_work(db):
        ledger.transact("F-500", "receive", 12)
    ledger.get("F-500").reorder_point = 10
    db.commit()

    with unit_of_work(db):
        ledger.transact("F-500", "issue", 3)
    ledger.notify_low_stock()

    assert [event[:2] for event in notifier.events] == [("inventory.low_stock", "F-500")]
    assert [record.ipn for record in ledger.list_records(low_stock=True)] == ["F-500"]


def test_failing_notifier_does_not_raise(db) -> None:
    class Broken:
        def notify(self, event, record_id, message):
            raise RuntimeError("smtp down")

    ledger = InventoryLedger(db, Broken())
    with unit_of_work(db):
        ledger.transact("F-501", "receive", 1)
    record = ledger.get("F-501")
    record.reorder_point = 5
    db.commit()
    with unit_of_work(db):
        ledger.transact("F-501", "issue", 1)

    ledger.notify_low_stock()
    assert ledger.get("F-501").qty_on_hand == 0


def test_transfer_is_rejected_on_every_path(db) -> None:
    ledger = InventoryLedger(db)
    with unit_of_work(db):
        ledger.transact("R-102", "receive", 5)

    with pytest.raises(ValidationError, match="single location"):
        with unit_of_work(db):
            ledger.apply_delta("R-102", -1, 0, "transfer", "BIN-A")

    assert ledger.get("R-102").qty_on_hand == 5
    assert _txn_count(db, "R-102") == 1


def test_storage_error_names_the_violated_constraint(db) -> None:
    with unit_of_work(db):
        db.execute(insert(InventoryRecord.__table__).values(ipn="DUP-1"))

    with pytest.raises(StorageError) as excinfo:
        with unit_of_work(db):
            db.execute(insert(InventoryRecord.__table__).values(ipn="DUP-1"))

    assert "IntegrityError" in str(excinfo.value)
    assert "inventory.ipn" in str(excinfo.value)
