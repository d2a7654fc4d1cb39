"""Inventory ledger: the only writer of ``inventory.qty_on_hand`` / ``qty_reserved``.

Every mutation is a single ``SET qty = qty + ?`` statement executed in the
caller's transaction, followed by exactly one ``inventory_transactions``
row. Nothing here commits; wrap calls in :func:`zrp.db.unit_of_work`.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from zrp.audit import LoggingNotifier, Notifier, dispatch
from zrp.db import insert_ignore, utcnow
from zrp.errors import (
    InsufficientInventoryError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from zrp.models import TRANSACTION_TYPES, InventoryRecord, InventoryTransaction

logger = logging.getLogger(__name__)

_inventory = InventoryRecord.__table__

CREDIT_TYPES = ("receive", "return")


def check_txn_type(txn_type: str) -> None:
    if txn_type == "transfer":
        raise ValidationError("transfer is not supported: stock is tracked at a single location")
    if txn_type not in TRANSACTION_TYPES:
        raise ValidationError(
            f"invalid transaction type {txn_type!r}; expected one of {', '.join(TRANSACTION_TYPES)}"
        )


class InventoryLedger:
    def __init__(self, db: Session, notifier: Optional[Notifier] = None) -> None:
        self.db = db
        self.notifier = notifier or LoggingNotifier()
        self._debited: set[str] = set()

    def ensure_exists(self, ipn: str, description: str = "", mpn: str = "") -> None:
        """Insert a zero record for ``ipn`` unless one already exists."""
        values = {
            "ipn": ipn,
            "qty_on_hand": 0,
            "qty_reserved": 0,
            "reorder_point": 0,
            "reorder_qty": 0,
            "description": description,
            "mpn": mpn,
            "updated_at": utcnow(),
        }
        insert_ignore(self.db, _inventory, values, ["ipn"])

    def apply_delta(
        self,
        ipn: str,
        on_hand_delta: float,
        reserved_delta: float,
        txn_type: str,
        reference: Optional[str],
        notes: str = "",
        guard_available: Optional[float] = None,
    ) -> None:
        """Apply one ledger delta and log it.

        With ``guard_available`` the update only matches while
        ``qty_on_hand - qty_reserved >= guard_available``, making the
        availability check and the write a single statement.
        """
        check_txn_type(txn_type)
        now = utcnow()
        stmt = (
            update(_inventory)
            .where(_inventory.c.ipn == ipn)
            .values(
                qty_on_hand=_inventory.c.qty_on_hand + on_hand_delta,
                qty_reserved=_inventory.c.qty_reserved + reserved_delta,
                updated_at=now,
            )
        )
        if guard_available is not None:
            stmt = stmt.where(_inventory.c.qty_on_hand - _inventory.c.qty_reserved >= guard_available)
        try:
            result = self.db.execute(stmt)
        except IntegrityError as exc:
            logger.error(
                "ledger constraint violated for %s (on_hand %+g, reserved %+g)",
                ipn,
                on_hand_delta,
                reserved_delta,
            )
            raise StorageError(
                f"inventory constraint violated for {ipn}: "
                f"on_hand {on_hand_delta:+g}, reserved {reserved_delta:+g}"
            ) from exc
        if result.rowcount == 0:
            available = self.available(ipn)
            if available is None:
                raise NotFoundError(f"inventory record not found for {ipn}")
            raise InsufficientInventoryError(ipn, guard_available, available)

        self.db.add(
            InventoryTransaction(
                ipn=ipn,
                type=txn_type,
                qty=abs(on_hand_delta),
                reserved_qty=reserved_delta,
                reference=reference,
                notes=notes,
                created_at=now,
            )
        )
        self.db.flush()
        if on_hand_delta < 0:
            self._debited.add(ipn)

    def reserve(self, ipn: str, qty: float, reference: str, notes: str = "") -> None:
        self.apply_delta(ipn, 0, qty, "adjust", reference, notes, guard_available=qty)

    def available(self, ipn: str) -> Optional[float]:
        """``qty_on_hand - qty_reserved``, or None when the part has no record."""
        return self.db.execute(
            select(_inventory.c.qty_on_hand - _inventory.c.qty_reserved).where(_inventory.c.ipn == ipn)
        ).scalar_one_or_none()

    def get(self, ipn: str) -> InventoryRecord:
        record = self.db.get(InventoryRecord, ipn, populate_existing=True)
        if record is None:
            raise NotFoundError(f"inventory record not found for {ipn}")
        return record

    def list_records(self, low_stock: bool = False) -> list[InventoryRecord]:
        query = select(InventoryRecord)
        if low_stock:
            query = query.where(
                InventoryRecord.reorder_point > 0,
                InventoryRecord.qty_on_hand <= InventoryRecord.reorder_point,
            )
        query = query.order_by(InventoryRecord.ipn).execution_options(populate_existing=True)
        return list(self.db.execute(query).scalars())

    def history(self, ipn: str) -> list[InventoryTransaction]:
        return list(
            self.db.execute(
                select(InventoryTransaction)
                .where(InventoryTransaction.ipn == ipn)
                .order_by(InventoryTransaction.id.desc())
            ).scalars()
        )

    def transact(
        self,
        ipn: str,
        txn_type: str,
        qty: float,
        reference: Optional[str] = None,
        notes: str = "",
    ) -> None:
        """Manual stock movement.

        receive/return credit, issue/scrap debit, adjust takes a signed
        delta. Debits may not dip into reserved stock.
        """
        check_txn_type(txn_type)
        if txn_type == "adjust":
            if qty == 0:
                raise ValidationError("adjust qty must be non-zero")
        elif qty <= 0:
            raise ValidationError(f"{txn_type} qty must be positive, got {qty:g}")

        if txn_type in CREDIT_TYPES or (txn_type == "adjust" and qty > 0):
            self.ensure_exists(ipn)
            self.apply_delta(ipn, abs(qty), 0, txn_type, reference, notes)
            return
        self.apply_delta(ipn, -abs(qty), 0, txn_type, reference, notes, guard_available=abs(qty))

    def notify_low_stock(self) -> None:
        """Dispatch low-stock notifications for parts debited by this ledger.

        Call after the enclosing transaction commits.
        """
        debited, self._debited = self._debited, set()
        for ipn in sorted(debited):
            record = self.db.get(InventoryRecord, ipn, populate_existing=True)
            if record is None or record.reorder_point <= 0:
                continue
            if record.qty_on_hand <= record.reorder_point:
                dispatch(
                    self.notifier,
                    "inventory.low_stock",
                    ipn,
                    f"{ipn} at {record.qty_on_hand:g} (reorder point {record.reorder_point:g})",
                )
