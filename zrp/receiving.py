"""Receiving inspection: goods receipt and the one-shot disposition.

A disposition is recorded with ``UPDATE ... WHERE inspected_at IS NULL``;
whichever request flips ``inspected_at`` first is the only one that
credits stock, so retries and double submits cannot double the ledger.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from zrp.audit import LoggingNotifier, Notifier, dispatch, log_audit
from zrp.db import unit_of_work, utcnow
from zrp.errors import NotFoundError, ValidationError
from zrp.ledger import InventoryLedger
from zrp.models import ReceivingInspection
from zrp.quality import create_ncr

logger = logging.getLogger(__name__)

_inspections = ReceivingInspection.__table__


@dataclass
class Disposition:
    qty_passed: float = 0
    qty_failed: float = 0
    qty_on_hold: float = 0
    inspector: str = ""
    notes: str = ""

    @property
    def total(self) -> float:
        return self.qty_passed + self.qty_failed + self.qty_on_hold

    def validate(self) -> None:
        for field in ("qty_passed", "qty_failed", "qty_on_hold"):
            value = getattr(self, field)
            if value < 0:
                raise ValidationError(f"{field} must be non-negative, got {value:g}")


def po_reference(po_id: str) -> str:
    return f"PO:{po_id}"


class ReceivingInspectionEngine:
    def __init__(self, db: Session, notifier: Optional[Notifier] = None) -> None:
        self.db = db
        self.notifier = notifier or LoggingNotifier()
        self.ledger = InventoryLedger(db, self.notifier)

    def receive(
        self,
        po_id: str,
        po_line_id: int,
        ipn: str,
        qty: float,
        actor: str,
        skip_inspection: bool = False,
    ) -> Optional[ReceivingInspection]:
        """Record goods receipt for one PO line.

        Normally this opens a pending inspection and leaves stock alone.
        ``skip_inspection`` credits the ledger straight away and returns None.
        """
        if not po_id:
            raise ValidationError("po_id is required")
        if not ipn:
            raise ValidationError("ipn is required")
        if qty <= 0:
            raise ValidationError(f"received qty must be positive, got {qty:g}")

        with unit_of_work(self.db):
            if skip_inspection:
                self.ledger.ensure_exists(ipn)
                self.ledger.apply_delta(
                    ipn, qty, 0, "receive", po_reference(po_id), "Received without inspection"
                )
                log_audit(self.db, actor, "received", "po", po_id, f"Received {qty:g} of {ipn} on {po_id} (no inspection)")
                inspection_id = None
            else:
                inspection = ReceivingInspection(
                    po_id=po_id,
                    po_line_id=po_line_id,
                    ipn=ipn,
                    qty_received=qty,
                    created_at=utcnow(),
                )
                self.db.add(inspection)
                self.db.flush()
                inspection_id = inspection.id
                log_audit(self.db, actor, "received", "po", po_id, f"Received {qty:g} of {ipn} on {po_id}, pending RI-{inspection_id}")
        if inspection_id is None:
            logger.info("received %g of %s on %s without inspection", qty, ipn, po_id)
            return None
        logger.info("received %g of %s on %s, pending inspection RI-%s", qty, ipn, po_id, inspection_id)
        return self.get(inspection_id)

    def get(self, inspection_id: int) -> ReceivingInspection:
        inspection = self.db.get(ReceivingInspection, inspection_id, populate_existing=True)
        if inspection is None:
            raise NotFoundError(f"receiving inspection {inspection_id} not found")
        return inspection

    def list_inspections(self, status: Optional[str] = None) -> list[ReceivingInspection]:
        query = select(ReceivingInspection)
        if status == "pending":
            query = query.where(ReceivingInspection.inspected_at.is_(None))
        elif status == "inspected":
            query = query.where(ReceivingInspection.inspected_at.is_not(None))
        elif status is not None:
            raise ValidationError(f"unknown inspection status {status!r}; expected pending or inspected")
        query = query.order_by(ReceivingInspection.id.desc()).execution_options(populate_existing=True)
        return list(self.db.execute(query).scalars())

    def dispose(self, inspection_id: int, disposition: Disposition, actor: str) -> ReceivingInspection:
        disposition.validate()
        inspection = self.get(inspection_id)
        if inspection.inspected_at is not None:
            raise NotFoundError(f"receiving inspection {inspection_id} not found or already completed")
        if disposition.total > inspection.qty_received:
            raise ValidationError(
                f"inspection quantities ({disposition.total:g}) exceed received quantity "
                f"({inspection.qty_received:g})"
            )

        inspector = disposition.inspector or actor
        reference = po_reference(inspection.po_id)
        ipn = inspection.ipn
        ncr_id = None
        with unit_of_work(self.db):
            result = self.db.execute(
                update(_inspections)
                .where(_inspections.c.id == inspection_id, _inspections.c.inspected_at.is_(None))
                .values(
                    qty_passed=disposition.qty_passed,
                    qty_failed=disposition.qty_failed,
                    qty_on_hold=disposition.qty_on_hold,
                    inspector=inspector,
                    inspected_at=utcnow(),
                    notes=disposition.notes,
                )
            )
            if result.rowcount == 0:
                logger.warning("inspection RI-%s was disposed concurrently; rejecting resubmission", inspection_id)
                raise NotFoundError(f"receiving inspection {inspection_id} not found or already completed")

            if disposition.qty_passed > 0:
                self.ledger.ensure_exists(ipn)
                self.ledger.apply_delta(
                    ipn,
                    disposition.qty_passed,
                    0,
                    "receive",
                    reference,
                    f"Inspection passed (RI-{inspection_id})",
                )
            if disposition.qty_failed > 0:
                ncr_id = create_ncr(
                    self.db, ipn, disposition.qty_failed, reference, inspector, disposition.notes
                )
            log_audit(
                self.db,
                inspector,
                "inspected",
                "receiving",
                str(inspection_id),
                f"Inspected RI-{inspection_id}: {disposition.qty_passed:g} passed, "
                f"{disposition.qty_failed:g} failed, {disposition.qty_on_hold:g} on-hold",
            )

        logger.info(
            "disposed RI-%s for %s: %g passed, %g failed, %g on hold",
            inspection_id,
            ipn,
            disposition.qty_passed,
            disposition.qty_failed,
            disposition.qty_on_hold,
        )
        if ncr_id is not None:
            dispatch(
                self.notifier,
                "ncr.created",
                ncr_id,
                f"{disposition.qty_failed:g} units of {ipn} failed receiving inspection ({reference})",
            )
        return self.get(inspection_id)
