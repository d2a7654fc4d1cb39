import logging

from sqlalchemy.orm import Session

from zrp.audit import log_audit
from zrp.db import utcnow
from zrp.models import NonConformanceRecord
from zrp.sequences import next_id

logger = logging.getLogger(__name__)


def create_ncr(
    db: Session,
    ipn: str,
    qty: float,
    reference: str,
    actor: str,
    notes: str = "",
) -> str:
    """Open a receiving non-conformance record and return its id.

    Runs inside the caller's transaction so the record only exists if the
    disposition that triggered it commits.
    """
    ncr_id = next_id(db, NonConformanceRecord, "NCR", 3)
    ncr = NonConformanceRecord(
        id=ncr_id,
        title=f"Receiving inspection failure: {ipn} ({reference})",
        description=f"{qty:g} units failed receiving inspection.\nInspector: {actor}\nNotes: {notes}",
        ipn=ipn,
        quantity=qty,
        reference=reference,
        defect_type="receiving",
        severity="minor",
        status="open",
        created_by=actor,
        created_at=utcnow(),
    )
    db.add(ncr)
    db.flush()
    log_audit(db, actor, "created", "ncr", ncr_id, "Auto-created from receiving inspection failure")
    logger.info("opened %s for %g units of %s (%s)", ncr_id, qty, ipn, reference)
    return ncr_id
