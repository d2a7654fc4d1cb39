import logging
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from zrp.db import utcnow
from zrp.models import AuditEntry

logger = logging.getLogger(__name__)


def log_audit(
    db: Session,
    actor: str,
    action: str,
    module: str,
    record_id: str,
    summary: Optional[str] = None,
) -> AuditEntry:
    """Stage an audit row in the caller's transaction."""
    entry = AuditEntry(
        username=actor or "system",
        action=action,
        module=module,
        record_id=str(record_id),
        summary=summary,
        created_at=utcnow(),
    )
    db.add(entry)
    db.flush()
    return entry


class Notifier(Protocol):
    def notify(self, event: str, record_id: str, message: str) -> None:
        ...


class LoggingNotifier:
    """Default notification sink; real delivery lives outside this service."""

    def notify(self, event: str, record_id: str, message: str) -> None:
        logger.info("notification %s for %s: %s", event, record_id, message)


def dispatch(notifier: Notifier, event: str, record_id: str, message: str) -> None:
    # fire-and-forget: a failing sink never fails the committed operation
    try:
        notifier.notify(event, record_id, message)
    except Exception:
        logger.exception("notification %s for %s could not be delivered", event, record_id)
