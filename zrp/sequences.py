"""Human-readable document ids: ``SO-2026-0001``, ``NCR-2026-001``.

Each ``PREFIX-YYYY`` stem owns a row in ``id_sequences`` that is advanced
with ``value = value + 1`` in the caller's transaction. The row lock held
by that update serializes concurrent creators until commit, and a rollback
returns the number. The width is a minimum; numbers past it keep growing.
"""

from sqlalchemy import Integer, cast, func, select, update
from sqlalchemy.orm import Session

from zrp.db import insert_ignore, utcnow
from zrp.models import IdSequence

_sequences = IdSequence.__table__


def highest_number(model, stem: str):
    """Scalar subquery: the largest numeric suffix among ``model`` ids under ``stem``."""
    suffix = cast(func.substr(model.id, len(stem) + 2), Integer)
    return (
        select(func.coalesce(func.max(suffix), 0))
        .where(model.id.like(f"{stem}-%"))
        .scalar_subquery()
    )


def next_id(db: Session, model, prefix: str, digits: int) -> str:
    """Reserve and return the next id for ``model`` in the current year."""
    stem = f"{prefix}-{utcnow().strftime('%Y')}"
    # first use of a stem picks up ids already present in the table
    insert_ignore(db, _sequences, {"name": stem, "value": highest_number(model, stem)}, ["name"])
    db.execute(update(_sequences).where(_sequences.c.name == stem).values(value=_sequences.c.value + 1))
    number = db.execute(select(_sequences.c.value).where(_sequences.c.name == stem)).scalar_one()
    return f"{stem}-{number:0{digits}d}"
