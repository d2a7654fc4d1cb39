import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from zrp.config import settings
from zrp.errors import StorageError

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


engine = create_engine(settings.database_url, pool_pre_ping=True, echo=settings.sql_echo)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def describe_db_error(exc: SQLAlchemyError) -> str:
    """Error class plus the driver's first line, which names the constraint or table."""
    detail = str(getattr(exc, "orig", None) or exc).strip().splitlines()
    if not detail:
        return exc.__class__.__name__
    return f"{exc.__class__.__name__}: {detail[0]}"


def insert_ignore(db: Session, table, values: dict, index_elements: list[str]) -> None:
    """INSERT ... ON CONFLICT DO NOTHING on PostgreSQL and SQLite."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    elif dialect == "sqlite":
        stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        raise StorageError(f"insert-or-ignore is not supported on {dialect}")
    db.execute(stmt)


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Commit everything done in the block, or roll all of it back.

    Driver errors that escape the block are re-raised as StorageError so
    callers only ever see the core's error taxonomy.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("storage failure, transaction rolled back: %s", exc)
        raise StorageError(f"storage failure: {describe_db_error(exc)}") from exc
    except Exception:
        db.rollback()
        raise


def check_connection(db: Session) -> bool:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("database connection check failed: %s", exc)
        return False
    return True
