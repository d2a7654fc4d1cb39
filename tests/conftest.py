from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from zrp.db import Base, unit_of_work
from zrp.ledger import InventoryLedger
from zrp.orders import NewOrderLine, SalesOrderService


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, str]] = []

    def notify(self, event: str, record_id: str, message: str) -> None:
        self.events.append((event, record_id, message))


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(engine):
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def stock(db):
    """Seed on-hand stock: ``stock("R-100", 50)``."""

    def _stock(ipn: str, qty: float) -> None:
        with unit_of_work(db):
            InventoryLedger(db).transact(ipn, "receive", qty, "seed")

    return _stock


@pytest.fixture()
def confirmed_order(db):
    def _order(*lines: tuple[str, int, str], customer: str = "Acme Robotics") -> str:
        service = SalesOrderService(db)
        order = service.create(
            customer,
            [NewOrderLine(ipn=ipn, qty=qty, unit_price=Decimal(price)) for ipn, qty, price in lines],
            "alice",
        )
        service.confirm(order.id, "alice")
        return order.id

    return _order
