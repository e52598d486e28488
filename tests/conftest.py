"""
Shared fixtures: an isolated in-memory database per test, the in-memory
event bus, mock gateways and an HTTP client bound to the FastAPI app.
"""

import os

# Settings are read once at import time
os.environ["ENV_MODE"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["MOCK_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["LOCAL_CURRENCY"] = "PKR"

from dataclasses import dataclass

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tableside.database import Base
from tableside.models import MenuItem, PaymentGateway, Restaurant, Table
from tableside.services.events import InMemoryPublisher
from tableside.services.inventory import InventoryLedger
from tableside.services.orders import OrderStateMachine
from tableside.services.payment import MockGateway
from tableside.services.payment.router import PaymentRouter
from tableside.services.tables import TableSessionCoordinator

WEBHOOK_SECRET = "whsec_test_secret"


@dataclass
class Seed:
    """Primary keys of the seeded rows."""
    diner: int
    grill: int
    burger: int
    fries: int
    soda: int
    karahi: int
    t1: int
    t2: int
    p1: int


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest_asyncio.fixture
async def seed(session_maker) -> Seed:
    """
    Diner (USD, 10% tax): burger 10.00 x2 in stock (threshold 1), fries 4.50,
    soda switched off, tables T1 and T2.
    Karachi Grill (PKR, 16% tax): karahi 1500.00, table P1.
    """
    async with session_maker() as session:
        diner = Restaurant(name="Diner", currency="USD", tax_rate=10.0)
        grill = Restaurant(name="Karachi Grill", currency="PKR", tax_rate=16.0)
        session.add_all([diner, grill])
        await session.flush()

        burger = MenuItem(restaurant_id=diner.id, name="Burger", price=10.0,
                          stock_quantity=2, low_stock_threshold=1)
        fries = MenuItem(restaurant_id=diner.id, name="Fries", price=4.5,
                         stock_quantity=50, low_stock_threshold=5)
        soda = MenuItem(restaurant_id=diner.id, name="Soda", price=2.0,
                        stock_quantity=0, low_stock_threshold=5, is_available=False)
        karahi = MenuItem(restaurant_id=grill.id, name="Chicken Karahi", price=1500.0,
                          stock_quantity=20, low_stock_threshold=2)
        t1 = Table(restaurant_id=diner.id, name="T1")
        t2 = Table(restaurant_id=diner.id, name="T2")
        p1 = Table(restaurant_id=grill.id, name="P1")
        session.add_all([burger, fries, soda, karahi, t1, t2, p1])
        await session.commit()

        return Seed(
            diner=diner.id,
            grill=grill.id,
            burger=burger.id,
            fries=fries.id,
            soda=soda.id,
            karahi=karahi.id,
            t1=t1.id,
            t2=t2.id,
            p1=p1.id,
        )


@pytest.fixture
def ledger(db, publisher):
    return InventoryLedger(db, publisher)


@pytest.fixture
def tables(db, publisher):
    return TableSessionCoordinator(db, publisher)


@pytest.fixture
def machine(db, publisher):
    return OrderStateMachine(db, publisher)


@pytest.fixture
def gateways():
    return {
        PaymentGateway.STRIPE: MockGateway(PaymentGateway.STRIPE, webhook_secret=WEBHOOK_SECRET),
        PaymentGateway.SAFEPAY: MockGateway(PaymentGateway.SAFEPAY, webhook_secret=WEBHOOK_SECRET),
    }


@pytest.fixture
def gateway_factory(gateways):
    def factory(gateway_id):
        return gateways[PaymentGateway(gateway_id)]
    return factory


@pytest.fixture
def router(db, publisher, machine, gateway_factory):
    return PaymentRouter(db, publisher, orders=machine, gateway_factory=gateway_factory)


@pytest_asyncio.fixture
async def client(session_maker, publisher, gateway_factory):
    from tableside.database import get_db
    from tableside.main import app, get_event_publisher, get_gateway_factory

    async def override_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_event_publisher] = lambda: publisher
    app.dependency_overrides[get_gateway_factory] = lambda: gateway_factory

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


STAFF = {"X-Actor-Id": "staff-7"}


def line(menu_item_id: int, quantity: int = 1) -> dict:
    return {"menu_item_id": menu_item_id, "quantity": quantity}
