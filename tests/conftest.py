# tests/conftest.py
import typing as t
from dataclasses import dataclass
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from boxoffice.auth import issue_token
from boxoffice.helpers import new_id, now_ts
from boxoffice.infra.sql import Database, GatedAsyncSession, make_database
from boxoffice.model.orders import CheckoutResult, create_order
from boxoffice.model.orm import (
    Base, Event, Product, ProductTicketRestriction, ProductVariant, TicketType,
)
from boxoffice.model.reconcile import handle_webhook
from boxoffice.payments import MockPay

ORG_ID = "org-1"


@dataclass
class Catalog:
    org_id: str
    event_id: str
    ticket_type_id: str
    product_id: str
    variant_id: str
    price: int


@pytest_asyncio.fixture
async def database(tmp_path) -> t.AsyncIterator[Database]:
    """A fresh file-backed SQLite database per test."""
    database = make_database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield database
    await database.engine.dispose()


@pytest_asyncio.fixture
async def db(database: Database) -> t.AsyncIterator[GatedAsyncSession]:
    async with database.open() as db:
        yield db


@pytest.fixture
def mockpay() -> MockPay:
    return MockPay()


@pytest.fixture
def make_catalog(database: Database) -> t.Callable[..., t.Awaitable[Catalog]]:
    """Factory for an event with one ticket type and one product variant."""

    async def _make(
        *,
        capacity: Optional[int] = 2,
        price: int = 5000,
        max_per_order: Optional[int] = None,
        sales_start: Optional[float] = None,
        sales_end: Optional[float] = None,
        product_capacity: Optional[int] = 10,
        variant_capacity: Optional[int] = 3,
        restricted: bool = False,
        event_status: str = "published",
        org_id: str = ORG_ID,
    ) -> Catalog:
        c = Catalog(
            org_id=org_id, event_id=new_id(), ticket_type_id=new_id(),
            product_id=new_id(), variant_id=new_id(), price=price,
        )
        async with database.open() as db:
            async with db.session.begin():
                s = db.session
                s.add(Event(
                    id=c.event_id, org_id=org_id, name="Test Night",
                    status=event_status, currency="EUR", created_at=now_ts(),
                ))
                await s.flush()
                s.add(TicketType(
                    id=c.ticket_type_id, event_id=c.event_id, name="GA",
                    price=price, capacity_total=capacity,
                    max_per_order=max_per_order, sales_start=sales_start,
                    sales_end=sales_end, status="published",
                ))
                s.add(Product(
                    id=c.product_id, event_id=c.event_id, name="Shirt",
                    price=2000, vat_percentage=21,
                    capacity_total=product_capacity,
                ))
                await s.flush()
                s.add(ProductVariant(
                    id=c.variant_id, product_id=c.product_id, name="M",
                    capacity_total=variant_capacity,
                ))
                if restricted:
                    s.add(ProductTicketRestriction(
                        product_id=c.product_id,
                        ticket_type_id=c.ticket_type_id,
                    ))
        return c

    return _make


@pytest_asyncio.fixture
async def catalog(make_catalog) -> Catalog:
    return await make_catalog()


@pytest.fixture
def fetch(database: Database) -> t.Callable[..., t.Awaitable[t.Any]]:
    """Load a row through a fresh session, bypassing any identity map."""

    async def _fetch(model, id_: str):
        async with database.open() as db:
            async with db.session.begin():
                return await db.session.get(model, id_)

    return _fetch


@pytest.fixture
def place_order(
    db: GatedAsyncSession, mockpay: MockPay
) -> t.Callable[..., t.Awaitable[CheckoutResult]]:
    async def _place(catalog: Catalog, quantity: int = 1,
                     **kw) -> CheckoutResult:
        return await create_order(
            db, mockpay,
            event_id=catalog.event_id,
            items=[{"inventory_id": catalog.ticket_type_id,
                    "quantity": quantity}],
            email="guest@example.com",
            **kw,
        )

    return _place


@pytest.fixture
def paid_order(
    db: GatedAsyncSession, mockpay: MockPay, place_order
) -> t.Callable[..., t.Awaitable[CheckoutResult]]:
    """Place an order and deliver a ``paid`` notification for it."""

    async def _paid(catalog: Catalog, quantity: int = 1) -> CheckoutResult:
        result = await place_order(catalog, quantity)
        pid = result.payment.provider_payment_id
        mockpay.set_payment_status(pid, "paid")
        outcome = await handle_webhook(db, mockpay, pid)
        assert outcome.outcome == "PAID"
        return result

    return _paid


@pytest.fixture
def staff_headers() -> t.Callable[..., dict]:
    def _headers(role: str = "admin", org_id: str = ORG_ID) -> dict:
        token = issue_token("staff-1", org_id=org_id, role=role)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest_asyncio.fixture
async def client(
    database: Database, mockpay: MockPay
) -> t.AsyncIterator[httpx.AsyncClient]:
    from boxoffice import server

    async def _get_db():
        async with database.open() as db:
            yield db

    server.app.dependency_overrides[server.get_db] = _get_db
    server.app.dependency_overrides[server.get_adapter] = lambda: mockpay
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as c:
        yield c
    server.app.dependency_overrides.clear()
