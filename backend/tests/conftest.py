"""Pytest configuration and fixtures for ledger tests.

Each test gets its own on-disk SQLite database (via aiosqlite) so that
concurrent writers really contend for the file lock.  Set
TEST_DATABASE_URL to an async PostgreSQL URL to run against PostgreSQL.
"""

import os
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import invoicer.models  # noqa: F401  (registers every table on Base.metadata)
from invoicer.auth.jwt import create_access_token
from invoicer.database import Base, build_engine
from invoicer.main import app
from invoicer.models.client import Client
from invoicer.schemas.client import ClientCreate
from invoicer.services.ledger import LedgerService, get_ledger
from invoicer.utils.clock import today

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Fresh schema per test."""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"
    engine = build_engine(url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for service-level tests; the test owns the transaction."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def ledger(session_factory) -> LedgerService:
    # Generous retry budget: SQLite serialises every writer on one file lock
    return LedgerService(session_factory, max_retries=25, retry_backoff_seconds=0.005)


@pytest_asyncio.fixture
async def client(ledger) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with the ledger dependency pointed at the test database."""
    app.dependency_overrides[get_ledger] = lambda: ledger

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest.fixture
def owner_id() -> str:
    return str(uuid.uuid4())


@pytest_asyncio.fixture
async def account(ledger, owner_id):
    """Opened account on the free plan."""
    return await ledger.open_account(owner_id)


@pytest_asyncio.fixture
async def customer(ledger, owner_id, account) -> Client:
    """A client of the test account (uses one client slot)."""
    return await ledger.create_client(
        owner_id, ClientCreate(name="Acme Corp", email="billing@acme.test")
    )


@pytest.fixture
def sample_items() -> list[dict]:
    """2 × 100.00 + 1 × 50.00 = 250.00"""
    return [
        {"description": "Design work", "quantity": Decimal("2"), "rate": Decimal("100.00")},
        {"description": "Hosting", "quantity": Decimal("1"), "rate": Decimal("50.00")},
    ]


@pytest.fixture
def make_invoice(ledger, owner_id, customer, sample_items):
    """Factory creating invoices for the test account (10% tax by default)."""

    async def _make(**overrides):
        kwargs = {
            "owner_id": owner_id,
            "client_id": customer.id,
            "items": sample_items,
            "tax_rate": Decimal("10"),
            "discount_amount": Decimal("0"),
            "due_date": today() + timedelta(days=30),
        }
        kwargs.update(overrides)
        return await ledger.create_invoice(**kwargs)

    return _make


@pytest.fixture
def test_token(owner_id: str) -> str:
    return create_access_token(owner_id)


@pytest.fixture
def auth_headers(test_token: str) -> dict:
    """Create authorization headers with test token."""
    return {"Authorization": f"Bearer {test_token}"}


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: HTTP API tests")
    config.addinivalue_line("markers", "concurrency: Concurrent-writer tests")
