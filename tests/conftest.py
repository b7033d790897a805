"""Pytest fixtures for retainer billing tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from retainer_billing.config import Settings
from retainer_billing.models import Base, ClientAgreement, ClientCompany, ClientTimeEntry
from retainer_billing.services.invoice_service import InvoiceOrchestrator
from retainer_billing.services.repositories import SqlAgreementProvider

# Use in-memory SQLite for tests (with async support)
# For advisory locks, use a test Postgres database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine():
    """Create a fresh test database engine per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def settings() -> Settings:
    """Settings with default billing policy, independent of the environment."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        log_level="DEBUG",
        payment_terms_days=30,
        carry_overage_as_negative_balance=False,
        invoice_number_prefix_length=4,
    )


@pytest.fixture
def orchestrator(session: AsyncSession, settings: Settings) -> InvoiceOrchestrator:
    return InvoiceOrchestrator(session, settings=settings)


@pytest_asyncio.fixture
async def company(session: AsyncSession) -> ClientCompany:
    """Create a test client company."""
    return await SqlAgreementProvider(session).create_company("Acme Widgets, Inc.")


@pytest.fixture
def make_agreement(
    session: AsyncSession, company: ClientCompany
) -> Callable[..., Awaitable[ClientAgreement]]:
    """Factory for agreements; defaults to 10h / $150 / $1000 / 3 months rollover."""

    async def _make(**overrides) -> ClientAgreement:
        fields = {
            "client_company_id": company.id,
            "active_date": date(2024, 1, 1),
            "monthly_retainer_hours": Decimal("10"),
            "catch_up_threshold_hours": Decimal("0"),
            "hourly_rate": Decimal("150.00"),
            "monthly_retainer_fee": Decimal("1000.00"),
            "rollover_months": 3,
        }
        fields.update(overrides)
        return await SqlAgreementProvider(session).create_agreement(**fields)

    return _make


@pytest_asyncio.fixture
async def agreement(make_agreement) -> ClientAgreement:
    """Create the default test agreement."""
    return await make_agreement()


@pytest.fixture
def make_entry(
    session: AsyncSession, company: ClientCompany
) -> Callable[..., Awaitable[ClientTimeEntry]]:
    """Factory for time entries; defaults to one billable hour on 2024-01-15."""

    async def _make(minutes: int = 60, date_worked: date = date(2024, 1, 15), **overrides) -> ClientTimeEntry:
        fields = {
            "client_company_id": company.id,
            "user_id": 1,
            "name": "Development",
            "project_id": 100,
            "minutes_worked": minutes,
            "date_worked": date_worked,
            "is_billable": True,
        }
        fields.update(overrides)
        entry = ClientTimeEntry(**fields)
        session.add(entry)
        await session.flush()
        return entry

    return _make
