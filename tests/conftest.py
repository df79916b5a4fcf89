"""Pytest fixtures for payroll engine tests."""

from __future__ import annotations

from datetime import date
from typing import Any, AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from hr_payroll.calculators.statutory import StatutoryContext
from hr_payroll.config import Settings
from hr_payroll.models import Base
from tests.factories import (
    make_company,
    make_country,
    make_employee,
    make_jurisdiction,
    make_sa_templates,
)

# Use in-memory SQLite for tests (with async support)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        engine_version="test",
        batch_max_workers=4,
        io_timeout_seconds=5.0,
        log_level="DEBUG",
    )


@pytest.fixture
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def sa_setup() -> dict[str, Any]:
    """Transient South African company with a resolved statutory context."""
    country = make_country()
    jurisdiction = make_jurisdiction(country)
    company = make_company(country)
    templates = make_sa_templates(jurisdiction)
    context = StatutoryContext(
        company_id=company.company_id,
        as_of_date=date(2024, 3, 1),
        country=country,
        jurisdiction=jurisdiction,
        templates=templates,
    )
    return {
        "country": country,
        "jurisdiction": jurisdiction,
        "company": company,
        "templates": templates,
        "context": context,
    }


@pytest.fixture
async def seeded(session: AsyncSession) -> dict[str, Any]:
    """Persisted South African company, statutory templates and one employee."""
    country = make_country()
    jurisdiction = make_jurisdiction(country)
    company = make_company(country)
    templates = make_sa_templates(jurisdiction)
    employee = make_employee(company.company_id, employee_number="E001")

    session.add_all([country, jurisdiction, company, *templates, employee])
    await session.flush()
    return {
        "country": country,
        "jurisdiction": jurisdiction,
        "company": company,
        "templates": templates,
        "employee": employee,
    }
