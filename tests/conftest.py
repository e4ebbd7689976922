"""Pytest fixtures for nomina engine tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from nomina_engine.calculators.engine import PayrollEngine
from nomina_engine.config import Settings
from nomina_engine.fiscal.providers import PacStubProvider
from nomina_engine.models import (
    Base,
    Company,
    Concept,
    Employee,
    EmployeePeriodInput,
    PayrollDetail,
    PayrollPeriod,
)
from nomina_engine.services.payroll_query_service import PayrollQueryService
from nomina_engine.services.period_service import PeriodService
from nomina_engine.services.permission_scope import CallerContext

# In-memory SQLite shared by every session of a test (StaticPool keeps one connection)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def engine():
    """Create test database engine with a fresh schema."""
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


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def settings() -> Settings:
    """Settings with fast retries and a small worker pool."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        engine_version="test",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="WARNING",
        calculation_concurrency=2,
        stamping_max_attempts=3,
        stamping_backoff_seconds=0,
        pac_timeout_seconds=5,
    )


@pytest.fixture
def system_caller() -> CallerContext:
    return CallerContext.system()


@pytest.fixture
def provider() -> PacStubProvider:
    return PacStubProvider()


# =============================================================================
# Company data
# =============================================================================


@pytest.fixture
async def company(session: AsyncSession) -> Company:
    """Create a test company."""
    company = Company(
        company_id=uuid4(),
        name="Comercializadora del Centro SA de CV",
        rfc="CCE010101AB1",
        zip_code="06600",
        registro_patronal="Y1234567890",
        regimen_fiscal="601",
    )
    session.add(company)
    await session.commit()
    return company


@pytest.fixture
def make_employee(session: AsyncSession, company: Company):
    """Factory for employees of the test company."""
    counter = {"n": 0}

    async def _make(**overrides) -> Employee:
        counter["n"] += 1
        n = counter["n"]
        values = dict(
            employee_id=uuid4(),
            company_id=company.company_id,
            employee_number=f"E{n:03d}",
            first_name="Empleado",
            last_name=f"Prueba{n}",
            rfc=f"PUEE8001{n:02d}AB1",
            curp=f"PUEE8001{n:02d}HDFRRN09",
            nss=f"1234567{n:04d}",
            hire_date=date(2020, 1, 1),
            base_salary=Decimal("15000.00"),
            contract_type="INDEFINITE",
            risk_class="CLASE_I",
            state_code="CMX",
            department="Operaciones",
            position="Analista",
        )
        values.update(overrides)
        employee = Employee(**values)
        session.add(employee)
        await session.commit()
        return employee

    return _make


@pytest.fixture
async def employees(make_employee) -> list[Employee]:
    """Three employees earning 15,000 a month."""
    return [await make_employee() for _ in range(3)]


@pytest.fixture
async def period(session: AsyncSession, company: Company) -> PayrollPeriod:
    """First biweekly period of 2026, in DRAFT."""
    period = PayrollPeriod(
        period_id=uuid4(),
        company_id=company.company_id,
        period_number=1,
        year=2026,
        period_type="BIWEEKLY",
        start_date=date(2026, 1, 1),
        end_date=date(2026, 1, 15),
        payment_date=date(2026, 1, 15),
        status="DRAFT",
    )
    session.add(period)
    await session.commit()
    return period


@pytest.fixture
def make_concept(session: AsyncSession, company: Company):
    """Factory inserting a concept directly (no configuration checks)."""

    async def _make(code: str, formula: str, concept_type: str = "PERCEPTION", **overrides) -> Concept:
        values = dict(
            concept_id=uuid4(),
            company_id=company.company_id,
            code=code,
            name=code.replace("_", " ").title(),
            concept_type=concept_type,
            formula=formula,
            sat_code="001" if concept_type == "PERCEPTION" else "004",
            priority=100,
            version=1,
            is_active=True,
        )
        values.update(overrides)
        concept = Concept(**values)
        session.add(concept)
        await session.commit()
        return concept

    return _make


@pytest.fixture
async def standard_concepts(make_concept) -> list[Concept]:
    """Salary perception plus a percentage deduction on it."""
    return [
        await make_concept("SUELDO", "dailySalary * workedDays", priority=10),
        await make_concept("IMSS", "percentOf(SUELDO, 2.5)", "DEDUCTION", priority=10),
    ]


@pytest.fixture
def add_input(session: AsyncSession, period: PayrollPeriod):
    """Factory for per-employee period inputs."""

    async def _add(employee: Employee, **values) -> EmployeePeriodInput:
        row = EmployeePeriodInput(
            input_id=uuid4(),
            period_id=period.period_id,
            employee_id=employee.employee_id,
            **values,
        )
        session.add(row)
        await session.commit()
        return row

    return _add


# =============================================================================
# Calculated data
# =============================================================================


@pytest.fixture
async def approved_period(
    session: AsyncSession,
    settings: Settings,
    system_caller: CallerContext,
    period: PayrollPeriod,
    employees: list[Employee],
    standard_concepts: list[Concept],
) -> PayrollPeriod:
    """The test period calculated and approved."""
    await PayrollEngine(session, settings).calculate_period(period.period_id, system_caller)
    await PeriodService(session, settings).approve(period.period_id, system_caller)
    await session.commit()
    return period


@pytest.fixture
async def approved_details(
    session: AsyncSession, system_caller: CallerContext, approved_period: PayrollPeriod
) -> list[PayrollDetail]:
    """Current details of the approved period, by employee number."""
    return await PayrollQueryService(session).list_period_details(
        approved_period.period_id, system_caller
    )
