"""Tests for the payroll calculation engine."""

import threading
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from nomina_engine.calculators.concept_resolver import CyclicDependencyError
from nomina_engine.calculators.engine import (
    NEGATIVE_NET_PAY,
    CalculationCancelledError,
    CalculationInProgressError,
    PayrollEngine,
)
from nomina_engine.exceptions import NotFoundError
from nomina_engine.models import PayrollDetail, PayrollFailure
from nomina_engine.services.payroll_query_service import PayrollQueryService
from nomina_engine.services.permission_scope import CallerContext, PermissionDeniedError
from nomina_engine.services.state_machine import InvalidTransitionError


async def current_details(session, period_id):
    rows = await session.scalars(
        select(PayrollDetail).where(
            PayrollDetail.period_id == period_id, PayrollDetail.is_current.is_(True)
        )
    )
    return list(rows.all())


class TestCalculatePeriod:
    """Test a full calculation run."""

    async def test_calculates_every_employee(
        self, session, settings, system_caller, period, employees, standard_concepts
    ):
        """Salary 15,000 biweekly: 7,500 perception, 187.50 deduction."""
        engine = PayrollEngine(session, settings)
        result = await engine.calculate_period(period.period_id, system_caller)

        assert result.status == "CALCULATED"
        assert result.success_count == 3
        assert result.failure_count == 0
        assert result.total_perceptions == Decimal("22500.00")
        assert result.total_deductions == Decimal("562.50")
        assert result.total_net == Decimal("21937.50")

        details = await current_details(session, period.period_id)
        assert len(details) == 3
        detail = details[0]
        assert detail.version == 1
        assert detail.net_pay == Decimal("7312.50")
        assert [line.concept_code for line in detail.lines] == ["SUELDO", "IMSS"]
        assert detail.lines[0].taxable_amount == Decimal("7500.00")

        await session.refresh(period)
        assert period.status == "CALCULATED"
        assert period.calculation_lock is None
        assert period.calculated_at is not None

    async def test_later_concepts_see_running_totals(
        self, session, settings, system_caller, period, employees, make_concept
    ):
        await make_concept("SUELDO", "dailySalary * workedDays", priority=1)
        await make_concept("BONO", "percentOf(totalPerceptions, 10)", priority=2)
        await make_concept("ISR", "percentOf(taxableIncome, 20)", "DEDUCTION")

        result = await PayrollEngine(session, settings).calculate_period(
            period.period_id, system_caller
        )
        first = result.results[0]
        amounts = {line.concept_code: line.amount for line in first.lines}
        assert amounts == {
            "SUELDO": Decimal("7500.00"),
            "BONO": Decimal("750.00"),
            "ISR": Decimal("1650.00"),
        }

    async def test_zero_amount_lines_are_dropped(
        self, session, settings, system_caller, period, employees, make_concept
    ):
        await make_concept("SUELDO", "dailySalary * workedDays")
        await make_concept("HORAS_EXTRA", "overtimeHours * hourlyRate * 2")

        result = await PayrollEngine(session, settings).calculate_period(
            period.period_id, system_caller
        )
        assert [line.concept_code for line in result.results[0].lines] == ["SUELDO"]

    async def test_partial_failure(
        self, session, settings, system_caller, period, make_employee, make_concept, add_input
    ):
        """One employee failing does not stop the other nine."""
        staff = [await make_employee() for _ in range(10)]
        for index, employee in enumerate(staff):
            if index != 3:
                await add_input(employee, custom_values={"custom1": "1"})
        await make_concept("SUELDO", "dailySalary * workedDays")
        await make_concept("BONO", "round(100 / custom1, 2)")

        result = await PayrollEngine(session, settings).calculate_period(
            period.period_id, system_caller
        )

        assert result.success_count == 9
        assert result.failure_count == 1
        failure = result.failures[0]
        assert failure.employee_id == staff[3].employee_id
        assert failure.error_kind == "DIVISION_BY_ZERO"
        assert failure.concept_code == "BONO"

        assert len(await current_details(session, period.period_id)) == 9
        stored = (await session.scalars(select(PayrollFailure))).all()
        assert len(stored) == 1

        await session.refresh(period)
        assert period.status != "CALCULATED"
        assert period.status == "PROCESSING"
        assert period.calculation_lock is None

    @pytest.mark.parametrize("bad_value", [None, "abc"])
    async def test_unreadable_input_fails_one_employee(
        self, session, settings, system_caller, period, employees, standard_concepts, add_input, bad_value
    ):
        """A period input that is not a number fails that employee only."""
        await add_input(employees[1], custom_values={"custom1": bad_value})

        result = await PayrollEngine(session, settings).calculate_period(
            period.period_id, system_caller
        )

        assert result.success_count == 2
        assert [(f.employee_id, f.error_kind) for f in result.failures] == [
            (employees[1].employee_id, "TYPE_MISMATCH")
        ]
        assert [r.employee_id for r in result.results] == [e.employee_id for e in employees]
        assert len(await current_details(session, period.period_id)) == 2
        assert result.status == "PROCESSING"

    async def test_fixing_failure_completes_period(
        self, session, settings, system_caller, period, employees, make_concept, add_input
    ):
        """A re-run resolves earlier failures and the period reaches CALCULATED."""
        await make_concept("BONO", "100 / custom1")
        engine = PayrollEngine(session, settings)

        first = await engine.calculate_period(period.period_id, system_caller)
        assert first.failure_count == 3
        assert first.status == "PROCESSING"

        for employee in employees:
            await add_input(employee, custom_values={"custom1": "4"})
        second = await engine.calculate_period(period.period_id, system_caller)

        assert second.failure_count == 0
        assert second.status == "CALCULATED"
        unresolved = await session.scalar(
            select(func.count()).select_from(PayrollFailure).where(PayrollFailure.resolved_at.is_(None))
        )
        assert unresolved == 0

    async def test_negative_net_pay_is_a_failure(
        self, session, settings, system_caller, period, employees, make_concept
    ):
        await make_concept("SUELDO", "100")
        await make_concept("PRESTAMO", "500", "DEDUCTION")

        result = await PayrollEngine(session, settings).calculate_period(
            period.period_id, system_caller
        )
        assert result.failure_count == 3
        assert {f.error_kind for f in result.failures} == {NEGATIVE_NET_PAY}

    async def test_negative_concept_is_a_failure(
        self, session, settings, system_caller, period, employees, make_concept
    ):
        await make_concept("AJUSTE", "workedDays - 20")
        result = await PayrollEngine(session, settings).calculate_period(
            period.period_id, system_caller
        )
        assert {f.error_kind for f in result.failures} == {"NEGATIVE_AMOUNT"}


class TestRecalculation:
    """Test idempotent re-runs."""

    async def test_rerun_is_idempotent(
        self, session, settings, system_caller, period, employees, standard_concepts
    ):
        """Same inputs give the same fingerprints and totals in a new version."""
        engine = PayrollEngine(session, settings)
        first = await engine.calculate_period(period.period_id, system_caller)
        second = await engine.calculate_period(period.period_id, system_caller)

        assert second.status == "CALCULATED"
        assert second.total_net == first.total_net
        assert [r.fingerprint for r in second.results] == [r.fingerprint for r in first.results]

        details = await current_details(session, period.period_id)
        assert len(details) == 3
        assert {d.version for d in details} == {2}

        history = await PayrollQueryService(session).detail_history(
            period.period_id, employees[0].employee_id, system_caller
        )
        assert [d.version for d in history] == [1, 2]
        assert history[0].is_current is False
        assert history[0].superseded_at is not None
        assert history[0].calculation_fingerprint == history[1].calculation_fingerprint

    async def test_changed_input_changes_fingerprint(
        self, session, settings, system_caller, period, employees, standard_concepts, add_input
    ):
        engine = PayrollEngine(session, settings)
        first = await engine.calculate_period(period.period_id, system_caller)
        await add_input(employees[0], absence_days=Decimal("1"))
        second = await engine.calculate_period(period.period_id, system_caller)

        by_employee = {r.employee_id: r for r in first.results}
        changed = next(r for r in second.results if r.employee_id == employees[0].employee_id)
        assert changed.fingerprint != by_employee[employees[0].employee_id].fingerprint
        assert changed.total_perceptions == Decimal("7000.00")

    async def test_approved_period_cannot_be_recalculated(
        self, session, settings, system_caller, period, employees, standard_concepts
    ):
        engine = PayrollEngine(session, settings)
        await engine.calculate_period(period.period_id, system_caller)
        period.status = "APPROVED"
        await session.commit()

        with pytest.raises(InvalidTransitionError):
            await engine.calculate_period(period.period_id, system_caller)


class TestConfigurationAndClaims:
    """Test errors raised before any employee is processed."""

    async def test_self_reference_aborts_before_processing(
        self, session, settings, system_caller, period, employees, make_concept
    ):
        await make_concept("LOOP", "LOOP + 1")

        with pytest.raises(CyclicDependencyError) as exc_info:
            await PayrollEngine(session, settings).calculate_period(period.period_id, system_caller)
        assert "LOOP" in str(exc_info.value)

        await session.refresh(period)
        assert period.status == "DRAFT"
        assert period.calculation_lock is None
        assert await current_details(session, period.period_id) == []

    async def test_claim_held_by_another_run(
        self, session, settings, system_caller, period, employees, standard_concepts
    ):
        period.calculation_lock = "another-run"
        await session.commit()

        with pytest.raises(CalculationInProgressError):
            await PayrollEngine(session, settings).calculate_period(period.period_id, system_caller)

        await session.refresh(period)
        assert period.calculation_lock == "another-run"

    async def test_cancellation_writes_nothing(
        self, session, settings, system_caller, period, employees, standard_concepts
    ):
        period_id = period.period_id
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(CalculationCancelledError):
            await PayrollEngine(session, settings).calculate_period(
                period_id, system_caller, cancel_event=cancel
            )

        assert await current_details(session, period_id) == []
        await session.refresh(period)
        assert period.calculation_lock is None

    async def test_permission_required(self, session, settings, period, standard_concepts):
        caller = CallerContext(permissions=("payroll:read",))
        with pytest.raises(PermissionDeniedError):
            await PayrollEngine(session, settings).calculate_period(period.period_id, caller)

    async def test_unknown_period(self, session, settings, system_caller):
        with pytest.raises(NotFoundError):
            await PayrollEngine(session, settings).calculate_period(uuid4(), system_caller)


class TestScope:
    """Test that scope limits which employees are calculated and read."""

    async def test_own_scope_reads_only_own_detail(
        self, session, settings, system_caller, company, period, employees, standard_concepts
    ):
        await PayrollEngine(session, settings).calculate_period(period.period_id, system_caller)
        me = employees[1]
        caller = CallerContext(
            permissions=("payroll:read:own",),
            company_id=company.company_id,
            employee_id=me.employee_id,
        )
        query = PayrollQueryService(session)

        details = await query.list_period_details(period.period_id, caller)
        assert [d.employee_id for d in details] == [me.employee_id]

        with pytest.raises(NotFoundError):
            await query.get_employee_detail(period.period_id, employees[0].employee_id, caller)

    async def test_subordinates_scope_calculates_team_only(
        self, session, settings, company, period, make_employee, standard_concepts
    ):
        manager = await make_employee()
        report = await make_employee(manager_id=manager.employee_id)
        await make_employee()
        caller = CallerContext(
            permissions=("payroll:calculate:subordinates",),
            company_id=company.company_id,
            employee_id=manager.employee_id,
        )

        result = await PayrollEngine(session, settings).calculate_period(period.period_id, caller)
        assert [r.employee_id for r in result.results] == [report.employee_id]

        # the manager and the third employee still have no detail
        assert result.status == "PROCESSING"
        await session.refresh(period)
        assert period.status == "PROCESSING"
        assert period.calculation_lock is None

    async def test_scoped_run_completes_calculated_roster(
        self, session, settings, system_caller, company, period, make_employee, standard_concepts
    ):
        manager = await make_employee()
        await make_employee(manager_id=manager.employee_id)
        await make_employee()
        engine = PayrollEngine(session, settings)
        await engine.calculate_period(period.period_id, system_caller)

        caller = CallerContext(
            permissions=("payroll:calculate:subordinates",),
            company_id=company.company_id,
            employee_id=manager.employee_id,
        )
        result = await engine.calculate_period(period.period_id, caller)

        assert result.success_count == 1
        assert result.status == "CALCULATED"

    async def test_company_scope_hides_other_companies(
        self, session, settings, period, standard_concepts
    ):
        caller = CallerContext(permissions=("payroll:calculate:company",), company_id=uuid4())
        with pytest.raises(NotFoundError):
            await PayrollEngine(session, settings).calculate_period(period.period_id, caller)


class TestPreview:
    """Test dry runs."""

    async def test_preview_persists_nothing(
        self, session, settings, system_caller, period, employees, standard_concepts
    ):
        engine = PayrollEngine(session, settings)
        result = await engine.preview_period(
            period.period_id, system_caller, [employees[0].employee_id]
        )
        assert result.success_count == 1
        assert result.total_net == Decimal("7312.50")
        assert await current_details(session, period.period_id) == []
        await session.refresh(period)
        assert period.status == "DRAFT"

    async def test_employee_preview_with_overrides(
        self, session, settings, system_caller, period, employees, standard_concepts
    ):
        result = await PayrollEngine(session, settings).calculate_employee_preview(
            period.period_id, employees[0].employee_id, system_caller, overrides={"workedDays": 10}
        )
        assert result.total_perceptions == Decimal("5000.00")
        assert result.total_deductions == Decimal("125.00")
