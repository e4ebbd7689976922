"""Tests for the period lifecycle and versioned corrections."""

from decimal import Decimal

import pytest

from nomina_engine.calculators.engine import PayrollEngine
from nomina_engine.services.payroll_query_service import PayrollQueryService
from nomina_engine.services.period_service import CorrectionError, PeriodService
from nomina_engine.services.permission_scope import CallerContext, PermissionDeniedError
from nomina_engine.services.state_machine import InvalidTransitionError, PeriodLockedError


@pytest.fixture
async def calculated_period(session, settings, system_caller, period, employees, standard_concepts):
    await PayrollEngine(session, settings).calculate_period(period.period_id, system_caller)
    return period


class TestLifecycle:
    """Test approval, payment and closing."""

    async def test_approve_pay_close(self, session, settings, system_caller, calculated_period):
        service = PeriodService(session, settings)

        approved = await service.approve(calculated_period.period_id, system_caller)
        assert approved.status == "APPROVED"
        assert approved.approved_at is not None

        paid = await service.mark_paid(calculated_period.period_id, system_caller)
        assert paid.status == "PAID"
        assert paid.paid_at is not None

        closed = await service.close(calculated_period.period_id, system_caller)
        assert closed.status == "CLOSED"
        assert closed.closed_at is not None
        await session.commit()

    async def test_draft_cannot_be_approved(self, session, settings, system_caller, period):
        with pytest.raises(InvalidTransitionError):
            await PeriodService(session, settings).approve(period.period_id, system_caller)

    async def test_unresolved_failures_block_approval(
        self, session, settings, system_caller, period, employees, make_concept
    ):
        """A period with failed employees cannot be approved."""
        await make_concept("BONO", "100 / custom1")
        await PayrollEngine(session, settings).calculate_period(period.period_id, system_caller)

        service = PeriodService(session, settings)
        with pytest.raises(InvalidTransitionError) as exc_info:
            await service.approve(period.period_id, system_caller)
        assert "unresolved" in str(exc_info.value)

        failures = await service.list_failures(period.period_id, system_caller)
        assert len(failures) == 3
        assert {f.concept_code for f in failures} == {"BONO"}

    async def test_locked_period_cannot_be_approved(
        self, session, settings, system_caller, calculated_period
    ):
        calculated_period.calculation_lock = "running"
        await session.commit()

        with pytest.raises(InvalidTransitionError) as exc_info:
            await PeriodService(session, settings).approve(calculated_period.period_id, system_caller)
        assert "in progress" in str(exc_info.value)

    async def test_approve_requires_permission(self, session, settings, calculated_period):
        caller = CallerContext(permissions=("payroll:read",))
        with pytest.raises(PermissionDeniedError):
            await PeriodService(session, settings).approve(calculated_period.period_id, caller)


class TestCorrections:
    """Test versioned corrections of approved details."""

    async def test_correction_creates_new_version(
        self, session, settings, system_caller, calculated_period, employees
    ):
        service = PeriodService(session, settings)
        await service.approve(calculated_period.period_id, system_caller)
        await session.commit()

        employee = employees[0]
        corrected = await service.correct_detail(
            calculated_period.period_id,
            employee.employee_id,
            "  Faltó registrar una incapacidad  ",
            system_caller,
            overrides={"workedDays": 14},
        )
        await session.commit()

        assert corrected.version == 2
        assert corrected.is_current is True
        assert corrected.correction_reason == "Faltó registrar una incapacidad"
        assert corrected.total_perceptions == Decimal("7000.00")
        assert corrected.net_pay == Decimal("6825.00")

        history = await PayrollQueryService(session).detail_history(
            calculated_period.period_id, employee.employee_id, system_caller
        )
        assert [d.version for d in history] == [1, 2]
        original = history[0]
        assert original.is_current is False
        assert original.superseded_at is not None
        assert original.net_pay == Decimal("7312.50")

    async def test_correction_requires_reason(
        self, session, settings, system_caller, calculated_period, employees
    ):
        service = PeriodService(session, settings)
        await service.approve(calculated_period.period_id, system_caller)

        with pytest.raises(CorrectionError):
            await service.correct_detail(
                calculated_period.period_id, employees[0].employee_id, "   ", system_caller
            )

    async def test_calculated_period_is_recalculated_not_corrected(
        self, session, settings, system_caller, calculated_period, employees
    ):
        with pytest.raises(InvalidTransitionError):
            await PeriodService(session, settings).correct_detail(
                calculated_period.period_id, employees[0].employee_id, "fix", system_caller
            )

    async def test_closed_period_rejects_corrections(
        self, session, settings, system_caller, calculated_period, employees
    ):
        service = PeriodService(session, settings)
        await service.approve(calculated_period.period_id, system_caller)
        await service.mark_paid(calculated_period.period_id, system_caller)
        await service.close(calculated_period.period_id, system_caller)

        with pytest.raises(PeriodLockedError):
            await service.correct_detail(
                calculated_period.period_id, employees[0].employee_id, "late fix", system_caller
            )

    async def test_correction_failure_keeps_current_version(
        self, session, settings, system_caller, calculated_period, employees
    ):
        """A correction that fails to evaluate leaves the current detail alone."""
        service = PeriodService(session, settings)
        await service.approve(calculated_period.period_id, system_caller)
        await session.commit()

        with pytest.raises(CorrectionError):
            await service.correct_detail(
                calculated_period.period_id,
                employees[0].employee_id,
                "bad override",
                system_caller,
                overrides={"workedDays": -5},
            )

        current = await PayrollQueryService(session).get_employee_detail(
            calculated_period.period_id, employees[0].employee_id, system_caller
        )
        assert current.version == 1
