"""Period lifecycle: approval, payment, closing and versioned corrections."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nomina_engine.calculators.engine import PayrollEngine
from nomina_engine.config import Settings, get_settings
from nomina_engine.exceptions import NotFoundError
from nomina_engine.models import (
    Employee,
    PayrollDetail,
    PayrollFailure,
    PayrollPeriod,
)
from nomina_engine.models.base import utcnow
from nomina_engine.services.permission_scope import CallerContext
from nomina_engine.services.state_machine import (
    InvalidTransitionError,
    PeriodLockedError,
    PeriodStateMachine,
    PeriodStatus,
)

logger = logging.getLogger(__name__)


class CorrectionError(Exception):
    """A correction could not be produced."""


class PeriodService:
    """Service for advancing payroll periods after calculation."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def get_period(self, period_id: UUID, caller: CallerContext, action: str = "read") -> PayrollPeriod:
        scope = caller.require("payroll", action)
        period = await self.session.get(PayrollPeriod, period_id)
        if period is None or not caller.company_allowed(scope, period.company_id):
            raise NotFoundError("PayrollPeriod", period_id)
        return period

    async def approve(self, period_id: UUID, caller: CallerContext) -> PayrollPeriod:
        """CALCULATED → APPROVED. Details are frozen from here on."""
        period = await self.get_period(period_id, caller, "approve")
        if period.calculation_lock is not None:
            raise InvalidTransitionError(
                period.status, PeriodStatus.APPROVED.value, "a calculation is in progress"
            )
        unresolved = await self._unresolved_failures(period_id)
        if unresolved:
            raise InvalidTransitionError(
                period.status,
                PeriodStatus.APPROVED.value,
                f"{len(unresolved)} employee(s) have unresolved calculation failures",
            )
        PeriodStateMachine.validate_transition(period.status, PeriodStatus.APPROVED.value)

        period.status = PeriodStatus.APPROVED.value
        period.approved_at = utcnow()
        period.approved_by = caller.employee_id
        await self.session.flush()
        logger.info("Period %s approved", period_id)
        return period

    async def mark_paid(self, period_id: UUID, caller: CallerContext) -> PayrollPeriod:
        period = await self.get_period(period_id, caller, "pay")
        PeriodStateMachine.validate_transition(period.status, PeriodStatus.PAID.value)
        period.status = PeriodStatus.PAID.value
        period.paid_at = utcnow()
        await self.session.flush()
        logger.info("Period %s marked paid", period_id)
        return period

    async def close(self, period_id: UUID, caller: CallerContext) -> PayrollPeriod:
        period = await self.get_period(period_id, caller, "close")
        PeriodStateMachine.validate_transition(period.status, PeriodStatus.CLOSED.value)
        period.status = PeriodStatus.CLOSED.value
        period.closed_at = utcnow()
        await self.session.flush()
        logger.info("Period %s closed", period_id)
        return period

    async def list_failures(
        self, period_id: UUID, caller: CallerContext, include_resolved: bool = False
    ) -> list[PayrollFailure]:
        """Failure report for a period, limited to employees in scope."""
        scope = caller.require("payroll", "read")
        await self.get_period(period_id, caller, "read")
        stmt = (
            select(PayrollFailure)
            .join(Employee, Employee.employee_id == PayrollFailure.employee_id)
            .where(PayrollFailure.period_id == period_id, caller.employee_filter(scope))
            .order_by(Employee.employee_number, PayrollFailure.created_at)
        )
        if not include_resolved:
            stmt = stmt.where(PayrollFailure.resolved_at.is_(None))
        return list((await self.session.scalars(stmt)).all())

    async def correct_detail(
        self,
        period_id: UUID,
        employee_id: UUID,
        reason: str,
        caller: CallerContext,
        overrides: dict[str, Any] | None = None,
    ) -> PayrollDetail:
        """Issue a new detail version for an approved (or later) period.

        The employee is recalculated with the current concepts, optionally
        overriding context values. The previous version is kept, marked as
        superseded.
        """
        if not reason or not reason.strip():
            raise CorrectionError("A correction requires a reason")

        scope = caller.require("payroll", "correct")
        period = await self.get_period(period_id, caller, "correct")
        if not PeriodStateMachine.are_results_immutable(period.status):
            raise InvalidTransitionError(
                period.status,
                period.status,
                "corrections apply to approved periods; recalculate instead",
            )
        if period.status == PeriodStatus.CLOSED:
            raise PeriodLockedError(period.period_id, period.status)

        previous = await self.session.scalar(
            select(PayrollDetail)
            .join(Employee, Employee.employee_id == PayrollDetail.employee_id)
            .where(
                PayrollDetail.period_id == period_id,
                PayrollDetail.employee_id == employee_id,
                PayrollDetail.is_current.is_(True),
                caller.employee_filter(scope),
            )
        )
        if previous is None:
            raise NotFoundError("PayrollDetail", employee_id)

        engine = PayrollEngine(self.session, self.settings)
        result = await engine.calculate_employee_preview(
            period_id, employee_id, CallerContext.system(), overrides=overrides
        )
        if result.failure is not None:
            raise CorrectionError(
                f"Correction failed for concept {result.failure.concept_code}: "
                f"{result.failure.message}"
            )

        now = utcnow()
        previous.is_current = False
        previous.superseded_at = now

        detail = engine.build_detail(period, result, previous.version + 1)
        detail.correction_reason = reason.strip()
        self.session.add(detail)
        await self.session.flush()
        logger.info(
            "Detail for employee %s in period %s corrected to version %d: %s",
            employee_id,
            period_id,
            detail.version,
            reason,
        )
        return detail

    async def _unresolved_failures(self, period_id: UUID) -> list[PayrollFailure]:
        rows = await self.session.scalars(
            select(PayrollFailure).where(
                PayrollFailure.period_id == period_id,
                PayrollFailure.resolved_at.is_(None),
            )
        )
        return list(rows.all())
