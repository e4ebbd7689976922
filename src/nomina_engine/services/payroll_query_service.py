"""Scoped read path for payroll details."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from nomina_engine.exceptions import NotFoundError
from nomina_engine.models import Employee, PayrollDetail
from nomina_engine.services.permission_scope import CallerContext


class PayrollQueryService:
    """Reads payroll details through the caller's scope.

    The scope criterion is part of every query, so a detail outside the
    caller's scope is indistinguishable from one that does not exist.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def _scoped(self, caller: CallerContext):
        scope = caller.require("payroll", "read")
        return (
            select(PayrollDetail)
            .join(Employee, Employee.employee_id == PayrollDetail.employee_id)
            .where(caller.employee_filter(scope))
        )

    async def get_detail(self, detail_id: UUID, caller: CallerContext) -> PayrollDetail:
        detail = await self.session.scalar(
            self._scoped(caller).where(PayrollDetail.detail_id == detail_id)
        )
        if detail is None:
            raise NotFoundError("PayrollDetail", detail_id)
        return detail

    async def get_employee_detail(
        self, period_id: UUID, employee_id: UUID, caller: CallerContext
    ) -> PayrollDetail:
        """Current detail of one employee in one period."""
        detail = await self.session.scalar(
            self._scoped(caller).where(
                PayrollDetail.period_id == period_id,
                PayrollDetail.employee_id == employee_id,
                PayrollDetail.is_current.is_(True),
            )
        )
        if detail is None:
            raise NotFoundError("PayrollDetail", employee_id)
        return detail

    async def list_period_details(
        self, period_id: UUID, caller: CallerContext, include_superseded: bool = False
    ) -> list[PayrollDetail]:
        stmt = self._scoped(caller).where(PayrollDetail.period_id == period_id)
        if not include_superseded:
            stmt = stmt.where(PayrollDetail.is_current.is_(True))
        stmt = stmt.order_by(Employee.employee_number, PayrollDetail.version)
        return list((await self.session.scalars(stmt)).all())

    async def detail_history(
        self, period_id: UUID, employee_id: UUID, caller: CallerContext
    ) -> list[PayrollDetail]:
        """Every version of an employee's detail, oldest first."""
        stmt = (
            self._scoped(caller)
            .where(
                PayrollDetail.period_id == period_id,
                PayrollDetail.employee_id == employee_id,
            )
            .order_by(PayrollDetail.version)
        )
        return list((await self.session.scalars(stmt)).all())
