"""Payroll calculation engine - main orchestrator."""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from nomina_engine.calculators.concept_resolver import ConceptResolver
from nomina_engine.calculators.context import build_evaluation_context
from nomina_engine.calculators.formula_evaluator import FormulaEvaluator, ensure_non_negative
from nomina_engine.calculators.formula_parser import FormulaError, TypeMismatchError
from nomina_engine.calculators.line_builder import LineItemBuilder
from nomina_engine.calculators.rounding import ZERO, sum_and_round
from nomina_engine.calculators.types import (
    ConceptPlan,
    EmployeeCalculationResult,
    EvaluationContext,
    FailureRecord,
    LineCandidate,
)
from nomina_engine.config import Settings, get_settings
from nomina_engine.exceptions import NotFoundError
from nomina_engine.models import (
    Concept,
    Employee,
    EmployeePeriodInput,
    EmployeeStatus,
    LineType,
    PayrollDetail,
    PayrollDetailLine,
    PayrollFailure,
    PayrollPeriod,
)
from nomina_engine.models.base import utcnow
from nomina_engine.services.permission_scope import CallerContext, Scope
from nomina_engine.services.state_machine import (
    InvalidTransitionError,
    PeriodStateMachine,
    PeriodStatus,
)

logger = logging.getLogger(__name__)

NEGATIVE_NET_PAY = "NEGATIVE_NET_PAY"


class CalculationInProgressError(Exception):
    """Another calculation run holds the period claim."""

    def __init__(self, period_id: UUID):
        self.period_id = period_id
        super().__init__(f"Calculation already in progress for period {period_id}")


class CalculationCancelledError(Exception):
    """The run was cancelled; nothing was written."""

    def __init__(self, period_id: UUID, processed: int):
        self.period_id = period_id
        self.processed = processed
        super().__init__(
            f"Calculation for period {period_id} cancelled after {processed} employee(s)"
        )


@dataclass
class PeriodCalculationResult:
    """Result of calculating an entire period."""

    period_id: UUID
    status: str
    results: list[EmployeeCalculationResult] = field(default_factory=list)
    total_perceptions: Decimal = Decimal("0")
    total_deductions: Decimal = Decimal("0")
    total_net: Decimal = Decimal("0")

    @property
    def failures(self) -> list[FailureRecord]:
        return [r.failure for r in self.results if r.failure is not None]

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return len(self.failures)


def evaluate_employee(
    plan: ConceptPlan,
    context: EvaluationContext,
    employee_id: UUID,
    employee_number: str,
    evaluator: FormulaEvaluator,
    builder: LineItemBuilder,
) -> EmployeeCalculationResult:
    """Evaluate every planned concept for one employee.

    Pure function of its arguments; safe to run on a worker thread. The
    first failing concept stops this employee and is reported in the
    result instead of being raised.
    """
    result = EmployeeCalculationResult(
        employee_id=employee_id,
        employee_number=employee_number,
        worked_days=Decimal(context["workedDays"]),
    )
    initial_inputs = context.to_dict()

    lines: list[LineCandidate] = []
    perception_amounts: list[Decimal] = []
    taxable_amounts: list[Decimal] = []
    deduction_amounts: list[Decimal] = []

    for concept in plan.ordered:
        try:
            amount = ensure_non_negative(
                evaluator.evaluate(concept.formula, context), concept.formula
            )
        except FormulaError as e:
            result.failure = FailureRecord(
                employee_id=employee_id,
                error_kind=e.kind,
                message=e.message,
                concept_code=concept.code,
            )
            return result

        line = builder.create_line(concept, amount, len(lines) + 1)
        if line.amount != ZERO:
            lines.append(line)

        if line.line_type == LineType.PERCEPTION:
            perception_amounts.append(line.amount)
            taxable_amounts.append(line.taxable_amount)
        else:
            deduction_amounts.append(line.amount)

        context = context.extend(
            **{
                concept.code: line.amount,
                "totalPerceptions": sum_and_round(perception_amounts),
                "taxableIncome": sum_and_round(taxable_amounts),
                "totalDeductions": sum_and_round(deduction_amounts),
            }
        )

    totals = builder.totals(lines)
    if totals["net_pay"] < ZERO:
        result.failure = FailureRecord(
            employee_id=employee_id,
            error_kind=NEGATIVE_NET_PAY,
            message=f"Net pay would be negative ({totals['net_pay']})",
        )
        return result

    result.lines = lines
    result.total_perceptions = totals["total_perceptions"]
    result.total_deductions = totals["total_deductions"]
    result.total_taxable = totals["total_taxable"]
    result.total_exempt = totals["total_exempt"]
    result.net_pay = totals["net_pay"]
    result.fingerprint = builder.compute_fingerprint(
        lines, initial_inputs, plan.fingerprint_data()
    )
    return result


def eligible_employees(period: PayrollPeriod) -> tuple[ColumnElement[bool], ...]:
    """Filter for the employees a period must pay."""
    return (
        Employee.company_id == period.company_id,
        Employee.status == EmployeeStatus.ACTIVE.value,
        Employee.hire_date <= period.end_date,
    )


def merge_results(
    rejected: list[EmployeeCalculationResult], evaluated: list[EmployeeCalculationResult]
) -> list[EmployeeCalculationResult]:
    """Combine input failures with evaluated results in employee-number order."""
    return sorted(rejected + evaluated, key=lambda r: r.employee_number)


class PayrollEngine:
    """Main payroll calculation engine.

    Calculation pipeline:
    1) Resolve the caller's scope
    2) Compile and order the active concepts (configuration errors abort here)
    3) Claim the period (compare-and-swap on ``calculation_lock``)
    4) Load the scoped roster and build one context per employee
    5) Evaluate employees on a bounded thread pool
    6) Single-writer reduction: supersede, persist, advance status
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        evaluator: FormulaEvaluator | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.evaluator = evaluator or FormulaEvaluator.from_settings(self.settings)
        self.resolver = ConceptResolver(self.evaluator)
        self.builder = LineItemBuilder(self.settings)

    async def calculate_period(
        self,
        period_id: UUID,
        caller: CallerContext,
        cancel_event: threading.Event | None = None,
    ) -> PeriodCalculationResult:
        """Calculate every in-scope employee of a period."""
        scope = caller.require("payroll", "calculate")
        period = await self._load_period(period_id, caller, scope)
        if not PeriodStateMachine.can_calculate(period.status):
            raise InvalidTransitionError(
                period.status,
                PeriodStatus.PROCESSING.value,
                "period can no longer be calculated",
            )
        plan = await self.load_plan(period.company_id)

        recalculation = PeriodStateMachine.is_recalculation(
            period.status, PeriodStatus.PROCESSING.value
        )
        token = await self._claim(period)
        logger.info(
            "Calculation claimed for period %s (run %s, recalculation=%s)",
            period_id,
            token,
            recalculation,
        )

        try:
            roster = await self._load_roster(period, caller, scope)
            contexts, rejected = await self._build_contexts(period, roster)
            results = merge_results(
                rejected, await self._evaluate_all(plan, contexts, cancel_event)
            )

            if cancel_event is not None and cancel_event.is_set():
                raise CalculationCancelledError(period_id, len(results))

            outcome = await self._persist(period, results)
            await self.session.commit()
        except BaseException:
            await self.session.rollback()
            await self._release(period_id, token)
            logger.warning("Calculation for period %s aborted; claim released", period_id)
            raise

        logger.info(
            "Period %s calculated: %d ok, %d failed, status %s",
            period_id,
            outcome.success_count,
            outcome.failure_count,
            outcome.status,
        )
        return outcome

    async def calculate_employee_preview(
        self,
        period_id: UUID,
        employee_id: UUID,
        caller: CallerContext,
        overrides: dict[str, Any] | None = None,
    ) -> EmployeeCalculationResult:
        """Dry-run one employee; nothing is persisted and no claim is taken."""
        scope = caller.require("payroll", "calculate")
        period = await self._load_period(period_id, caller, scope)
        employee = await self.session.scalar(
            select(Employee).where(
                Employee.employee_id == employee_id,
                Employee.company_id == period.company_id,
                caller.employee_filter(scope),
            )
        )
        if employee is None:
            raise NotFoundError("Employee", employee_id)

        plan = await self.load_plan(period.company_id)
        period_input = await self.session.scalar(
            select(EmployeePeriodInput).where(
                EmployeePeriodInput.period_id == period_id,
                EmployeePeriodInput.employee_id == employee_id,
            )
        )
        context = build_evaluation_context(
            employee, period, self.settings, period_input, extra=overrides
        )
        return evaluate_employee(
            plan, context, employee.employee_id, employee.employee_number,
            self.evaluator, self.builder,
        )

    async def preview_period(
        self,
        period_id: UUID,
        caller: CallerContext,
        employee_ids: list[UUID] | None = None,
    ) -> PeriodCalculationResult:
        """Evaluate a selection of in-scope employees without persisting."""
        scope = caller.require("payroll", "calculate")
        period = await self._load_period(period_id, caller, scope)
        plan = await self.load_plan(period.company_id)
        roster = await self._load_roster(period, caller, scope, employee_ids)
        contexts, rejected = await self._build_contexts(period, roster)
        results = merge_results(rejected, await self._evaluate_all(plan, contexts, None))
        succeeded = [r for r in results if r.success]
        return PeriodCalculationResult(
            period_id=period_id,
            status=period.status,
            results=results,
            total_perceptions=sum_and_round(r.total_perceptions for r in succeeded),
            total_deductions=sum_and_round(r.total_deductions for r in succeeded),
            total_net=sum_and_round(r.net_pay for r in succeeded),
        )

    async def load_plan(self, company_id: UUID) -> ConceptPlan:
        """Compile the company's active concepts into an ordered plan."""
        concepts = (
            await self.session.scalars(
                select(Concept)
                .where(Concept.company_id == company_id, Concept.is_active.is_(True))
                .order_by(Concept.priority, Concept.code)
            )
        ).all()
        return self.resolver.resolve(concepts)

    # ===== Claim =====

    async def _claim(self, period: PayrollPeriod) -> str:
        token = str(uuid4())
        result = await self.session.execute(
            update(PayrollPeriod)
            .where(
                PayrollPeriod.period_id == period.period_id,
                PayrollPeriod.calculation_lock.is_(None),
                PayrollPeriod.status.in_([s.value for s in PeriodStateMachine.CALCULATION_ALLOWED]),
            )
            .values(
                calculation_lock=token,
                calculation_started_at=utcnow(),
                status=PeriodStatus.PROCESSING.value,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            await self.session.refresh(period)
            if period.calculation_lock is not None:
                raise CalculationInProgressError(period.period_id)
            raise InvalidTransitionError(
                period.status,
                PeriodStatus.PROCESSING.value,
                "period can no longer be calculated",
            )
        await self.session.commit()
        await self.session.refresh(period)
        return token

    async def _release(self, period_id: UUID, token: str) -> None:
        await self.session.execute(
            update(PayrollPeriod)
            .where(
                PayrollPeriod.period_id == period_id,
                PayrollPeriod.calculation_lock == token,
            )
            .values(calculation_lock=None, calculation_started_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    # ===== Loading =====

    async def _load_period(
        self, period_id: UUID, caller: CallerContext, scope: Scope
    ) -> PayrollPeriod:
        period = await self.session.get(PayrollPeriod, period_id)
        if period is None or not caller.company_allowed(scope, period.company_id):
            raise NotFoundError("PayrollPeriod", period_id)
        return period

    async def _load_roster(
        self,
        period: PayrollPeriod,
        caller: CallerContext,
        scope: Scope,
        employee_ids: list[UUID] | None = None,
    ) -> list[Employee]:
        stmt = (
            select(Employee)
            .where(*eligible_employees(period), caller.employee_filter(scope))
            .order_by(Employee.employee_number)
        )
        if employee_ids is not None:
            stmt = stmt.where(Employee.employee_id.in_(employee_ids))
        rows = await self.session.scalars(stmt)
        roster = list(rows.all())
        if not roster and scope != Scope.ALL:
            logger.info("Caller scope %s selects no employees in period %s", scope.value, period.period_id)
        return roster

    async def _build_contexts(
        self, period: PayrollPeriod, roster: list[Employee]
    ) -> tuple[list[tuple[UUID, str, EvaluationContext]], list[EmployeeCalculationResult]]:
        """Build one context per employee; unusable inputs fail only that employee."""
        inputs = {
            row.employee_id: row
            for row in (
                await self.session.scalars(
                    select(EmployeePeriodInput).where(
                        EmployeePeriodInput.period_id == period.period_id
                    )
                )
            ).all()
        }
        contexts: list[tuple[UUID, str, EvaluationContext]] = []
        rejected: list[EmployeeCalculationResult] = []
        for employee in roster:
            try:
                context = build_evaluation_context(
                    employee, period, self.settings, inputs.get(employee.employee_id)
                )
            except (TypeError, ValueError, ArithmeticError) as e:
                rejected.append(
                    EmployeeCalculationResult(
                        employee_id=employee.employee_id,
                        employee_number=employee.employee_number,
                        failure=FailureRecord(
                            employee_id=employee.employee_id,
                            error_kind=TypeMismatchError.kind,
                            message=f"Invalid period input: {e}",
                        ),
                    )
                )
                continue
            contexts.append((employee.employee_id, employee.employee_number, context))
        return contexts, rejected

    # ===== Evaluation =====

    async def _evaluate_all(
        self,
        plan: ConceptPlan,
        contexts: list[tuple[UUID, str, EvaluationContext]],
        cancel_event: threading.Event | None,
    ) -> list[EmployeeCalculationResult]:
        loop = asyncio.get_running_loop()

        def run(employee_id: UUID, number: str, context: EvaluationContext):
            if cancel_event is not None and cancel_event.is_set():
                return None
            return evaluate_employee(
                plan, context, employee_id, number, self.evaluator, self.builder
            )

        with ThreadPoolExecutor(
            max_workers=self.settings.calculation_concurrency,
            thread_name_prefix="nomina-calc",
        ) as executor:
            futures = [
                loop.run_in_executor(executor, run, employee_id, number, context)
                for employee_id, number, context in contexts
            ]
            outcomes = await asyncio.gather(*futures)

        return [r for r in outcomes if r is not None]

    # ===== Reduction =====

    async def _persist(
        self, period: PayrollPeriod, results: list[EmployeeCalculationResult]
    ) -> PeriodCalculationResult:
        now = utcnow()
        employee_ids = [r.employee_id for r in results]

        if employee_ids:
            current = (
                await self.session.scalars(
                    select(PayrollDetail).where(
                        PayrollDetail.period_id == period.period_id,
                        PayrollDetail.employee_id.in_(employee_ids),
                        PayrollDetail.is_current.is_(True),
                    )
                )
            ).all()
            for detail in current:
                detail.is_current = False
                detail.superseded_at = now

            versions = dict(
                (
                    await self.session.execute(
                        select(PayrollDetail.employee_id, func.max(PayrollDetail.version))
                        .where(
                            PayrollDetail.period_id == period.period_id,
                            PayrollDetail.employee_id.in_(employee_ids),
                        )
                        .group_by(PayrollDetail.employee_id)
                    )
                ).all()
            )

            await self.session.execute(
                update(PayrollFailure)
                .where(
                    PayrollFailure.period_id == period.period_id,
                    PayrollFailure.employee_id.in_(employee_ids),
                    PayrollFailure.resolved_at.is_(None),
                )
                .values(resolved_at=now)
                .execution_options(synchronize_session=False)
            )
        else:
            versions = {}

        for r in results:
            if r.failure is not None:
                self.session.add(
                    PayrollFailure(
                        period_id=period.period_id,
                        employee_id=r.employee_id,
                        concept_code=r.failure.concept_code,
                        error_kind=r.failure.error_kind,
                        message=r.failure.message,
                    )
                )
                logger.warning(
                    "Employee %s failed in period %s: %s (%s)",
                    r.employee_number,
                    period.period_id,
                    r.failure.message,
                    r.failure.concept_code,
                )
                continue
            self.session.add(self.build_detail(period, r, versions.get(r.employee_id, 0) + 1))

        await self.session.flush()

        unresolved = await self.session.scalar(
            select(func.count())
            .select_from(PayrollFailure)
            .where(
                PayrollFailure.period_id == period.period_id,
                PayrollFailure.resolved_at.is_(None),
            )
        )
        uncalculated = await self._uncalculated_count(period)
        if not unresolved and not uncalculated:
            PeriodStateMachine.validate_transition(period.status, PeriodStatus.CALCULATED.value)
            period.status = PeriodStatus.CALCULATED.value
            period.calculated_at = now
        elif uncalculated:
            logger.info(
                "Period %s stays %s: %d eligible employee(s) have no current detail",
                period.period_id,
                period.status,
                uncalculated,
            )
        period.calculation_lock = None
        period.calculation_started_at = None

        succeeded = [r for r in results if r.success]
        return PeriodCalculationResult(
            period_id=period.period_id,
            status=period.status,
            results=results,
            total_perceptions=sum_and_round(r.total_perceptions for r in succeeded),
            total_deductions=sum_and_round(r.total_deductions for r in succeeded),
            total_net=sum_and_round(r.net_pay for r in succeeded),
        )

    async def _uncalculated_count(self, period: PayrollPeriod) -> int:
        """Eligible employees of the period still without a current detail."""
        has_detail = (
            select(PayrollDetail.detail_id)
            .where(
                PayrollDetail.period_id == period.period_id,
                PayrollDetail.employee_id == Employee.employee_id,
                PayrollDetail.is_current.is_(True),
            )
            .exists()
        )
        return await self.session.scalar(
            select(func.count())
            .select_from(Employee)
            .where(*eligible_employees(period), ~has_detail)
        )

    @staticmethod
    def build_detail(
        period: PayrollPeriod, result: EmployeeCalculationResult, version: int
    ) -> PayrollDetail:
        return PayrollDetail(
            period_id=period.period_id,
            employee_id=result.employee_id,
            version=version,
            is_current=True,
            worked_days=result.worked_days,
            total_perceptions=result.total_perceptions,
            total_deductions=result.total_deductions,
            net_pay=result.net_pay,
            total_taxable=result.total_taxable,
            total_exempt=result.total_exempt,
            calculation_fingerprint=result.fingerprint,
            lines=[
                PayrollDetailLine(
                    line_type=line.line_type.value,
                    sequence=line.sequence,
                    concept_id=line.concept_id,
                    concept_version=line.concept_version,
                    concept_code=line.concept_code,
                    concept_name=line.concept_name,
                    sat_code=line.sat_code,
                    amount=line.amount,
                    taxable_amount=line.taxable_amount,
                    exempt_amount=line.exempt_amount,
                )
                for line in result.lines
            ],
        )

