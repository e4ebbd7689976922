"""Payroll period API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query

from nomina_engine.api.dependencies import AppSettings, Caller, DbSession
from nomina_engine.api.schemas import (
    CalculationResponse,
    CorrectionRequest,
    DetailResponse,
    ErrorResponse,
    FailureResponse,
    PeriodResponse,
    PreviewRequest,
)
from nomina_engine.calculators.engine import PayrollEngine
from nomina_engine.services.payroll_query_service import PayrollQueryService
from nomina_engine.services.period_service import PeriodService

router = APIRouter(prefix="/periods", tags=["periods"])


@router.get(
    "/{period_id}",
    response_model=PeriodResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_period(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
) -> PeriodResponse:
    period = await PeriodService(db, settings).get_period(period_id, caller)
    return PeriodResponse.from_period(period)


# ============================================================================
# Calculation
# ============================================================================


@router.post(
    "/{period_id}/calculate",
    response_model=CalculationResponse,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def calculate_period(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
) -> CalculationResponse:
    """Run the payroll calculation for every in-scope employee."""
    result = await PayrollEngine(db, settings).calculate_period(period_id, caller)
    return CalculationResponse.from_result(result)


@router.post(
    "/{period_id}/preview",
    response_model=CalculationResponse,
    responses={404: {"model": ErrorResponse}},
)
async def preview_period(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
    payload: PreviewRequest,
) -> CalculationResponse:
    result = await PayrollEngine(db, settings).preview_period(period_id, caller, payload.employee_ids)
    return CalculationResponse.from_result(result)


@router.get(
    "/{period_id}/failures",
    response_model=list[FailureResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_failures(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
    include_resolved: Annotated[bool, Query()] = False,
) -> list[FailureResponse]:
    failures = await PeriodService(db, settings).list_failures(period_id, caller, include_resolved)
    return [FailureResponse.model_validate(f) for f in failures]


# ============================================================================
# Lifecycle
# ============================================================================


@router.post(
    "/{period_id}/approve",
    response_model=PeriodResponse,
    responses={409: {"model": ErrorResponse}},
)
async def approve_period(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
) -> PeriodResponse:
    period = await PeriodService(db, settings).approve(period_id, caller)
    await db.commit()
    return PeriodResponse.from_period(period)


@router.post(
    "/{period_id}/pay",
    response_model=PeriodResponse,
    responses={409: {"model": ErrorResponse}},
)
async def mark_period_paid(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
) -> PeriodResponse:
    period = await PeriodService(db, settings).mark_paid(period_id, caller)
    await db.commit()
    return PeriodResponse.from_period(period)


@router.post(
    "/{period_id}/close",
    response_model=PeriodResponse,
    responses={409: {"model": ErrorResponse}},
)
async def close_period(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
) -> PeriodResponse:
    period = await PeriodService(db, settings).close(period_id, caller)
    await db.commit()
    return PeriodResponse.from_period(period)


# ============================================================================
# Details
# ============================================================================


@router.get(
    "/{period_id}/details",
    response_model=list[DetailResponse],
)
async def list_details(
    db: DbSession,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
    include_superseded: Annotated[bool, Query()] = False,
) -> list[DetailResponse]:
    """Details visible to the caller; others are silently excluded."""
    details = await PayrollQueryService(db).list_period_details(
        period_id, caller, include_superseded
    )
    return [DetailResponse.model_validate(d) for d in details]


@router.get(
    "/{period_id}/employees/{employee_id}/detail",
    response_model=DetailResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_employee_detail(
    db: DbSession,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
    employee_id: Annotated[UUID, Path()],
) -> DetailResponse:
    detail = await PayrollQueryService(db).get_employee_detail(period_id, employee_id, caller)
    return DetailResponse.model_validate(detail)


@router.get(
    "/{period_id}/employees/{employee_id}/history",
    response_model=list[DetailResponse],
)
async def get_detail_history(
    db: DbSession,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
    employee_id: Annotated[UUID, Path()],
) -> list[DetailResponse]:
    details = await PayrollQueryService(db).detail_history(period_id, employee_id, caller)
    return [DetailResponse.model_validate(d) for d in details]


@router.post(
    "/{period_id}/employees/{employee_id}/corrections",
    response_model=DetailResponse,
    status_code=201,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def correct_detail(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    period_id: Annotated[UUID, Path()],
    employee_id: Annotated[UUID, Path()],
    payload: CorrectionRequest,
) -> DetailResponse:
    """Issue a new detail version for an approved period."""
    detail = await PeriodService(db, settings).correct_detail(
        period_id, employee_id, payload.reason, caller, payload.overrides
    )
    await db.commit()
    return DetailResponse.model_validate(detail)
