"""Formula authoring API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from nomina_engine.api.dependencies import AppSettings, Caller, DbSession
from nomina_engine.api.schemas import (
    CalculationResponse,
    ConceptCreate,
    ConceptEvaluateRequest,
    ConceptFromTemplate,
    ConceptResponse,
    ConceptUpdate,
    ErrorResponse,
    EvaluateAllRequest,
    FormulaRequest,
    FormulaTestRequest,
    FormulaTestResponse,
    IdentifiersResponse,
    TemplateResponse,
    ValidationResponse,
)
from nomina_engine.services.formula_service import FormulaService

router = APIRouter(prefix="/formulas", tags=["formulas"])


# ============================================================================
# Stateless helpers
# ============================================================================


@router.get("/identifiers", response_model=IdentifiersResponse)
async def list_identifiers(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    company_id: Annotated[UUID | None, Query()] = None,
) -> IdentifiersResponse:
    """Identifiers and functions usable in formulas.

    With ``company_id`` the company's active concept codes are included.
    """
    service = FormulaService(db, settings)
    if company_id is not None:
        identifiers = await service.company_identifiers(company_id, caller)
    else:
        identifiers = service.available_identifiers()
    return IdentifiersResponse(identifiers=identifiers, functions=service.available_functions())


@router.get("/templates", response_model=list[TemplateResponse])
async def list_templates(db: DbSession, settings: AppSettings) -> list[TemplateResponse]:
    service = FormulaService(db, settings)
    return [TemplateResponse.model_validate(t) for t in service.templates()]


@router.post("/validate", response_model=ValidationResponse)
async def validate_formula(
    db: DbSession, settings: AppSettings, payload: FormulaRequest
) -> ValidationResponse:
    """Syntax and identifier check. Never fails with an error status."""
    result = FormulaService(db, settings).validate(payload.formula)
    return ValidationResponse.model_validate(result)


@router.post("/test", response_model=FormulaTestResponse)
async def test_formula(
    db: DbSession, settings: AppSettings, payload: FormulaTestRequest
) -> FormulaTestResponse:
    """Evaluate a formula against sample values."""
    result = FormulaService(db, settings).test(payload.formula, payload.context)
    return FormulaTestResponse.model_validate(result)


# ============================================================================
# Concepts
# ============================================================================


@router.post(
    "/concepts",
    response_model=ConceptResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_concept(
    db: DbSession, settings: AppSettings, caller: Caller, payload: ConceptCreate
) -> ConceptResponse:
    service = FormulaService(db, settings)
    concept = await service.create_concept(
        payload.company_id, caller, **payload.model_dump(exclude={"company_id"})
    )
    await db.commit()
    return ConceptResponse.model_validate(concept)


@router.post(
    "/concepts/from-template",
    response_model=ConceptResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_concept_from_template(
    db: DbSession, settings: AppSettings, caller: Caller, payload: ConceptFromTemplate
) -> ConceptResponse:
    service = FormulaService(db, settings)
    concept = await service.create_from_template(
        payload.template_code, payload.company_id, caller, payload.overrides
    )
    await db.commit()
    return ConceptResponse.model_validate(concept)


@router.get(
    "/concepts/{concept_id}",
    response_model=ConceptResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_concept(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    concept_id: Annotated[UUID, Path()],
) -> ConceptResponse:
    concept = await FormulaService(db, settings).get_concept(concept_id, caller)
    return ConceptResponse.model_validate(concept)


@router.patch(
    "/concepts/{concept_id}",
    response_model=ConceptResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def update_concept(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    concept_id: Annotated[UUID, Path()],
    payload: ConceptUpdate,
) -> ConceptResponse:
    """Edit a concept; versions used by stamped documents are versioned instead."""
    changes = payload.model_dump(exclude_unset=True)
    concept = await FormulaService(db, settings).update_concept(concept_id, changes, caller)
    await db.commit()
    return ConceptResponse.model_validate(concept)


@router.post(
    "/concepts/{concept_id}/evaluate",
    response_model=FormulaTestResponse,
    responses={404: {"model": ErrorResponse}},
)
async def evaluate_concept(
    db: DbSession,
    settings: AppSettings,
    caller: Caller,
    concept_id: Annotated[UUID, Path()],
    payload: ConceptEvaluateRequest,
) -> FormulaTestResponse:
    result = await FormulaService(db, settings).evaluate_concept(concept_id, payload.context, caller)
    return FormulaTestResponse.model_validate(result)


@router.post(
    "/evaluate-all",
    response_model=CalculationResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def evaluate_all(
    db: DbSession, settings: AppSettings, caller: Caller, payload: EvaluateAllRequest
) -> CalculationResponse:
    """Dry-run every active concept over a period's roster. Nothing is saved."""
    result = await FormulaService(db, settings).evaluate_all(
        payload.period_id, caller, payload.employee_ids
    )
    return CalculationResponse.from_result(result)
