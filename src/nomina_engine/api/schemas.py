"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from nomina_engine.services.state_machine import PeriodStateMachine


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None


# ============================================================================
# Formula authoring
# ============================================================================


class IdentifiersResponse(BaseModel):
    identifiers: list[str]
    functions: dict[str, str]


class FormulaRequest(BaseModel):
    """A formula to validate."""

    formula: str = Field(..., max_length=1000)


class FormulaTestRequest(BaseModel):
    """A formula to evaluate against sample values."""

    formula: str = Field(..., max_length=1000)
    context: dict[str, Decimal | bool] | None = None


class ValidationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    valid: bool
    error: str | None = None
    kind: str | None = None
    identifiers: list[str] = []


class FormulaTestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    result: Decimal | None = None
    error: str | None = None
    kind: str | None = None
    context: dict[str, Any] = {}


class TemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    name: str
    concept_type: str
    formula: str
    description: str
    sat_code: str | None = None
    is_taxable: bool
    exempt_limit: Decimal | None = None
    exempt_limit_type: str | None = None
    priority: int


class ConceptCreate(BaseModel):
    """Schema for creating a concept."""

    company_id: UUID
    code: str = Field(..., min_length=1, max_length=50, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    name: str = Field(..., min_length=1)
    concept_type: Literal["PERCEPTION", "DEDUCTION"]
    formula: str = Field(..., max_length=1000)
    sat_code: str | None = Field(None, max_length=3)
    priority: int = 100
    description: str | None = None
    is_taxable: bool = True
    exempt_limit: Decimal | None = None
    exempt_limit_type: Literal["FIXED", "UMA", "SMG", "UMA_MONTHLY"] | None = None


class ConceptFromTemplate(BaseModel):
    company_id: UUID
    template_code: str
    overrides: dict[str, Any] | None = None


class ConceptUpdate(BaseModel):
    """Schema for editing a concept; only supplied fields change."""

    name: str | None = None
    description: str | None = None
    formula: str | None = Field(None, max_length=1000)
    sat_code: str | None = Field(None, max_length=3)
    priority: int | None = None
    is_taxable: bool | None = None
    exempt_limit: Decimal | None = None
    exempt_limit_type: Literal["FIXED", "UMA", "SMG", "UMA_MONTHLY"] | None = None


class ConceptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    concept_id: UUID
    company_id: UUID
    code: str
    name: str
    description: str | None = None
    concept_type: str
    formula: str
    sat_code: str | None = None
    priority: int
    version: int
    is_active: bool
    is_taxable: bool
    exempt_limit: Decimal | None = None
    exempt_limit_type: str | None = None
    previous_version_id: UUID | None = None
    created_at: datetime


class ConceptEvaluateRequest(BaseModel):
    context: dict[str, Decimal | bool] = {}


class EvaluateAllRequest(BaseModel):
    period_id: UUID
    employee_ids: list[UUID] | None = None


# ============================================================================
# Calculation results
# ============================================================================


class LineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    line_type: str
    sequence: int
    concept_code: str
    concept_name: str
    concept_version: int
    sat_code: str | None = None
    amount: Decimal
    taxable_amount: Decimal
    exempt_amount: Decimal


class FailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    concept_code: str | None = None
    error_kind: str
    message: str


class EmployeeResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    employee_number: str
    worked_days: Decimal
    total_perceptions: Decimal
    total_deductions: Decimal
    total_taxable: Decimal
    total_exempt: Decimal
    net_pay: Decimal
    fingerprint: str
    lines: list[LineResponse] = []
    failure: FailureResponse | None = None


class CalculationResponse(BaseModel):
    """Schema for a period calculation or preview."""

    period_id: UUID
    status: str
    success_count: int
    failure_count: int
    total_perceptions: Decimal
    total_deductions: Decimal
    total_net: Decimal
    results: list[EmployeeResultResponse]
    failures: list[FailureResponse]

    @classmethod
    def from_result(cls, result: Any) -> "CalculationResponse":
        return cls(
            period_id=result.period_id,
            status=result.status,
            success_count=result.success_count,
            failure_count=result.failure_count,
            total_perceptions=result.total_perceptions,
            total_deductions=result.total_deductions,
            total_net=result.total_net,
            results=[EmployeeResultResponse.model_validate(r) for r in result.results],
            failures=[FailureResponse.model_validate(f) for f in result.failures],
        )


# ============================================================================
# Periods and details
# ============================================================================


class PeriodResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period_id: UUID
    company_id: UUID
    period_number: int
    year: int
    period_type: str
    start_date: date
    end_date: date
    payment_date: date
    status: str
    calculated_at: datetime | None = None
    approved_at: datetime | None = None
    approved_by: UUID | None = None
    paid_at: datetime | None = None
    closed_at: datetime | None = None
    next_statuses: list[str] = Field(default_factory=list)

    @classmethod
    def from_period(cls, period: Any) -> "PeriodResponse":
        response = cls.model_validate(period)
        response.next_statuses = [
            s.value for s in PeriodStateMachine.get_next_statuses(period.status)
        ]
        return response


class DetailResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    detail_id: UUID
    period_id: UUID
    employee_id: UUID
    version: int
    is_current: bool
    worked_days: Decimal
    total_perceptions: Decimal
    total_deductions: Decimal
    net_pay: Decimal
    total_taxable: Decimal
    total_exempt: Decimal
    calculation_fingerprint: str
    correction_reason: str | None = None
    superseded_at: datetime | None = None
    created_at: datetime
    lines: list[LineResponse] = []


class CorrectionRequest(BaseModel):
    """Schema for issuing a corrected detail version."""

    reason: str = Field(..., min_length=1)
    overrides: dict[str, Decimal | bool] | None = None


class PreviewRequest(BaseModel):
    employee_ids: list[UUID] | None = None


# ============================================================================
# Fiscal documents
# ============================================================================


class GenerateRequest(BaseModel):
    detail_id: UUID


class AbandonRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    """Schema for a cancellation request."""

    reason: str = Field(..., min_length=1)
    motive: Literal["01", "02", "03", "04"] = "02"
    replacement_uuid: str | None = None


class AttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    attempt_number: int
    operation: str
    status: str
    error_kind: str | None = None
    error_message: str | None = None
    provider_uuid: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


class FiscalDocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    document_id: UUID
    detail_id: UUID
    detail_version: int
    employee_id: UUID
    period_id: UUID
    status: str
    uuid: str | None = None
    stamped_at: datetime | None = None
    attempt_count: int
    last_error: str | None = None
    last_error_kind: str | None = None
    abandoned_at: datetime | None = None
    cancellation_reason: str | None = None
    cancellation_motive: str | None = None
    cancelled_at: datetime | None = None
    xml_original: str
    xml_stamped: str | None = None
