"""ORM models for the nomina engine."""

from nomina_engine.models.base import Base, TimestampMixin
from nomina_engine.models.company import (
    Company,
    ContractType,
    Employee,
    EmployeePeriodInput,
    EmployeeStatus,
    RiskClass,
)
from nomina_engine.models.concept import (
    Concept,
    ConceptPolicy,
    ConceptType,
    DeductionPolicy,
    ExemptLimitType,
    PerceptionPolicy,
)
from nomina_engine.models.fiscal import (
    AttemptStatus,
    FiscalDocument,
    StampingAttempt,
    StampOperation,
)
from nomina_engine.models.immutability import (
    ImmutableDocumentError,
    register_immutability_listeners,
)
from nomina_engine.models.payroll import (
    PERIOD_DAYS,
    LineType,
    PayrollDetail,
    PayrollDetailLine,
    PayrollFailure,
    PayrollPeriod,
    PeriodType,
)

register_immutability_listeners()

__all__ = [
    "AttemptStatus",
    "Base",
    "Company",
    "Concept",
    "ConceptPolicy",
    "ConceptType",
    "ContractType",
    "DeductionPolicy",
    "Employee",
    "EmployeePeriodInput",
    "EmployeeStatus",
    "ExemptLimitType",
    "FiscalDocument",
    "ImmutableDocumentError",
    "LineType",
    "PERIOD_DAYS",
    "PayrollDetail",
    "PayrollDetailLine",
    "PayrollFailure",
    "PayrollPeriod",
    "PerceptionPolicy",
    "PeriodType",
    "RiskClass",
    "StampOperation",
    "StampingAttempt",
    "TimestampMixin",
    "register_immutability_listeners",
]
