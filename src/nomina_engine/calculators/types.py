"""Type definitions for calculation pipeline."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID

from nomina_engine.calculators.formula_evaluator import Value, coerce_value
from nomina_engine.calculators.formula_parser import Expression
from nomina_engine.models.concept import ConceptPolicy, ConceptType, PerceptionPolicy
from nomina_engine.models.payroll import LineType


class EvaluationContext(Mapping[str, Value]):
    """Read-only identifier bag for one employee in one period.

    ``extend`` returns a new context; the original is never modified.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None):
        self._values: dict[str, Value] = {
            name: coerce_value(value) for name, value in (values or {}).items()
        }

    def __getitem__(self, name: str) -> Value:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"EvaluationContext({self._values!r})"

    def extend(self, **values: Any) -> EvaluationContext:
        """Return a copy with additional or replaced values."""
        merged = EvaluationContext()
        merged._values = dict(self._values)
        for name, value in values.items():
            merged._values[name] = coerce_value(value)
        return merged

    def to_dict(self) -> dict[str, str | bool]:
        return {k: (v if isinstance(v, bool) else str(v)) for k, v in self._values.items()}


@dataclass(frozen=True)
class PlannedConcept:
    """A concept compiled for evaluation; shared read-only across workers."""

    concept_id: UUID | None
    code: str
    name: str
    concept_type: ConceptType
    version: int
    formula: str
    expression: Expression
    policy: ConceptPolicy
    priority: int = 100
    depends_on: frozenset[str] = frozenset()

    @property
    def sat_code(self) -> str | None:
        return self.policy.sat_code

    @property
    def line_type(self) -> LineType:
        if self.concept_type == ConceptType.PERCEPTION:
            return LineType.PERCEPTION
        return LineType.DEDUCTION


@dataclass(frozen=True)
class ConceptPlan:
    """Dependency-ordered concepts for one calculation run."""

    perceptions: tuple[PlannedConcept, ...]
    deductions: tuple[PlannedConcept, ...]

    @property
    def ordered(self) -> tuple[PlannedConcept, ...]:
        return self.perceptions + self.deductions

    @property
    def codes(self) -> list[str]:
        return [c.code for c in self.ordered]

    def fingerprint_data(self) -> list[dict[str, Any]]:
        data = []
        for c in self.ordered:
            policy = c.policy
            entry: dict[str, Any] = {
                "code": c.code,
                "version": c.version,
                "formula": c.formula,
                "sat_code": c.sat_code,
            }
            if isinstance(policy, PerceptionPolicy):
                entry["is_taxable"] = policy.is_taxable
                entry["exempt_limit"] = str(policy.exempt_limit) if policy.exempt_limit is not None else None
                entry["exempt_limit_type"] = (
                    policy.exempt_limit_type.value if policy.exempt_limit_type else None
                )
            data.append(entry)
        return data


@dataclass
class LineCandidate:
    """A candidate line item before persistence."""

    line_type: LineType
    sequence: int
    concept_code: str
    concept_name: str
    amount: Decimal  # Rounded to cents, never negative
    taxable_amount: Decimal = Decimal("0")
    exempt_amount: Decimal = Decimal("0")

    # Traceability
    concept_id: UUID | None = None
    concept_version: int = 1
    sat_code: str | None = None

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict for hashing (deterministic ordering)."""
        return {
            "line_type": self.line_type.value,
            "sequence": self.sequence,
            "concept_code": self.concept_code,
            "concept_version": self.concept_version,
            "sat_code": self.sat_code,
            "amount": str(self.amount),
            "taxable_amount": str(self.taxable_amount),
            "exempt_amount": str(self.exempt_amount),
        }


@dataclass
class FailureRecord:
    """Why one employee could not be calculated."""

    employee_id: UUID
    error_kind: str
    message: str
    concept_code: str | None = None


@dataclass
class EmployeeCalculationResult:
    """Result of calculating one employee for one period."""

    employee_id: UUID
    employee_number: str
    lines: list[LineCandidate] = field(default_factory=list)
    worked_days: Decimal = Decimal("0")
    total_perceptions: Decimal = Decimal("0")
    total_deductions: Decimal = Decimal("0")
    total_taxable: Decimal = Decimal("0")
    total_exempt: Decimal = Decimal("0")
    net_pay: Decimal = Decimal("0")
    fingerprint: str = ""
    failure: FailureRecord | None = None

    @property
    def success(self) -> bool:
        return self.failure is None

    @property
    def perceptions(self) -> list[LineCandidate]:
        return [ln for ln in self.lines if ln.line_type == LineType.PERCEPTION]

    @property
    def deductions(self) -> list[LineCandidate]:
        return [ln for ln in self.lines if ln.line_type == LineType.DEDUCTION]
