"""Predefined perception and deduction concepts.

Templates are a convenience for creating concepts with the formulas most
Mexican payrolls need; a created concept is an ordinary ``Concept`` row.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from nomina_engine.models.concept import Concept, ConceptType, ExemptLimitType


class TemplateNotFoundError(Exception):
    """Raised when a template code is unknown."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Formula template '{code}' not found")


@dataclass(frozen=True)
class FormulaTemplate:
    code: str
    name: str
    concept_type: ConceptType
    formula: str
    description: str
    sat_code: str | None = None
    is_taxable: bool = True
    exempt_limit: Decimal | None = None
    exempt_limit_type: ExemptLimitType | None = None
    priority: int = 100


PERCEPTION_TEMPLATES: tuple[FormulaTemplate, ...] = (
    FormulaTemplate(
        code="P_SUELDO",
        name="Sueldo",
        concept_type=ConceptType.PERCEPTION,
        formula="dailySalary * workedDays",
        description="Salario por días trabajados",
        sat_code="001",
        priority=10,
    ),
    FormulaTemplate(
        code="P_HORAS_EXTRA_DOBLES",
        name="Horas extra dobles",
        concept_type=ConceptType.PERCEPTION,
        formula="overtimeHours * hourlyRate * 2",
        description="Horas extra pagadas al doble",
        sat_code="019",
        exempt_limit=Decimal("5"),
        exempt_limit_type=ExemptLimitType.UMA,
        priority=20,
    ),
    FormulaTemplate(
        code="P_HORAS_EXTRA_TRIPLES",
        name="Horas extra triples",
        concept_type=ConceptType.PERCEPTION,
        formula="tripleOvertimeHours * hourlyRate * 3",
        description="Horas extra pagadas al triple",
        sat_code="019",
        priority=20,
    ),
    FormulaTemplate(
        code="P_AGUINALDO",
        name="Aguinaldo",
        concept_type=ConceptType.PERCEPTION,
        formula="dailySalary * 15",
        description="Gratificación anual (15 días)",
        sat_code="002",
        exempt_limit=Decimal("30"),
        exempt_limit_type=ExemptLimitType.UMA,
        priority=30,
    ),
    FormulaTemplate(
        code="P_PRIMA_VACACIONAL",
        name="Prima vacacional",
        concept_type=ConceptType.PERCEPTION,
        formula="dailySalary * vacationDays * 0.25",
        description="25% sobre los días de vacaciones",
        sat_code="021",
        exempt_limit=Decimal("15"),
        exempt_limit_type=ExemptLimitType.UMA,
        priority=30,
    ),
    FormulaTemplate(
        code="P_VALES_DESPENSA",
        name="Vales de despensa",
        concept_type=ConceptType.PERCEPTION,
        formula="baseSalary * 0.10",
        description="10% del salario en vales",
        sat_code="029",
        exempt_limit=Decimal("0.4"),
        exempt_limit_type=ExemptLimitType.UMA_MONTHLY,
        priority=40,
    ),
    FormulaTemplate(
        code="P_FONDO_AHORRO",
        name="Fondo de ahorro (aportación patronal)",
        concept_type=ConceptType.PERCEPTION,
        formula="min(baseSalary * 0.13, umaMonthly * 1.3)",
        description="13% del salario con tope de 1.3 UMA mensual",
        sat_code="005",
        is_taxable=False,
        priority=40,
    ),
    FormulaTemplate(
        code="P_BONO_ANTIGUEDAD",
        name="Bono de antigüedad",
        concept_type=ConceptType.PERCEPTION,
        formula="seniority >= 1 ? seniority * dailySalary : 0",
        description="Un día de salario por año de antigüedad",
        sat_code="038",
        priority=50,
    ),
    FormulaTemplate(
        code="P_BONO_PUNTUALIDAD",
        name="Bono de puntualidad",
        concept_type=ConceptType.PERCEPTION,
        formula="absenceDays == 0 ? baseSalary * 0.05 : 0",
        description="5% del salario sin faltas",
        sat_code="010",
        priority=50,
    ),
    FormulaTemplate(
        code="P_BONO_ASISTENCIA",
        name="Bono de asistencia",
        concept_type=ConceptType.PERCEPTION,
        formula="absenceDays == 0 ? baseSalary * 0.03 : 0",
        description="3% del salario por asistencia perfecta",
        sat_code="049",
        priority=50,
    ),
)

DEDUCTION_TEMPLATES: tuple[FormulaTemplate, ...] = (
    FormulaTemplate(
        code="D_FONDO_AHORRO_EMP",
        name="Fondo de ahorro (aportación empleado)",
        concept_type=ConceptType.DEDUCTION,
        formula="min(baseSalary * 0.13, umaMonthly * 1.3)",
        description="Aportación del trabajador al fondo de ahorro",
        sat_code="004",
        priority=10,
    ),
    FormulaTemplate(
        code="D_CAJA_AHORRO",
        name="Caja de ahorro",
        concept_type=ConceptType.DEDUCTION,
        formula="baseSalary * (custom1 / 100)",
        description="Porcentaje del salario (custom1)",
        sat_code="004",
        priority=20,
    ),
    FormulaTemplate(
        code="D_PRESTAMO",
        name="Préstamo",
        concept_type=ConceptType.DEDUCTION,
        formula="custom2",
        description="Abono a préstamo (custom2)",
        sat_code="004",
        priority=30,
    ),
    FormulaTemplate(
        code="D_COMEDOR",
        name="Comedor",
        concept_type=ConceptType.DEDUCTION,
        formula="workedDays * 50",
        description="Cuota diaria de comedor",
        sat_code="004",
        priority=40,
    ),
)

TEMPLATES: dict[str, FormulaTemplate] = {
    t.code: t for t in PERCEPTION_TEMPLATES + DEDUCTION_TEMPLATES
}

_OVERRIDABLE = {
    "code",
    "name",
    "description",
    "formula",
    "sat_code",
    "priority",
    "is_taxable",
    "exempt_limit",
    "exempt_limit_type",
}


def list_templates() -> list[FormulaTemplate]:
    return list(TEMPLATES.values())


def get_template(code: str) -> FormulaTemplate:
    try:
        return TEMPLATES[code]
    except KeyError:
        raise TemplateNotFoundError(code) from None


def instantiate_template(
    code: str, company_id: UUID, overrides: dict[str, Any] | None = None
) -> Concept:
    """Build an unsaved ``Concept`` from a template.

    ``overrides`` may replace any descriptive or policy field; unknown keys
    raise ``ValueError``.
    """
    template = get_template(code)
    overrides = dict(overrides or {})
    unknown = set(overrides) - _OVERRIDABLE
    if unknown:
        raise ValueError(f"Cannot override template fields: {', '.join(sorted(unknown))}")

    limit_type = overrides.get("exempt_limit_type", template.exempt_limit_type)
    if isinstance(limit_type, ExemptLimitType):
        limit_type = limit_type.value
    exempt_limit = overrides.get("exempt_limit", template.exempt_limit)

    return Concept(
        company_id=company_id,
        code=overrides.get("code", template.code),
        name=overrides.get("name", template.name),
        description=overrides.get("description", template.description),
        concept_type=template.concept_type.value,
        formula=overrides.get("formula", template.formula),
        sat_code=overrides.get("sat_code", template.sat_code),
        priority=overrides.get("priority", template.priority),
        is_taxable=overrides.get("is_taxable", template.is_taxable),
        exempt_limit=Decimal(str(exempt_limit)) if exempt_limit is not None else None,
        exempt_limit_type=limit_type,
        version=1,
        is_active=True,
    )
