"""Formula authoring: concept creation, versioned edits and evaluation."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from nomina_engine.calculators.concept_resolver import ConceptResolver
from nomina_engine.calculators.engine import PayrollEngine, PeriodCalculationResult
from nomina_engine.calculators.formula_evaluator import (
    FUNCTION_DESCRIPTIONS,
    FormulaEvaluator,
    FormulaTestResult,
    ValidationResult,
)
from nomina_engine.calculators.formula_templates import (
    FormulaTemplate,
    instantiate_template,
    list_templates,
)
from nomina_engine.config import Settings, get_settings
from nomina_engine.exceptions import NotFoundError
from nomina_engine.models import (
    Concept,
    ConceptType,
    ExemptLimitType,
    FiscalDocument,
    PayrollDetailLine,
    PayrollPeriod,
)
from nomina_engine.models.base import utcnow
from nomina_engine.services.permission_scope import CallerContext, Scope
from nomina_engine.services.state_machine import FiscalDocumentStatus

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "name",
    "description",
    "formula",
    "sat_code",
    "priority",
    "is_taxable",
    "exempt_limit",
    "exempt_limit_type",
}


class ConceptLockedError(Exception):
    """Concepts cannot change while a calculation holds a period claim."""

    def __init__(self, company_id: UUID):
        self.company_id = company_id
        super().__init__(
            f"Concepts of company {company_id} are locked while a calculation is in progress"
        )


class DuplicateConceptError(Exception):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"An active concept with code '{code}' already exists")


class FormulaService:
    """Service behind the formula authoring API."""

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

    # ===== Stateless authoring helpers =====

    def available_identifiers(self) -> list[str]:
        return self.evaluator.list_available_identifiers()

    def available_functions(self) -> dict[str, str]:
        return {name: FUNCTION_DESCRIPTIONS[name] for name in self.evaluator.list_available_functions()}

    def templates(self) -> list[FormulaTemplate]:
        return list_templates()

    def validate(self, formula: str) -> ValidationResult:
        return self.evaluator.check(formula)

    def test(self, formula: str, sample: Mapping[str, Any] | None = None) -> FormulaTestResult:
        return self.evaluator.test(formula, sample)

    # ===== Concepts =====

    async def company_identifiers(self, company_id: UUID, caller: CallerContext) -> list[str]:
        """Context identifiers plus the company's active concept codes."""
        self._company_scope(caller, "read", company_id)
        codes = await self.session.scalars(
            select(Concept.code)
            .where(Concept.company_id == company_id, Concept.is_active.is_(True))
            .order_by(Concept.code)
        )
        return self.available_identifiers() + list(codes.all())

    async def get_concept(self, concept_id: UUID, caller: CallerContext) -> Concept:
        concept = await self.session.get(Concept, concept_id)
        if concept is None:
            raise NotFoundError("Concept", concept_id)
        scope = caller.require("formulas", "read")
        if not caller.company_allowed(scope, concept.company_id):
            raise NotFoundError("Concept", concept_id)
        return concept

    async def create_concept(
        self,
        company_id: UUID,
        caller: CallerContext,
        *,
        code: str,
        name: str,
        concept_type: str,
        formula: str,
        sat_code: str | None = None,
        priority: int = 100,
        description: str | None = None,
        is_taxable: bool = True,
        exempt_limit: Decimal | None = None,
        exempt_limit_type: str | None = None,
    ) -> Concept:
        self._company_scope(caller, "create", company_id)
        concept = Concept(
            company_id=company_id,
            code=code,
            name=name,
            description=description,
            concept_type=ConceptType(concept_type).value,
            formula=formula,
            sat_code=sat_code,
            priority=priority,
            is_taxable=is_taxable,
            exempt_limit=exempt_limit,
            exempt_limit_type=ExemptLimitType(exempt_limit_type).value if exempt_limit_type else None,
            version=1,
            is_active=True,
        )
        return await self._add(concept)

    async def create_from_template(
        self,
        template_code: str,
        company_id: UUID,
        caller: CallerContext,
        overrides: dict[str, Any] | None = None,
    ) -> Concept:
        self._company_scope(caller, "create", company_id)
        concept = instantiate_template(template_code, company_id, overrides)
        return await self._add(concept)

    async def update_concept(
        self, concept_id: UUID, changes: dict[str, Any], caller: CallerContext
    ) -> Concept:
        """Edit a concept.

        A version already used by a stamped document is never mutated: a
        new version is created and the old one deactivated. Otherwise the
        row is edited in place.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot edit concept fields: {', '.join(sorted(unknown))}")

        concept = await self.session.get(Concept, concept_id)
        if concept is None or not concept.is_active:
            raise NotFoundError("Concept", concept_id)
        self._company_scope(caller, "update", concept.company_id)
        await self._ensure_not_locked(concept.company_id)

        if "formula" in changes:
            self.evaluator.validate(changes["formula"])
        if changes.get("exempt_limit_type"):
            changes["exempt_limit_type"] = ExemptLimitType(changes["exempt_limit_type"]).value

        if await self._is_stamped(concept.concept_id):
            replacement = Concept(
                company_id=concept.company_id,
                code=concept.code,
                name=concept.name,
                description=concept.description,
                concept_type=concept.concept_type,
                formula=concept.formula,
                sat_code=concept.sat_code,
                priority=concept.priority,
                is_taxable=concept.is_taxable,
                exempt_limit=concept.exempt_limit,
                exempt_limit_type=concept.exempt_limit_type,
                version=concept.version + 1,
                is_active=True,
                previous_version_id=concept.concept_id,
            )
            for key, value in changes.items():
                setattr(replacement, key, value)
            concept.is_active = False
            concept.updated_at = utcnow()
            await self._check_configuration(concept.company_id, replacement, exclude=concept.concept_id)
            self.session.add(replacement)
            await self.session.flush()
            logger.info(
                "Concept %s versioned %d -> %d (previous version is referenced by stamped documents)",
                concept.code,
                concept.version,
                replacement.version,
            )
            return replacement

        for key, value in changes.items():
            setattr(concept, key, value)
        concept.updated_at = utcnow()
        await self._check_configuration(concept.company_id, concept, exclude=concept.concept_id)
        await self.session.flush()
        logger.info("Concept %s (v%d) edited in place", concept.code, concept.version)
        return concept

    async def evaluate_concept(
        self, concept_id: UUID, context: Mapping[str, Any], caller: CallerContext
    ) -> FormulaTestResult:
        """Evaluate a stored concept against caller-supplied values.

        Values not supplied fall back to the sample context.
        """
        concept = await self.get_concept(concept_id, caller)
        return self.evaluator.test(concept.formula, context)

    async def evaluate_all(
        self,
        period_id: UUID,
        caller: CallerContext,
        employee_ids: list[UUID] | None = None,
    ) -> PeriodCalculationResult:
        """Dry-run every active concept for an employee/period selection."""
        engine = PayrollEngine(self.session, self.settings, self.evaluator)
        return await engine.preview_period(period_id, caller, employee_ids)

    # ===== Internals =====

    def _company_scope(self, caller: CallerContext, action: str, company_id: UUID) -> Scope:
        scope = caller.require("formulas", action)
        if not caller.company_allowed(scope, company_id):
            raise NotFoundError("Company", company_id)
        return scope

    async def _add(self, concept: Concept) -> Concept:
        await self._ensure_not_locked(concept.company_id)
        self.evaluator.validate(concept.formula)

        duplicate = await self.session.scalar(
            select(Concept.concept_id).where(
                Concept.company_id == concept.company_id,
                Concept.code == concept.code,
                Concept.is_active.is_(True),
            )
        )
        if duplicate is not None:
            raise DuplicateConceptError(concept.code)

        await self._check_configuration(concept.company_id, concept)
        self.session.add(concept)
        await self.session.flush()
        logger.info("Concept %s created for company %s", concept.code, concept.company_id)
        return concept

    async def _check_configuration(
        self, company_id: UUID, candidate: Concept, exclude: UUID | None = None
    ) -> None:
        """Reject a concept that would leave the active set unorderable."""
        stmt = select(Concept).where(
            Concept.company_id == company_id,
            Concept.is_active.is_(True),
            Concept.code != candidate.code,
        )
        if exclude is not None:
            stmt = stmt.where(Concept.concept_id != exclude)
        with self.session.no_autoflush:
            others = list((await self.session.scalars(stmt)).all())
        self.resolver.resolve(others + [candidate])

    async def _ensure_not_locked(self, company_id: UUID) -> None:
        claimed = await self.session.scalar(
            select(
                exists().where(
                    PayrollPeriod.company_id == company_id,
                    PayrollPeriod.calculation_lock.is_not(None),
                )
            )
        )
        if claimed:
            raise ConceptLockedError(company_id)

    async def _is_stamped(self, concept_id: UUID) -> bool:
        return bool(
            await self.session.scalar(
                select(
                    exists().where(
                        PayrollDetailLine.concept_id == concept_id,
                        FiscalDocument.detail_id == PayrollDetailLine.detail_id,
                        FiscalDocument.status.in_(
                            [
                                FiscalDocumentStatus.STAMPED.value,
                                FiscalDocumentStatus.CANCELLED.value,
                            ]
                        ),
                    )
                )
            )
        )
