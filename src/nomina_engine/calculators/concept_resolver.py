"""Concept dependency ordering.

Concepts may reference the results of other concepts by code. Before a
calculation run starts, the active concept set is compiled into a
``ConceptPlan``: every formula parsed, every reference checked, and the
concepts topologically ordered (perceptions first, then deductions). Ties
are broken by ``(priority, code)`` so the order is reproducible.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Sequence

from nomina_engine.calculators.formula_evaluator import (
    CONTEXT_IDENTIFIERS,
    CUSTOM_IDENTIFIERS,
    FormulaEvaluator,
)
from nomina_engine.calculators.formula_parser import FormulaError
from nomina_engine.calculators.types import ConceptPlan, PlannedConcept
from nomina_engine.models.concept import Concept, ConceptType

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Concept configuration prevents a calculation run from starting."""

    kind = "CONFIGURATION_ERROR"


class CyclicDependencyError(ConfigurationError):
    kind = "CYCLIC_DEPENDENCY"

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        if len(self.cycle) == 1:
            msg = f"Concept '{self.cycle[0]}' references itself"
        else:
            msg = "Cyclic concept dependency: " + " -> ".join(self.cycle + [self.cycle[0]])
        super().__init__(msg)


class MissingConceptError(ConfigurationError):
    kind = "MISSING_CONCEPT"

    def __init__(self, concept_code: str, identifier: str):
        self.concept_code = concept_code
        self.identifier = identifier
        super().__init__(
            f"Concept '{concept_code}' references '{identifier}', which is neither a "
            "context variable nor an active concept"
        )


class ConceptOrderError(ConfigurationError):
    kind = "CONCEPT_ORDER"

    def __init__(self, concept_code: str, deduction_code: str):
        self.concept_code = concept_code
        self.deduction_code = deduction_code
        super().__init__(
            f"Perception '{concept_code}' cannot reference deduction '{deduction_code}'"
        )


class InvalidConceptFormulaError(ConfigurationError):
    kind = "INVALID_FORMULA"

    def __init__(self, concept_code: str, error: FormulaError):
        self.concept_code = concept_code
        self.error = error
        super().__init__(f"Concept '{concept_code}' has an invalid formula: {error.message}")


BASE_IDENTIFIERS = frozenset(CONTEXT_IDENTIFIERS) | frozenset(CUSTOM_IDENTIFIERS)


class ConceptResolver:
    """Compile and order a company's active concepts."""

    def __init__(self, evaluator: FormulaEvaluator):
        self.evaluator = evaluator

    def compile(self, concepts: Iterable[Concept]) -> list[PlannedConcept]:
        planned = []
        seen: set[str] = set()
        for concept in concepts:
            if concept.code in seen:
                raise ConfigurationError(f"Duplicate active concept code '{concept.code}'")
            if concept.code in BASE_IDENTIFIERS:
                raise ConfigurationError(
                    f"Concept code '{concept.code}' shadows a context variable"
                )
            seen.add(concept.code)
            try:
                expression = self.evaluator.parse(concept.formula)
            except FormulaError as e:
                raise InvalidConceptFormulaError(concept.code, e) from e
            planned.append(
                PlannedConcept(
                    concept_id=concept.concept_id,
                    code=concept.code,
                    name=concept.name,
                    concept_type=ConceptType(concept.concept_type),
                    version=concept.version,
                    formula=concept.formula,
                    expression=expression,
                    policy=concept.policy,
                    priority=concept.priority,
                    depends_on=self.evaluator.referenced_identifiers(expression),
                )
            )
        return planned

    def resolve(self, concepts: Iterable[Concept]) -> ConceptPlan:
        """Build the ordered plan, raising ``ConfigurationError`` on bad setups."""
        return self.order(self.compile(concepts))

    def order(self, planned: Sequence[PlannedConcept]) -> ConceptPlan:
        by_code = {c.code: c for c in planned}
        deduction_codes = {
            c.code for c in planned if c.concept_type == ConceptType.DEDUCTION
        }

        edges: dict[str, set[str]] = {}
        for concept in planned:
            deps: set[str] = set()
            for name in concept.depends_on:
                if name == concept.code:
                    raise CyclicDependencyError([concept.code])
                if name in by_code:
                    if concept.concept_type == ConceptType.PERCEPTION and name in deduction_codes:
                        raise ConceptOrderError(concept.code, name)
                    deps.add(name)
                elif name not in BASE_IDENTIFIERS:
                    raise MissingConceptError(concept.code, name)
            edges[concept.code] = deps

        perceptions = [c for c in planned if c.concept_type == ConceptType.PERCEPTION]
        deductions = [c for c in planned if c.concept_type == ConceptType.DEDUCTION]

        ordered_perceptions = self._topological(perceptions, edges, by_code)
        ordered_deductions = self._topological(deductions, edges, by_code)

        plan = ConceptPlan(
            perceptions=tuple(ordered_perceptions),
            deductions=tuple(ordered_deductions),
        )
        logger.debug("Concept evaluation order: %s", ", ".join(plan.codes))
        return plan

    @staticmethod
    def _topological(
        group: Sequence[PlannedConcept],
        edges: dict[str, set[str]],
        by_code: dict[str, PlannedConcept],
    ) -> list[PlannedConcept]:
        """Kahn's algorithm restricted to one concept type.

        Dependencies outside the group were already evaluated (perceptions
        before deductions), so only in-group edges constrain the order.
        """
        codes = {c.code for c in group}
        pending = {code: {d for d in edges[code] if d in codes} for code in codes}
        dependents: dict[str, list[str]] = {code: [] for code in codes}
        for code, deps in pending.items():
            for dep in deps:
                dependents[dep].append(code)

        heap = [
            (by_code[code].priority, code) for code, deps in pending.items() if not deps
        ]
        heapq.heapify(heap)

        ordered: list[PlannedConcept] = []
        while heap:
            _, code = heapq.heappop(heap)
            ordered.append(by_code[code])
            for dependent in dependents[code]:
                pending[dependent].discard(code)
                if not pending[dependent]:
                    heapq.heappush(heap, (by_code[dependent].priority, dependent))

        if len(ordered) != len(group):
            remaining = {code for code, deps in pending.items() if deps}
            raise CyclicDependencyError(_find_cycle(remaining, pending))
        return ordered


def _find_cycle(remaining: set[str], pending: dict[str, set[str]]) -> list[str]:
    """Walk unresolved edges from the smallest code until a node repeats."""
    start = min(remaining)
    path: list[str] = []
    index: dict[str, int] = {}
    node = start
    while node not in index:
        index[node] = len(path)
        path.append(node)
        node = min(d for d in pending[node] if d in remaining)
    return path[index[node]:]
