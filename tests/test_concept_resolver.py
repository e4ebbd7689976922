"""Tests for concept dependency ordering."""

from uuid import uuid4

import pytest

from nomina_engine.calculators.concept_resolver import (
    ConceptOrderError,
    ConceptResolver,
    ConfigurationError,
    CyclicDependencyError,
    InvalidConceptFormulaError,
    MissingConceptError,
)
from nomina_engine.calculators.formula_evaluator import FormulaEvaluator
from nomina_engine.models import Concept


def concept(code, formula, concept_type="PERCEPTION", priority=100, version=1):
    return Concept(
        concept_id=uuid4(),
        company_id=uuid4(),
        code=code,
        name=code,
        concept_type=concept_type,
        formula=formula,
        priority=priority,
        version=version,
        is_active=True,
        is_taxable=True,
    )


@pytest.fixture
def resolver() -> ConceptResolver:
    return ConceptResolver(FormulaEvaluator())


class TestOrdering:
    """Test topological order and tie-breaking."""

    def test_dependencies_first(self, resolver):
        plan = resolver.resolve(
            [
                concept("BONO", "SUELDO * 0.1", priority=1),
                concept("SUELDO", "dailySalary * workedDays", priority=50),
            ]
        )
        assert plan.codes == ["SUELDO", "BONO"]

    def test_perceptions_before_deductions(self, resolver):
        plan = resolver.resolve(
            [
                concept("IMSS", "percentOf(SUELDO, 2.5)", "DEDUCTION", priority=1),
                concept("SUELDO", "dailySalary * workedDays", priority=99),
            ]
        )
        assert [c.code for c in plan.perceptions] == ["SUELDO"]
        assert [c.code for c in plan.deductions] == ["IMSS"]
        assert plan.codes == ["SUELDO", "IMSS"]

    def test_ties_broken_by_priority_then_code(self, resolver):
        plan = resolver.resolve(
            [
                concept("ZETA", "1", priority=10),
                concept("ALFA", "1", priority=10),
                concept("BETA", "1", priority=5),
            ]
        )
        assert plan.codes == ["BETA", "ALFA", "ZETA"]

    def test_order_is_independent_of_input_order(self, resolver):
        concepts = [
            concept("A", "B + C"),
            concept("B", "C * 2"),
            concept("C", "baseSalary"),
            concept("D", "1"),
        ]
        first = resolver.resolve(concepts).codes
        second = resolver.resolve(list(reversed(concepts))).codes
        assert first == second == ["C", "B", "A", "D"]

    def test_deduction_may_reference_deduction(self, resolver):
        plan = resolver.resolve(
            [
                concept("SUELDO", "dailySalary * workedDays"),
                concept("ISR", "SUELDO * 0.1", "DEDUCTION"),
                concept("SUBSIDIO", "ISR * 0.5", "DEDUCTION", priority=1),
            ]
        )
        assert [c.code for c in plan.deductions] == ["ISR", "SUBSIDIO"]

    def test_fingerprint_data_tracks_versions(self, resolver):
        plan = resolver.resolve([concept("SUELDO", "baseSalary", version=3)])
        assert plan.fingerprint_data()[0]["version"] == 3
        assert plan.fingerprint_data()[0]["formula"] == "baseSalary"


class TestConfigurationErrors:
    """Test rejection of unorderable concept sets."""

    def test_self_reference(self, resolver):
        with pytest.raises(CyclicDependencyError) as exc_info:
            resolver.resolve([concept("LOOP", "LOOP + 1")])
        assert exc_info.value.cycle == ["LOOP"]
        assert str(exc_info.value) == "Concept 'LOOP' references itself"

    def test_cycle(self, resolver):
        with pytest.raises(CyclicDependencyError) as exc_info:
            resolver.resolve(
                [
                    concept("A", "B + 1"),
                    concept("B", "C + 1"),
                    concept("C", "A + 1"),
                    concept("D", "baseSalary"),
                ]
            )
        assert set(exc_info.value.cycle) == {"A", "B", "C"}
        assert "->" in str(exc_info.value)

    def test_missing_reference(self, resolver):
        with pytest.raises(MissingConceptError) as exc_info:
            resolver.resolve([concept("BONO", "NOEXISTE * 2")])
        assert exc_info.value.concept_code == "BONO"
        assert exc_info.value.identifier == "NOEXISTE"

    def test_perception_cannot_reference_deduction(self, resolver):
        with pytest.raises(ConceptOrderError):
            resolver.resolve(
                [
                    concept("ISR", "100", "DEDUCTION"),
                    concept("NETO", "baseSalary - ISR"),
                ]
            )

    def test_duplicate_codes(self, resolver):
        with pytest.raises(ConfigurationError):
            resolver.resolve([concept("A", "1"), concept("A", "2")])

    def test_code_shadowing_context(self, resolver):
        with pytest.raises(ConfigurationError):
            resolver.resolve([concept("baseSalary", "1")])

    def test_invalid_formula(self, resolver):
        with pytest.raises(InvalidConceptFormulaError) as exc_info:
            resolver.resolve([concept("A", "1 +")])
        assert exc_info.value.error.kind == "SYNTAX_ERROR"

    def test_custom_identifiers_are_known(self, resolver):
        plan = resolver.resolve([concept("PRESTAMO", "custom1 + custom5", "DEDUCTION")])
        assert plan.codes == ["PRESTAMO"]
