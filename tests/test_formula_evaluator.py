"""Tests for formula evaluation."""

from decimal import Decimal

import pytest
from hypothesis import given, strategies as st

from nomina_engine.calculators.formula_evaluator import (
    CONTEXT_IDENTIFIERS,
    CUSTOM_IDENTIFIERS,
    SAMPLE_CONTEXT,
    FormulaEvaluator,
    ensure_non_negative,
)
from nomina_engine.calculators.formula_parser import (
    Binary,
    DivisionByZeroError,
    FormulaSyntaxError,
    NegativeAmountError,
    Number,
    StepLimitExceededError,
    TypeMismatchError,
    UnknownIdentifierError,
)


@pytest.fixture
def evaluator() -> FormulaEvaluator:
    return FormulaEvaluator()


class TestArithmetic:
    """Test operators and rounding of results."""

    def test_addition(self, evaluator):
        assert evaluator.evaluate("a + b", {"a": 2, "b": 3}) == Decimal("5.00")

    def test_result_rounded_half_up(self, evaluator):
        assert evaluator.evaluate("10 / 3", {}) == Decimal("3.33")
        assert evaluator.evaluate("x", {"x": Decimal("0.125")}) == Decimal("0.13")

    def test_intermediate_precision_kept(self, evaluator):
        """Only the final result is rounded."""
        assert evaluator.evaluate("(10 / 3) * 3", {}) == Decimal("10.00")

    def test_modulo(self, evaluator):
        assert evaluator.evaluate("17 % 5", {}) == Decimal("2.00")

    def test_division_by_zero(self, evaluator):
        with pytest.raises(DivisionByZeroError) as exc_info:
            evaluator.evaluate("x / 0", {"x": 10})
        assert exc_info.value.kind == "DIVISION_BY_ZERO"

    def test_modulo_by_zero(self, evaluator):
        with pytest.raises(DivisionByZeroError):
            evaluator.evaluate("x % y", {"x": 10, "y": 0})

    def test_unknown_identifier(self, evaluator):
        with pytest.raises(UnknownIdentifierError) as exc_info:
            evaluator.evaluate("undefinedVar + 1", {})
        assert exc_info.value.kind == "UNKNOWN_IDENTIFIER"
        assert exc_info.value.name == "undefinedVar"

    def test_boolean_result_rejected(self, evaluator):
        """A concept amount must be a number."""
        with pytest.raises(TypeMismatchError):
            evaluator.evaluate("1 > 0", {})
        assert evaluator.evaluate_raw("1 > 0", {}) is True

    def test_arithmetic_on_boolean_rejected(self, evaluator):
        with pytest.raises(TypeMismatchError):
            evaluator.evaluate("true + 1", {})

    def test_comparing_number_with_boolean_rejected(self, evaluator):
        with pytest.raises(TypeMismatchError):
            evaluator.evaluate_raw("1 == true", {})


class TestLogic:
    """Test comparisons, conditionals and short-circuiting."""

    def test_ternary(self, evaluator):
        assert evaluator.evaluate("x > 5 ? 100 : 0", {"x": 7}) == Decimal("100.00")
        assert evaluator.evaluate("x > 5 ? 100 : 0", {"x": 3}) == Decimal("0.00")

    def test_if_is_lazy(self, evaluator):
        """The branch not taken is never evaluated."""
        assert evaluator.evaluate("if(d == 0, 0, 100 / d)", {"d": 0}) == Decimal("0.00")

    def test_and_short_circuits(self, evaluator):
        assert evaluator.evaluate_raw("d != 0 && 100 / d > 1", {"d": 0}) is False

    def test_or_short_circuits(self, evaluator):
        assert evaluator.evaluate_raw("d == 0 || missing > 1", {"d": 0}) is True

    def test_condition_must_be_boolean(self, evaluator):
        with pytest.raises(TypeMismatchError):
            evaluator.evaluate("if(1, 2, 3)", {})

    def test_boolean_context_values(self, evaluator):
        assert evaluator.evaluate("if(flag, 10, 20)", {"flag": False}) == Decimal("20.00")


class TestFunctions:
    """Test the built-in function library."""

    @pytest.mark.parametrize(
        "formula,expected",
        [
            ("min(3, 1, 2)", "1.00"),
            ("max(3, 1, 2)", "3.00"),
            ("round(2.345)", "2.35"),
            ("round(2.5, 0)", "3.00"),
            ("percentOf(7500, 2.5)", "187.50"),
            ("floor(2.9)", "2.00"),
            ("ceil(2.1)", "3.00"),
            ("abs(-4)", "4.00"),
            ("proportional(15000, 10, 15)", "10000.00"),
        ],
    )
    def test_function(self, evaluator, formula, expected):
        assert evaluator.evaluate(formula, {}) == Decimal(expected)

    def test_round_places_must_be_integer(self, evaluator):
        with pytest.raises(TypeMismatchError):
            evaluator.evaluate("round(1.234, 1.5)", {})
        with pytest.raises(TypeMismatchError):
            evaluator.evaluate("round(1.234, 11)", {})

    def test_proportional_zero_total(self, evaluator):
        with pytest.raises(DivisionByZeroError):
            evaluator.evaluate("proportional(100, 5, 0)", {})

    def test_function_listing(self, evaluator):
        assert evaluator.list_available_functions() == [
            "min", "max", "round", "if", "percentOf", "floor", "ceil", "abs", "proportional",
        ]


class TestLimits:
    """Test evaluation bounds."""

    def test_step_limit(self):
        evaluator = FormulaEvaluator(max_steps=5)
        with pytest.raises(StepLimitExceededError) as exc_info:
            evaluator.evaluate("1 + 1 + 1 + 1 + 1", {})
        assert exc_info.value.kind == "STEP_LIMIT_EXCEEDED"

    def test_parse_is_cached(self, evaluator):
        assert evaluator.parse("a + 1") is evaluator.parse("a + 1")

    def test_long_chain_reported_not_crashed(self, evaluator):
        result = evaluator.test("+".join(["1"] * 450))
        assert result.success is False
        assert result.kind == "STEP_LIMIT_EXCEEDED"

    def test_deep_tree_bounded_during_evaluation(self):
        evaluator = FormulaEvaluator(max_depth=16)
        tree = Number(Decimal("1"))
        for _ in range(500):
            tree = Binary("+", tree, Number(Decimal("1")))

        with pytest.raises(StepLimitExceededError):
            evaluator.evaluate(tree, {})


class TestValidationAndTesting:
    """Test the non-raising authoring helpers."""

    def test_check_valid_lists_identifiers(self, evaluator):
        result = evaluator.check("workedDays * dailySalary")
        assert result.valid is True
        assert result.identifiers == ("dailySalary", "workedDays")

    def test_check_invalid(self, evaluator):
        result = evaluator.check("(1 + 2")
        assert result.valid is False
        assert result.kind == "SYNTAX_ERROR"
        assert result.error

    def test_validate_raises(self, evaluator):
        with pytest.raises(FormulaSyntaxError):
            evaluator.validate("1 +")

    def test_test_uses_sample_context(self, evaluator):
        result = evaluator.test("dailySalary * workedDays")
        assert result.success is True
        assert result.result == Decimal("7500.00")
        assert result.context["baseSalary"] == "15000"

    def test_test_overrides_sample(self, evaluator):
        result = evaluator.test("if(seniority >= 5, 500, 0)", {"seniority": 7})
        assert result.result == Decimal("500.00")

    def test_test_reports_failures(self, evaluator):
        result = evaluator.test("undefinedVar + 1")
        assert result.success is False
        assert result.kind == "UNKNOWN_IDENTIFIER"
        assert result.result is None

    def test_test_rejects_bad_sample_value(self, evaluator):
        result = evaluator.test("x", {"x": "not a number"})
        assert result.success is False
        assert result.kind == "TYPE_MISMATCH"

    def test_identifier_listing(self, evaluator):
        names = evaluator.list_available_identifiers()
        assert names == list(CONTEXT_IDENTIFIERS) + list(CUSTOM_IDENTIFIERS)
        assert set(names) == set(SAMPLE_CONTEXT)

    @given(st.text(max_size=60))
    def test_test_never_raises(self, formula):
        """Arbitrary input is reported, never raised."""
        result = FormulaEvaluator().test(formula)
        assert result.success or result.kind is not None


class TestNonNegative:
    def test_negative_amount(self):
        with pytest.raises(NegativeAmountError):
            ensure_non_negative(Decimal("-0.01"))
        assert ensure_non_negative(Decimal("0")) == Decimal("0")
