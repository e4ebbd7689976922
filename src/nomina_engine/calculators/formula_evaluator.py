"""Evaluator for parsed payroll formulas.

Evaluation walks the expression tree directly. Every node visit counts as
one step; a formula that exceeds the configured step budget is aborted with
``StepLimitExceededError``. Only identifiers present in the evaluation
context resolve; there is no access to Python objects of any kind.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Union

from nomina_engine.calculators.formula_parser import (
    DEFAULT_MAX_DEPTH,
    FUNCTION_ARITY,
    Binary,
    Boolean,
    Call,
    Conditional,
    DivisionByZeroError,
    Expression,
    FormulaError,
    FormulaSyntaxError,
    Identifier,
    NegativeAmountError,
    Number,
    StepLimitExceededError,
    TypeMismatchError,
    Unary,
    UnknownIdentifierError,
    iter_identifiers,
    parse_formula,
)
from nomina_engine.calculators.rounding import ZERO, round_currency, to_decimal

logger = logging.getLogger(__name__)

Value = Union[Decimal, bool]

DEFAULT_MAX_STEPS = 10_000
_MAX_ROUND_PLACES = 10
_HUNDRED = Decimal("100")

# Identifiers every evaluation context provides, in display order.
CONTEXT_IDENTIFIERS: tuple[str, ...] = (
    "baseSalary",
    "dailySalary",
    "hourlyRate",
    "integratedSalary",
    "workedDays",
    "periodDays",
    "absenceDays",
    "overtimeHours",
    "doubleOvertimeHours",
    "tripleOvertimeHours",
    "seniority",
    "seniorityDays",
    "vacationDays",
    "riskClass",
    "umaDaily",
    "umaMonthly",
    "smgDaily",
    "periodNumber",
    "periodYear",
    "totalPerceptions",
    "taxableIncome",
    "totalDeductions",
)

# Per-employee values from period inputs; 0 when not supplied.
CUSTOM_IDENTIFIERS: tuple[str, ...] = ("custom1", "custom2", "custom3", "custom4", "custom5")

# Sample values used by ``FormulaEvaluator.test`` when the caller supplies none.
SAMPLE_CONTEXT: dict[str, Value] = {
    "baseSalary": Decimal("15000"),
    "dailySalary": Decimal("500"),
    "hourlyRate": Decimal("62.5"),
    "integratedSalary": Decimal("520"),
    "workedDays": Decimal("15"),
    "periodDays": Decimal("15"),
    "absenceDays": Decimal("0"),
    "overtimeHours": Decimal("0"),
    "doubleOvertimeHours": Decimal("0"),
    "tripleOvertimeHours": Decimal("0"),
    "seniority": Decimal("2"),
    "seniorityDays": Decimal("730"),
    "vacationDays": Decimal("14"),
    "riskClass": Decimal("1"),
    "umaDaily": Decimal("113.14"),
    "umaMonthly": Decimal("3439.46"),
    "smgDaily": Decimal("278.80"),
    "periodNumber": Decimal("1"),
    "periodYear": Decimal("2026"),
    "totalPerceptions": Decimal("7500"),
    "taxableIncome": Decimal("7000"),
    "totalDeductions": Decimal("1500"),
    "custom1": Decimal("0"),
    "custom2": Decimal("0"),
    "custom3": Decimal("0"),
    "custom4": Decimal("0"),
    "custom5": Decimal("0"),
}

FUNCTION_DESCRIPTIONS: dict[str, str] = {
    "min": "min(a, b, ...) - smallest value",
    "max": "max(a, b, ...) - largest value",
    "round": "round(x, places=2) - round half up",
    "if": "if(condition, a, b) - a when condition holds, else b",
    "percentOf": "percentOf(base, pct) - pct percent of base",
    "floor": "floor(x) - round down to an integer",
    "ceil": "ceil(x) - round up to an integer",
    "abs": "abs(x) - absolute value",
    "proportional": "proportional(amount, worked, total) - amount * worked / total",
}


@dataclass(frozen=True)
class ValidationResult:
    """Non-raising outcome of a syntax check."""

    valid: bool
    error: str | None = None
    kind: str | None = None
    identifiers: tuple[str, ...] = ()


@dataclass(frozen=True)
class FormulaTestResult:
    """Outcome of a trial evaluation against sample values."""

    success: bool
    result: Decimal | None = None
    error: str | None = None
    kind: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


def coerce_value(value: Any) -> Value:
    """Normalize a context value to Decimal or bool."""
    if isinstance(value, bool):
        return value
    return to_decimal(value)


class _Evaluation:
    """Single evaluation run; owns the step and depth counters."""

    def __init__(
        self,
        context: Mapping[str, Any],
        max_steps: int,
        formula: str | None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        self.context = context
        self.max_steps = max_steps
        self.max_depth = max_depth
        self.formula = formula
        self.steps = 0
        self.depth = 0

    def visit(self, node: Expression) -> Value:
        self.steps += 1
        if self.steps > self.max_steps:
            raise StepLimitExceededError(
                f"Formula exceeded the maximum of {self.max_steps} evaluation steps",
                self.formula,
            )
        self.depth += 1
        if self.depth > self.max_depth:
            raise StepLimitExceededError(
                f"Formula nesting exceeds the maximum depth of {self.max_depth}", self.formula
            )
        try:
            return self._visit(node)
        finally:
            self.depth -= 1

    def _visit(self, node: Expression) -> Value:
        if isinstance(node, Number):
            return node.value
        if isinstance(node, Boolean):
            return node.value
        if isinstance(node, Identifier):
            if node.name not in self.context:
                raise UnknownIdentifierError(node.name, self.formula)
            return coerce_value(self.context[node.name])
        if isinstance(node, Unary):
            return self._unary(node)
        if isinstance(node, Binary):
            return self._binary(node)
        if isinstance(node, Conditional):
            if self._boolean(node.condition, "?:"):
                return self.visit(node.then)
            return self.visit(node.otherwise)
        if isinstance(node, Call):
            return self._call(node)
        raise FormulaSyntaxError(f"Unsupported expression node {type(node).__name__}", self.formula)

    # --- typed helpers ---

    def _number(self, node: Expression, where: str) -> Decimal:
        value = self.visit(node)
        if isinstance(value, bool):
            raise TypeMismatchError(f"'{where}' expects a number, got a boolean", self.formula)
        return value

    def _boolean(self, node: Expression, where: str) -> bool:
        value = self.visit(node)
        if not isinstance(value, bool):
            raise TypeMismatchError(f"'{where}' expects a boolean, got a number", self.formula)
        return value

    # --- operators ---

    def _unary(self, node: Unary) -> Value:
        if node.op == "!":
            return not self._boolean(node.operand, "!")
        operand = self._number(node.operand, node.op)
        return -operand if node.op == "-" else operand

    def _binary(self, node: Binary) -> Value:
        op = node.op

        if op == "&&":
            return self._boolean(node.left, op) and self._boolean(node.right, op)
        if op == "||":
            return self._boolean(node.left, op) or self._boolean(node.right, op)

        if op in ("==", "!="):
            left = self.visit(node.left)
            right = self.visit(node.right)
            if isinstance(left, bool) != isinstance(right, bool):
                raise TypeMismatchError(
                    f"'{op}' cannot compare a number with a boolean", self.formula
                )
            return (left == right) if op == "==" else (left != right)

        left = self._number(node.left, op)
        right = self._number(node.right, op)

        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op == "/":
            if right == 0:
                raise DivisionByZeroError("Division by zero", self.formula)
            return left / right
        if op == "%":
            if right == 0:
                raise DivisionByZeroError("Modulo by zero", self.formula)
            return left % right
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
        raise FormulaSyntaxError(f"Unsupported operator '{op}'", self.formula)

    def _call(self, node: Call) -> Decimal:
        name = node.name
        args = node.args

        if name == "if":
            # Only the selected branch is evaluated.
            if self._boolean(args[0], "if"):
                return self._number(args[1], "if")
            return self._number(args[2], "if")

        values = [self._number(arg, name) for arg in args]

        if name == "min":
            return min(values)
        if name == "max":
            return max(values)
        if name == "round":
            places = values[1] if len(values) > 1 else Decimal("2")
            if places != places.to_integral_value() or not 0 <= places <= _MAX_ROUND_PLACES:
                raise TypeMismatchError(
                    f"round() places must be an integer between 0 and {_MAX_ROUND_PLACES}",
                    self.formula,
                )
            quantum = Decimal(1).scaleb(-int(places))
            return values[0].quantize(quantum, rounding=ROUND_HALF_UP)
        if name == "percentOf":
            return values[0] * values[1] / _HUNDRED
        if name == "floor":
            return values[0].to_integral_value(rounding=ROUND_FLOOR)
        if name == "ceil":
            return values[0].to_integral_value(rounding=ROUND_CEILING)
        if name == "abs":
            return abs(values[0])
        if name == "proportional":
            amount, worked, total = values
            if total == 0:
                raise DivisionByZeroError("proportional() total is zero", self.formula)
            return amount * worked / total
        raise FormulaSyntaxError(f"Unknown function '{name}'", self.formula)


class FormulaEvaluator:
    """Parse, validate and evaluate payroll formulas.

    Parsed expressions are cached by formula text. The cache is shared
    between threads; expression trees are immutable so concurrent
    evaluation of the same formula is safe.
    """

    def __init__(self, max_steps: int = DEFAULT_MAX_STEPS, max_depth: int = DEFAULT_MAX_DEPTH):
        self.max_steps = max_steps
        self.max_depth = max_depth
        self._cache: dict[str, Expression] = {}
        self._cache_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> FormulaEvaluator:
        return cls(max_steps=settings.formula_max_steps, max_depth=settings.formula_max_depth)

    # ===== Parsing =====

    def parse(self, formula: str) -> Expression:
        """Return the (cached) expression tree for a formula."""
        with self._cache_lock:
            cached = self._cache.get(formula)
        if cached is not None:
            return cached
        expression = parse_formula(formula, max_depth=self.max_depth)
        with self._cache_lock:
            self._cache[formula] = expression
        return expression

    def validate(self, formula: str) -> Expression:
        """Parse a formula, raising ``FormulaSyntaxError`` when malformed."""
        return self.parse(formula)

    def check(self, formula: str) -> ValidationResult:
        """Validate without raising."""
        try:
            expression = self.parse(formula)
        except FormulaError as e:
            return ValidationResult(valid=False, error=e.message, kind=e.kind)
        return ValidationResult(
            valid=True, identifiers=tuple(sorted(iter_identifiers(expression)))
        )

    def referenced_identifiers(self, formula: str | Expression) -> frozenset[str]:
        """Identifiers a formula depends on."""
        expression = self.parse(formula) if isinstance(formula, str) else formula
        return frozenset(iter_identifiers(expression))

    # ===== Evaluation =====

    def evaluate_raw(self, formula: str | Expression, context: Mapping[str, Any]) -> Value:
        """Evaluate without normalizing the result."""
        if isinstance(formula, str):
            text: str | None = formula
            expression = self.parse(formula)
        else:
            text = None
            expression = formula
        try:
            # Parsed trees stay within max_depth plus one ternary level; the
            # wider bound only stops trees built outside the parser.
            evaluation = _Evaluation(context, self.max_steps, text, max_depth=2 * self.max_depth)
            return evaluation.visit(expression)
        except ArithmeticError as e:
            # decimal signals (InvalidOperation, Overflow) on out-of-range values
            raise TypeMismatchError(f"Value out of range: {type(e).__name__}", text) from e

    def evaluate(self, formula: str | Expression, context: Mapping[str, Any]) -> Decimal:
        """Evaluate a formula to a monetary amount rounded to cents."""
        value = self.evaluate_raw(formula, context)
        if isinstance(value, bool):
            raise TypeMismatchError(
                "Formula must produce a number, not a boolean",
                formula if isinstance(formula, str) else None,
            )
        try:
            return round_currency(value)
        except ArithmeticError as e:
            raise TypeMismatchError(
                f"Result {value} cannot be expressed in cents",
                formula if isinstance(formula, str) else None,
            ) from e

    def test(self, formula: str, sample: Mapping[str, Any] | None = None) -> FormulaTestResult:
        """Evaluate against the sample context overlaid with caller values.

        Never raises for formula problems; the failure is reported in the
        result instead.
        """
        context: dict[str, Value] = dict(SAMPLE_CONTEXT)
        try:
            for name, value in (sample or {}).items():
                context[name] = coerce_value(value)
        except (TypeError, ValueError) as e:
            return FormulaTestResult(
                success=False, error=f"Invalid sample value: {e}", kind=TypeMismatchError.kind
            )

        try:
            result = self.evaluate(formula, context)
        except FormulaError as e:
            logger.debug("Formula test failed: %s", e.message)
            return FormulaTestResult(
                success=False, error=e.message, kind=e.kind, context=_display(context)
            )
        return FormulaTestResult(success=True, result=result, context=_display(context))

    # ===== Introspection =====

    def list_available_identifiers(self) -> list[str]:
        return list(CONTEXT_IDENTIFIERS) + list(CUSTOM_IDENTIFIERS)

    def list_available_functions(self) -> list[str]:
        return list(FUNCTION_ARITY)


def _display(context: Mapping[str, Value]) -> dict[str, Any]:
    return {k: (v if isinstance(v, bool) else str(v)) for k, v in context.items()}


def ensure_non_negative(amount: Decimal, formula: str | None = None) -> Decimal:
    """Reject negative concept amounts."""
    if amount < ZERO:
        raise NegativeAmountError(f"Concept evaluated to a negative amount ({amount})", formula)
    return amount
