"""Payroll calculation: formulas, concept ordering, rounding and the engine."""

from nomina_engine.calculators.formula_evaluator import FormulaEvaluator
from nomina_engine.calculators.rounding import round_currency, sum_and_round

__all__ = ["FormulaEvaluator", "round_currency", "sum_and_round"]
