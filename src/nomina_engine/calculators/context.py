"""Evaluation context construction for one employee in one period."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

from nomina_engine.calculators.formula_evaluator import CUSTOM_IDENTIFIERS
from nomina_engine.calculators.types import EvaluationContext
from nomina_engine.config import Settings
from nomina_engine.models import Employee, EmployeePeriodInput, PayrollPeriod

DAYS_PER_MONTH = Decimal("30")
HOURS_PER_DAY = Decimal("8")
AGUINALDO_DAYS = Decimal("15")
VACATION_PREMIUM = Decimal("0.25")
DAYS_PER_YEAR = Decimal("365")

RISK_CLASS_NUMBER = {
    "CLASE_I": 1,
    "CLASE_II": 2,
    "CLASE_III": 3,
    "CLASE_IV": 4,
    "CLASE_V": 5,
}


def vacation_days_for(years: int) -> int:
    """Vacation entitlement by completed years of service (LFT art. 76)."""
    if years <= 1:
        return 12
    if years <= 4:
        return 12 + (years - 1) * 2
    if years < 10:
        return 20
    if years < 15:
        return 22
    if years < 20:
        return 24
    if years < 25:
        return 26
    if years < 30:
        return 28
    return 30


def completed_years(start: date, end: date) -> int:
    """Whole years elapsed from ``start`` to ``end``."""
    if end < start:
        return 0
    years = end.year - start.year
    if (end.month, end.day) < (start.month, start.day):
        years -= 1
    return years


def integration_factor(vacation_days: int) -> Decimal:
    """SDI factor: 1 + aguinaldo/365 + vacation premium/365."""
    return (
        Decimal("1")
        + AGUINALDO_DAYS / DAYS_PER_YEAR
        + Decimal(vacation_days) * VACATION_PREMIUM / DAYS_PER_YEAR
    )


def build_evaluation_context(
    employee: Employee,
    period: PayrollPeriod,
    settings: Settings,
    period_input: EmployeePeriodInput | None = None,
    extra: dict[str, Any] | None = None,
) -> EvaluationContext:
    """Build the identifier bag for ``employee`` in ``period``.

    ``extra`` values are layered last (used by previews and the formula
    authoring surface to override individual inputs).
    """
    base_salary = Decimal(employee.base_salary)
    daily_salary = base_salary / DAYS_PER_MONTH
    hourly_rate = daily_salary / HOURS_PER_DAY

    seniority = completed_years(employee.hire_date, period.end_date)
    seniority_days = max((period.end_date - employee.hire_date).days, 0)
    vacation_days = vacation_days_for(seniority)

    if employee.integrated_daily_salary is not None:
        integrated = Decimal(employee.integrated_daily_salary)
    else:
        integrated = daily_salary * integration_factor(vacation_days)

    period_days = Decimal(period.period_days)
    absence_days = Decimal("0")
    overtime = Decimal("0")
    triple_overtime = Decimal("0")
    worked_days = period_days
    custom: dict[str, Any] = {}

    if period_input is not None:
        absence_days = Decimal(period_input.absence_days or 0)
        overtime = Decimal(period_input.overtime_hours or 0)
        triple_overtime = Decimal(period_input.triple_overtime_hours or 0)
        if period_input.worked_days is not None:
            worked_days = Decimal(period_input.worked_days)
        else:
            worked_days = max(period_days - absence_days, Decimal("0"))
        custom = dict(period_input.custom_values or {})

    values: dict[str, Any] = {
        "baseSalary": base_salary,
        "dailySalary": daily_salary,
        "hourlyRate": hourly_rate,
        "integratedSalary": integrated,
        "workedDays": worked_days,
        "periodDays": period_days,
        "absenceDays": absence_days,
        "overtimeHours": overtime,
        "doubleOvertimeHours": overtime,
        "tripleOvertimeHours": triple_overtime,
        "seniority": seniority,
        "seniorityDays": seniority_days,
        "vacationDays": vacation_days,
        "riskClass": RISK_CLASS_NUMBER.get(employee.risk_class, 1),
        "umaDaily": settings.uma_daily,
        "umaMonthly": settings.uma_monthly,
        "smgDaily": settings.smg_daily,
        "periodNumber": period.period_number,
        "periodYear": period.year,
        "totalPerceptions": Decimal("0"),
        "taxableIncome": Decimal("0"),
        "totalDeductions": Decimal("0"),
    }
    for name in CUSTOM_IDENTIFIERS:
        values[name] = custom.get(name, Decimal("0"))
    if extra:
        values.update(extra)
    return EvaluationContext(values)
