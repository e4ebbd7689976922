"""Line item builder with taxable/exempt split and deterministic hashing."""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal
from typing import Any

from nomina_engine.calculators.rounding import ZERO, round_currency, sum_and_round
from nomina_engine.calculators.types import LineCandidate, PlannedConcept
from nomina_engine.config import Settings
from nomina_engine.models.concept import ExemptLimitType, PerceptionPolicy
from nomina_engine.models.payroll import LineType


class LineItemBuilder:
    """Builds detail lines from evaluated concept amounts.

    Conventions:
    - every line amount is rounded to cents and non-negative
    - perceptions carry a taxable/exempt split that sums to the amount
    - deductions carry no split
    - totals are always ``sum_and_round`` over the lines
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def exempt_limit_amount(self, policy: PerceptionPolicy) -> Decimal | None:
        """Convert a policy's exempt limit to pesos."""
        if policy.exempt_limit is None:
            return None
        limit = Decimal(policy.exempt_limit)
        limit_type = policy.exempt_limit_type or ExemptLimitType.FIXED
        if limit_type == ExemptLimitType.UMA:
            return limit * self.settings.uma_daily
        if limit_type == ExemptLimitType.SMG:
            return limit * self.settings.smg_daily
        if limit_type == ExemptLimitType.UMA_MONTHLY:
            return limit * self.settings.uma_monthly
        return limit

    def split_taxable(self, amount: Decimal, policy: PerceptionPolicy) -> tuple[Decimal, Decimal]:
        """Return ``(taxable, exempt)`` for a perception amount."""
        if not policy.is_taxable:
            return ZERO, amount
        limit = self.exempt_limit_amount(policy)
        if limit is None:
            return amount, ZERO
        exempt = round_currency(min(amount, limit))
        taxable = max(ZERO, amount - exempt)
        return taxable, exempt

    def create_line(self, concept: PlannedConcept, amount: Decimal, sequence: int) -> LineCandidate:
        amount = round_currency(amount)
        taxable = exempt = ZERO
        policy = concept.policy
        if concept.line_type == LineType.PERCEPTION and isinstance(policy, PerceptionPolicy):
            taxable, exempt = self.split_taxable(amount, policy)
        return LineCandidate(
            line_type=concept.line_type,
            sequence=sequence,
            concept_code=concept.code,
            concept_name=concept.name,
            amount=amount,
            taxable_amount=taxable,
            exempt_amount=exempt,
            concept_id=concept.concept_id,
            concept_version=concept.version,
            sat_code=concept.sat_code,
        )

    @staticmethod
    def totals(lines: list[LineCandidate]) -> dict[str, Decimal]:
        """Aggregate line amounts; net = perceptions - deductions."""
        perceptions = [ln for ln in lines if ln.line_type == LineType.PERCEPTION]
        deductions = [ln for ln in lines if ln.line_type == LineType.DEDUCTION]
        total_perceptions = sum_and_round(ln.amount for ln in perceptions)
        total_deductions = sum_and_round(ln.amount for ln in deductions)
        return {
            "total_perceptions": total_perceptions,
            "total_deductions": total_deductions,
            "total_taxable": sum_and_round(ln.taxable_amount for ln in perceptions),
            "total_exempt": sum_and_round(ln.exempt_amount for ln in perceptions),
            "net_pay": round_currency(total_perceptions) - round_currency(total_deductions),
        }

    @staticmethod
    def compute_fingerprint(
        lines: list[LineCandidate], inputs: dict[str, Any], plan_data: list[dict[str, Any]]
    ) -> str:
        """Hash of inputs, concept versions and resulting lines.

        Identical inputs produce identical fingerprints.
        """
        canonical = {
            "inputs": inputs,
            "concepts": plan_data,
            "lines": [ln.to_canonical_dict() for ln in lines],
        }
        json_str = json.dumps(canonical, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()
