"""Payroll concept (perception / deduction) model."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Union
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from nomina_engine.models.base import Base, TimestampMixin


class ConceptType(str, Enum):
    PERCEPTION = "PERCEPTION"
    DEDUCTION = "DEDUCTION"


class ExemptLimitType(str, Enum):
    """Unit in which an exempt limit is expressed."""

    FIXED = "FIXED"
    UMA = "UMA"  # multiples of the daily UMA
    SMG = "SMG"  # multiples of the daily minimum wage
    UMA_MONTHLY = "UMA_MONTHLY"


@dataclass(frozen=True)
class PerceptionPolicy:
    """Taxable/exempt split for an income concept."""

    sat_code: str | None
    is_taxable: bool = True
    exempt_limit: Decimal | None = None
    exempt_limit_type: ExemptLimitType | None = None


@dataclass(frozen=True)
class DeductionPolicy:
    """SAT classification for a deduction concept."""

    sat_code: str | None


ConceptPolicy = Union[PerceptionPolicy, DeductionPolicy]


class Concept(Base, TimestampMixin):
    """A company-defined perception or deduction with its formula.

    Concepts are versioned: once a version has been used by a stamped
    document, edits create a new row and deactivate the old one.
    """

    __tablename__ = "concept"

    concept_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    concept_type: Mapped[str] = mapped_column(String, nullable=False)
    formula: Mapped[str] = mapped_column(Text, nullable=False)
    sat_code: Mapped[str | None] = mapped_column(String(3), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Perception policy columns
    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    exempt_limit: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    exempt_limit_type: Mapped[str | None] = mapped_column(String, nullable=True)

    previous_version_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("concept.concept_id", ondelete="SET NULL"),
        nullable=True,
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("company_id", "code", "version", name="concept_code_version_unique"),
    )

    @property
    def is_perception(self) -> bool:
        return self.concept_type == ConceptType.PERCEPTION.value

    @property
    def policy(self) -> ConceptPolicy:
        """Type-specific policy for this concept."""
        if self.is_perception:
            return PerceptionPolicy(
                sat_code=self.sat_code,
                is_taxable=self.is_taxable,
                exempt_limit=self.exempt_limit,
                exempt_limit_type=(
                    ExemptLimitType(self.exempt_limit_type) if self.exempt_limit_type else None
                ),
            )
        return DeductionPolicy(sat_code=self.sat_code)
