"""Payroll period, detail snapshot and failure models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nomina_engine.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from nomina_engine.models.company import Company, Employee


class PeriodType(str, Enum):
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


PERIOD_DAYS: dict[str, int] = {
    PeriodType.WEEKLY.value: 7,
    PeriodType.BIWEEKLY.value: 15,
    PeriodType.MONTHLY.value: 30,
}


class LineType(str, Enum):
    PERCEPTION = "PERCEPTION"
    DEDUCTION = "DEDUCTION"


# ===== Periods =====


class PayrollPeriod(Base, TimestampMixin):
    """A pay period for one company."""

    __tablename__ = "payroll_period"

    period_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    period_number: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_type: Mapped[str] = mapped_column(String, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="DRAFT")

    # Calculation claim (compare-and-swap)
    calculation_lock: Mapped[str | None] = mapped_column(String, nullable=True)
    calculation_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "company_id",
            "year",
            "period_type",
            "period_number",
            name="payroll_period_number_unique",
        ),
        CheckConstraint(
            "status IN ('DRAFT', 'PROCESSING', 'CALCULATED', 'APPROVED', 'PAID', 'CLOSED')",
            name="payroll_period_status_check",
        ),
        CheckConstraint("end_date >= start_date", name="payroll_period_dates_check"),
    )

    # Relationships
    company: Mapped[Company] = relationship()

    @property
    def period_days(self) -> int:
        return PERIOD_DAYS.get(self.period_type, 15)


# ===== Detail snapshot =====


class PayrollDetail(Base, TimestampMixin):
    """Per-employee payroll snapshot for a period.

    Details are never edited after creation; a recalculation or
    correction supersedes the current version with a new row.
    """

    __tablename__ = "payroll_detail"

    detail_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.period_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    worked_days: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    total_perceptions: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_deductions: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    net_pay: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_taxable: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_exempt: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    calculation_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    correction_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("period_id", "employee_id", "version", name="payroll_detail_version_unique"),
    )

    # Relationships
    period: Mapped[PayrollPeriod] = relationship(lazy="selectin")
    employee: Mapped[Employee] = relationship(lazy="selectin")
    lines: Mapped[list[PayrollDetailLine]] = relationship(
        back_populates="detail",
        order_by="PayrollDetailLine.sequence",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def perceptions(self) -> list[PayrollDetailLine]:
        return [ln for ln in self.lines if ln.line_type == LineType.PERCEPTION.value]

    @property
    def deductions(self) -> list[PayrollDetailLine]:
        return [ln for ln in self.lines if ln.line_type == LineType.DEDUCTION.value]


class PayrollDetailLine(Base):
    """One evaluated concept in a detail snapshot."""

    __tablename__ = "payroll_detail_line"

    line_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    detail_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_detail.detail_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    line_type: Mapped[str] = mapped_column(String, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    concept_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("concept.concept_id", ondelete="SET NULL"),
        nullable=True,
    )
    concept_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    concept_code: Mapped[str] = mapped_column(String(50), nullable=False)
    concept_name: Mapped[str] = mapped_column(String, nullable=False)
    sat_code: Mapped[str | None] = mapped_column(String(3), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    taxable_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    exempt_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )

    __table_args__ = (
        CheckConstraint("line_type IN ('PERCEPTION', 'DEDUCTION')", name="detail_line_type_check"),
        CheckConstraint("amount >= 0", name="detail_line_amount_check"),
    )

    detail: Mapped[PayrollDetail] = relationship(back_populates="lines")


# ===== Failures =====


class PayrollFailure(Base, TimestampMixin):
    """Per-employee calculation failure recorded for a period."""

    __tablename__ = "payroll_failure"

    failure_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.period_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    concept_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_kind: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
