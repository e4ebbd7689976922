"""Company, employee and per-period attendance input models."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Date, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nomina_engine.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from nomina_engine.models.payroll import PayrollPeriod


class ContractType(str, Enum):
    INDEFINITE = "INDEFINITE"
    FIXED_TERM = "FIXED_TERM"
    SEASONAL = "SEASONAL"
    TRIAL_PERIOD = "TRIAL_PERIOD"
    TRAINING = "TRAINING"
    HONORARIUM = "HONORARIUM"


class RiskClass(str, Enum):
    CLASE_I = "CLASE_I"
    CLASE_II = "CLASE_II"
    CLASE_III = "CLASE_III"
    CLASE_IV = "CLASE_IV"
    CLASE_V = "CLASE_V"


class EmployeeStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class Company(Base, TimestampMixin):
    """Employer (CFDI issuer)."""

    __tablename__ = "company"

    company_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    rfc: Mapped[str] = mapped_column(String(13), nullable=False, unique=True)
    zip_code: Mapped[str | None] = mapped_column(String(5), nullable=True)
    registro_patronal: Mapped[str | None] = mapped_column(String(20), nullable=True)
    regimen_fiscal: Mapped[str] = mapped_column(String(3), nullable=False, default="601")

    # Relationships
    employees: Mapped[list[Employee]] = relationship(back_populates="company")


class Employee(Base, TimestampMixin):
    """Employee record."""

    __tablename__ = "employee"

    employee_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_number: Mapped[str] = mapped_column(String, nullable=False)
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    second_last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    rfc: Mapped[str] = mapped_column(String(13), nullable=False)
    curp: Mapped[str] = mapped_column(String(18), nullable=False)
    nss: Mapped[str | None] = mapped_column(String(11), nullable=True)
    hire_date: Mapped[date] = mapped_column(Date, nullable=False)
    base_salary: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    integrated_daily_salary: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    contract_type: Mapped[str] = mapped_column(
        String, nullable=False, default=ContractType.INDEFINITE.value
    )
    risk_class: Mapped[str] = mapped_column(String, nullable=False, default=RiskClass.CLASE_I.value)
    department: Mapped[str | None] = mapped_column(String, nullable=True)
    position: Mapped[str | None] = mapped_column(String, nullable=True)
    state_code: Mapped[str] = mapped_column(String(3), nullable=False, default="CMX")
    zip_code: Mapped[str | None] = mapped_column(String(5), nullable=True)
    manager_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default=EmployeeStatus.ACTIVE.value)

    __table_args__ = (
        UniqueConstraint("company_id", "employee_number", name="employee_company_number_unique"),
    )

    # Relationships
    company: Mapped[Company] = relationship(back_populates="employees")

    @property
    def full_name(self) -> str:
        """Get full name."""
        parts = [self.first_name, self.last_name, self.second_last_name]
        return " ".join(p for p in parts if p)


class EmployeePeriodInput(Base, TimestampMixin):
    """Attendance and incident figures for one employee in one period.

    A missing row means the employee worked the full period with no
    overtime or absences.
    """

    __tablename__ = "employee_period_input"

    input_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.period_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    worked_days: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    absence_days: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=Decimal("0"))
    overtime_hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False, default=Decimal("0"))
    triple_overtime_hours: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), nullable=False, default=Decimal("0")
    )
    # custom1..custom5 -> amount (as string)
    custom_values: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("period_id", "employee_id", name="employee_period_input_unique"),
    )

    period: Mapped[PayrollPeriod] = relationship()
