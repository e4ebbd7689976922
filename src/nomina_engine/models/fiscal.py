"""Fiscal document (CFDI) and stamping attempt models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nomina_engine.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from nomina_engine.models.payroll import PayrollDetail


class StampOperation(str, Enum):
    STAMP = "STAMP"
    CANCEL = "CANCEL"


class AttemptStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class FiscalDocument(Base, TimestampMixin):
    """CFDI derived from one payroll detail.

    Once STAMPED, the stamped XML and UUID are write-once (see
    ``nomina_engine.models.immutability``).
    """

    __tablename__ = "fiscal_document"

    document_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    detail_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_detail.detail_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    detail_version: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    period_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_period.period_id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")

    xml_original: Mapped[str] = mapped_column(Text, nullable=False)
    xml_stamped: Mapped[str | None] = mapped_column(Text, nullable=True)
    uuid: Mapped[str | None] = mapped_column(String(36), nullable=True, unique=True)
    stamped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sat_certificate_number: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Stamping bookkeeping
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error_retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    stamp_lock_id: Mapped[str | None] = mapped_column(String, nullable=True)
    stamp_lock_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    abandoned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    abandon_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Cancellation
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_motive: Mapped[str | None] = mapped_column(String(2), nullable=True)
    replacement_uuid: Mapped[str | None] = mapped_column(String(36), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'STAMPED', 'ERROR', 'CANCELLED')",
            name="fiscal_document_status_check",
        ),
    )

    detail: Mapped[PayrollDetail] = relationship(lazy="selectin")
    attempts: Mapped[list[StampingAttempt]] = relationship(
        back_populates="document",
        order_by="StampingAttempt.attempt_number",
        lazy="selectin",
    )


class StampingAttempt(Base):
    """One provider call made for a fiscal document."""

    __tablename__ = "stamping_attempt"

    attempt_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    document_id: Mapped[UUID] = mapped_column(
        ForeignKey("fiscal_document.document_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String, nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_uuid: Mapped[str | None] = mapped_column(String(36), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    document: Mapped[FiscalDocument] = relationship(back_populates="attempts")
