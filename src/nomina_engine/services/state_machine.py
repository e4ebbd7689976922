"""Period and fiscal document state machines with transition validation."""

from __future__ import annotations

from enum import Enum


class PeriodStatus(str, Enum):
    """Payroll period status values."""

    DRAFT = "DRAFT"
    PROCESSING = "PROCESSING"
    CALCULATED = "CALCULATED"
    APPROVED = "APPROVED"
    PAID = "PAID"
    CLOSED = "CLOSED"


class FiscalDocumentStatus(str, Enum):
    """CFDI status values."""

    PENDING = "PENDING"
    STAMPED = "STAMPED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PeriodLockedError(Exception):
    """Raised when financial data of an approved (or later) period is mutated."""

    def __init__(self, period_id: object, status: str):
        self.period_id = period_id
        self.status = status
        super().__init__(
            f"Period {period_id} is {status}; financial details can only change "
            "through a versioned correction"
        )


class PeriodStateMachine:
    """State machine for payroll period status transitions.

    Allowed transitions:
    - DRAFT → PROCESSING
    - PROCESSING → CALCULATED
    - CALCULATED → PROCESSING (recalculation before approval)
    - CALCULATED → APPROVED
    - APPROVED → PAID
    - PAID → CLOSED
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PeriodStatus.DRAFT: [PeriodStatus.PROCESSING],
        PeriodStatus.PROCESSING: [PeriodStatus.CALCULATED],
        PeriodStatus.CALCULATED: [PeriodStatus.PROCESSING, PeriodStatus.APPROVED],
        PeriodStatus.APPROVED: [PeriodStatus.PAID],
        PeriodStatus.PAID: [PeriodStatus.CLOSED],
        PeriodStatus.CLOSED: [],  # Terminal state
    }

    # Statuses where a calculation run may start
    CALCULATION_ALLOWED = {
        PeriodStatus.DRAFT,
        PeriodStatus.PROCESSING,
        PeriodStatus.CALCULATED,
    }

    # Statuses where details are frozen (corrections only)
    RESULTS_IMMUTABLE = {
        PeriodStatus.APPROVED,
        PeriodStatus.PAID,
        PeriodStatus.CLOSED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_calculate(cls, status: str) -> bool:
        return status in cls.CALCULATION_ALLOWED

    @classmethod
    def are_results_immutable(cls, status: str) -> bool:
        return status in cls.RESULTS_IMMUTABLE

    @classmethod
    def is_recalculation(cls, from_status: str, to_status: str) -> bool:
        return from_status == PeriodStatus.CALCULATED and to_status == PeriodStatus.PROCESSING

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        return cls.VALID_TRANSITIONS.get(current_status, [])


class FiscalDocumentStateMachine:
    """State machine for CFDI status transitions.

    Allowed transitions:
    - PENDING → STAMPED | ERROR
    - ERROR → STAMPED | ERROR (explicit retry only)
    - ERROR → PENDING (regenerated after a rejection)
    - STAMPED → CANCELLED
    - CANCELLED is terminal
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        FiscalDocumentStatus.PENDING: [FiscalDocumentStatus.STAMPED, FiscalDocumentStatus.ERROR],
        FiscalDocumentStatus.ERROR: [
            FiscalDocumentStatus.STAMPED,
            FiscalDocumentStatus.ERROR,
            FiscalDocumentStatus.PENDING,
        ],
        FiscalDocumentStatus.STAMPED: [FiscalDocumentStatus.CANCELLED],
        FiscalDocumentStatus.CANCELLED: [],
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str, reason: str | None = None) -> None:
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status, reason)

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)
