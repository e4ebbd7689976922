"""Base protocol, result types and error taxonomy for PAC providers.

All PAC adapters must implement the PacProvider protocol.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Protocol


# ===== Errors =====


class PacError(Exception):
    """Base class for provider failures."""

    kind = "UNKNOWN"
    retryable = False

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code
        super().__init__(message)


class PacTransientError(PacError):
    """Network failure, timeout, 5xx or throttling; safe to retry."""

    kind = "PAC_TEMPORARY"
    retryable = True


class PacTimeoutError(PacTransientError):
    kind = "NETWORK"


class PacRejectedError(PacError):
    """The document itself is invalid; retrying cannot succeed."""

    kind = "VALIDATION"


class PacDuplicateError(PacError):
    """The provider already holds a stamp for this idempotency key."""

    kind = "DUPLICATE"


class PacCancellationRejectedError(PacError):
    kind = "PAC_PERMANENT"


def classify_error(message: str) -> type[PacError]:
    """Map a free-text provider error to the taxonomy."""
    text = message.lower()
    if "duplicate" in text or "duplicado" in text or "previamente timbrado" in text:
        return PacDuplicateError
    if any(
        token in text
        for token in ("timeout", "timed out", "network", "connection", "502", "503", "504", "429")
    ):
        return PacTransientError
    if any(
        token in text for token in ("validation", "invalid", "400", "401", "certificate", "schema")
    ):
        return PacRejectedError
    return PacTransientError


# ===== Results =====


@dataclass(frozen=True)
class StampResult:
    """Signed document returned by the PAC."""

    uuid: str
    xml_stamped: str
    stamped_at: datetime.datetime
    sat_certificate_number: str | None = None
    message: str = ""


@dataclass(frozen=True)
class CancelResult:
    """Acknowledgement of a cancellation request."""

    uuid: str
    accepted: bool
    status_code: str = ""
    message: str = ""
    acknowledged_at: datetime.datetime | None = None


class PacProvider(Protocol):
    """Protocol for PAC (authorized certification provider) adapters.

    Every call may raise a ``PacError`` subclass; transient errors are the
    caller's to retry.
    """

    provider_name: str

    async def stamp(self, xml: str, idempotency_key: str) -> StampResult:
        """Submit an unsigned CFDI for stamping.

        Args:
            xml: The rendered CFDI document.
            idempotency_key: Stable key for this payroll detail version; a
                repeat submission must never yield a second UUID.
        """
        ...

    async def cancel(
        self,
        uuid: str,
        rfc_emisor: str,
        motive: str,
        replacement_uuid: str | None = None,
    ) -> CancelResult:
        """Request cancellation of a stamped document."""
        ...

    async def lookup(self, idempotency_key: str) -> StampResult | None:
        """Return the stamp previously issued for a key, if any."""
        ...
