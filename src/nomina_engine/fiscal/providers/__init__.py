"""PAC (stamping provider) adapters."""

from nomina_engine.config import Settings
from nomina_engine.fiscal.providers.base import (
    CancelResult,
    PacCancellationRejectedError,
    PacDuplicateError,
    PacError,
    PacProvider,
    PacRejectedError,
    PacTimeoutError,
    PacTransientError,
    StampResult,
    classify_error,
)
from nomina_engine.fiscal.providers.http import HttpPacProvider
from nomina_engine.fiscal.providers.stub import PacStubProvider


def get_provider(settings: Settings) -> PacProvider:
    """Build the configured provider; no PAC URL selects the stub."""
    if settings.pac_url:
        return HttpPacProvider(
            settings.pac_url,
            user=settings.pac_user,
            password=settings.pac_password,
            timeout=settings.pac_timeout_seconds,
        )
    return PacStubProvider()


__all__ = [
    "CancelResult",
    "HttpPacProvider",
    "PacCancellationRejectedError",
    "PacDuplicateError",
    "PacError",
    "PacProvider",
    "PacRejectedError",
    "PacStubProvider",
    "PacTimeoutError",
    "PacTransientError",
    "StampResult",
    "classify_error",
    "get_provider",
]
