"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from nomina_engine.api.routes import (
    fiscal_documents_router,
    formulas_router,
    health_router,
    periods_router,
)
from nomina_engine.calculators.concept_resolver import ConfigurationError
from nomina_engine.calculators.engine import CalculationCancelledError, CalculationInProgressError
from nomina_engine.calculators.formula_parser import FormulaError
from nomina_engine.calculators.formula_templates import TemplateNotFoundError
from nomina_engine.config import get_settings
from nomina_engine.database import dispose_db, init_db
from nomina_engine.exceptions import NotFoundError
from nomina_engine.fiscal.providers import PacError, PacProvider, get_provider
from nomina_engine.logging_config import configure_logging
from nomina_engine.models import ImmutableDocumentError
from nomina_engine.services.fiscal_document_service import FiscalDocumentError
from nomina_engine.services.formula_service import ConceptLockedError, DuplicateConceptError
from nomina_engine.services.period_service import CorrectionError
from nomina_engine.services.permission_scope import PermissionDeniedError
from nomina_engine.services.state_machine import InvalidTransitionError, PeriodLockedError

logger = logging.getLogger(__name__)

# Domain error -> (HTTP status, error code)
ERROR_STATUS: list[tuple[type[Exception], int, str]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND, "NOT_FOUND"),
    (TemplateNotFoundError, status.HTTP_404_NOT_FOUND, "TEMPLATE_NOT_FOUND"),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN, "PERMISSION_DENIED"),
    (FormulaError, status.HTTP_422_UNPROCESSABLE_ENTITY, "FORMULA_ERROR"),
    (ConfigurationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "CONFIGURATION_ERROR"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "INVALID_TRANSITION"),
    (PeriodLockedError, status.HTTP_409_CONFLICT, "PERIOD_LOCKED"),
    (ImmutableDocumentError, status.HTTP_409_CONFLICT, "IMMUTABLE"),
    (CalculationInProgressError, status.HTTP_409_CONFLICT, "CALCULATION_IN_PROGRESS"),
    (CalculationCancelledError, status.HTTP_409_CONFLICT, "CALCULATION_CANCELLED"),
    (ConceptLockedError, status.HTTP_409_CONFLICT, "CONCEPT_LOCKED"),
    (DuplicateConceptError, status.HTTP_409_CONFLICT, "DUPLICATE_CONCEPT"),
    (CorrectionError, status.HTTP_409_CONFLICT, "CORRECTION_FAILED"),
    (FiscalDocumentError, status.HTTP_409_CONFLICT, "FISCAL_DOCUMENT"),
    (PacError, status.HTTP_502_BAD_GATEWAY, "PAC_ERROR"),
    (ValueError, status.HTTP_400_BAD_REQUEST, "BAD_REQUEST"),
]


def _error_context(exc: Exception) -> dict | None:
    if isinstance(exc, FormulaError):
        return {"kind": exc.kind, "formula": exc.formula}
    if isinstance(exc, PacError):
        return {"kind": exc.kind, "retryable": exc.retryable}
    return None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    init_db()
    yield
    await dispose_db()


def create_app(provider: PacProvider | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Nomina Engine API",
        description="Payroll computation and CFDI lifecycle engine",
        version=settings.engine_version,
        lifespan=lifespan,
    )
    app.state.pac_provider = provider or get_provider(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def make_handler(status_code: int, code: str):
        async def handler(request: Request, exc: Exception) -> JSONResponse:
            if status_code >= 500:
                logger.error("%s %s failed: %s", request.method, request.url.path, exc)
            return JSONResponse(
                status_code=status_code,
                content={"detail": str(exc), "code": code, "context": _error_context(exc)},
            )

        return handler

    for exc_class, status_code, code in ERROR_STATUS:
        app.add_exception_handler(exc_class, make_handler(status_code, code))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    app.include_router(health_router)
    app.include_router(formulas_router, prefix="/api/v1")
    app.include_router(periods_router, prefix="/api/v1")
    app.include_router(fiscal_documents_router, prefix="/api/v1")

    return app
