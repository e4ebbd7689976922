"""API routes."""

from nomina_engine.api.routes.fiscal_documents import router as fiscal_documents_router
from nomina_engine.api.routes.formulas import router as formulas_router
from nomina_engine.api.routes.health import router as health_router
from nomina_engine.api.routes.periods import router as periods_router

__all__ = ["fiscal_documents_router", "formulas_router", "health_router", "periods_router"]
