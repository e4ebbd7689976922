"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from nomina_engine.config import Settings, get_settings
from nomina_engine.database import init_db
from nomina_engine.fiscal.providers import PacProvider
from nomina_engine.services.permission_scope import CallerContext


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _parse_uuid(value: str | None, header: str) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {header} format",
        )


async def get_caller(
    x_permissions: Annotated[str | None, Header()] = None,
    x_company_id: Annotated[str | None, Header()] = None,
    x_employee_id: Annotated[str | None, Header()] = None,
) -> CallerContext:
    """Build the caller from headers set by the upstream authorization layer."""
    permissions = tuple(p.strip() for p in (x_permissions or "").split(",") if p.strip())
    return CallerContext(
        permissions=permissions,
        company_id=_parse_uuid(x_company_id, "X-Company-ID"),
        employee_id=_parse_uuid(x_employee_id, "X-Employee-ID"),
    )


def get_app_settings() -> Settings:
    return get_settings()


def get_pac_provider(request: Request) -> PacProvider:
    """Provider shared by the application (set in the app factory)."""
    return request.app.state.pac_provider


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Caller = Annotated[CallerContext, Depends(get_caller)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Provider = Annotated[PacProvider, Depends(get_pac_provider)]
