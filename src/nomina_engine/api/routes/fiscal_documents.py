"""Fiscal document (CFDI) API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, status

from nomina_engine.api.dependencies import AppSettings, Caller, DbSession, Provider
from nomina_engine.api.schemas import (
    AbandonRequest,
    AttemptResponse,
    CancelRequest,
    ErrorResponse,
    FiscalDocumentResponse,
    GenerateRequest,
)
from nomina_engine.services.fiscal_document_service import FiscalDocumentService

router = APIRouter(prefix="/fiscal-documents", tags=["fiscal-documents"])


@router.post(
    "",
    response_model=FiscalDocumentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def generate_document(
    db: DbSession,
    settings: AppSettings,
    provider: Provider,
    caller: Caller,
    payload: GenerateRequest,
) -> FiscalDocumentResponse:
    """Render (or refresh) the pending CFDI of a payroll detail."""
    document = await FiscalDocumentService(db, provider, settings).generate(payload.detail_id, caller)
    return FiscalDocumentResponse.model_validate(document)


@router.get(
    "/{document_id}",
    response_model=FiscalDocumentResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_document(
    db: DbSession,
    settings: AppSettings,
    provider: Provider,
    caller: Caller,
    document_id: Annotated[UUID, Path()],
) -> FiscalDocumentResponse:
    document = await FiscalDocumentService(db, provider, settings).get(document_id, caller)
    return FiscalDocumentResponse.model_validate(document)


@router.get(
    "/{document_id}/attempts",
    response_model=list[AttemptResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_attempts(
    db: DbSession,
    settings: AppSettings,
    provider: Provider,
    caller: Caller,
    document_id: Annotated[UUID, Path()],
) -> list[AttemptResponse]:
    attempts = await FiscalDocumentService(db, provider, settings).attempts(document_id, caller)
    return [AttemptResponse.model_validate(a) for a in attempts]


@router.post(
    "/{document_id}/stamp",
    response_model=FiscalDocumentResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def stamp_document(
    db: DbSession,
    settings: AppSettings,
    provider: Provider,
    caller: Caller,
    document_id: Annotated[UUID, Path()],
) -> FiscalDocumentResponse:
    """Stamp a pending document. The response status is STAMPED or ERROR."""
    document = await FiscalDocumentService(db, provider, settings).stamp(document_id, caller)
    return FiscalDocumentResponse.model_validate(document)


@router.post(
    "/{document_id}/retry",
    response_model=FiscalDocumentResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def retry_document(
    db: DbSession,
    settings: AppSettings,
    provider: Provider,
    caller: Caller,
    document_id: Annotated[UUID, Path()],
) -> FiscalDocumentResponse:
    document = await FiscalDocumentService(db, provider, settings).retry(document_id, caller)
    return FiscalDocumentResponse.model_validate(document)


@router.post(
    "/{document_id}/abandon",
    response_model=FiscalDocumentResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def abandon_document(
    db: DbSession,
    settings: AppSettings,
    provider: Provider,
    caller: Caller,
    document_id: Annotated[UUID, Path()],
    payload: AbandonRequest,
) -> FiscalDocumentResponse:
    document = await FiscalDocumentService(db, provider, settings).abandon(
        document_id, payload.reason, caller
    )
    return FiscalDocumentResponse.model_validate(document)


@router.post(
    "/{document_id}/cancel",
    response_model=FiscalDocumentResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def cancel_document(
    db: DbSession,
    settings: AppSettings,
    provider: Provider,
    caller: Caller,
    document_id: Annotated[UUID, Path()],
    payload: CancelRequest,
) -> FiscalDocumentResponse:
    """Cancel a stamped document with the PAC."""
    document = await FiscalDocumentService(db, provider, settings).cancel(
        document_id,
        payload.reason,
        caller,
        motive=payload.motive,
        replacement_uuid=payload.replacement_uuid,
    )
    return FiscalDocumentResponse.model_validate(document)
