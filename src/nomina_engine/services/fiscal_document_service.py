"""CFDI lifecycle: generation, stamping, retries and cancellation.

Stamping happens outside any calculation. A document is claimed by a
single writer (``stamp_lock_id`` compare-and-swap) for the duration of its
provider calls, and every provider call is recorded as a
``StampingAttempt``.

The idempotency key is derived from the detail id and version, so
re-submitting the same detail can never produce a second UUID.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import date, timedelta
from uuid import UUID, uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nomina_engine.config import Settings, get_settings
from nomina_engine.exceptions import NotFoundError
from nomina_engine.fiscal.providers import PacProvider, get_provider
from nomina_engine.fiscal.providers.base import (
    PacDuplicateError,
    PacError,
    PacTimeoutError,
    StampResult,
)
from nomina_engine.fiscal.xml_builder import CfdiXmlBuilder
from nomina_engine.models import (
    AttemptStatus,
    Company,
    Employee,
    FiscalDocument,
    PayrollDetail,
    StampingAttempt,
    StampOperation,
)
from nomina_engine.models.base import as_utc, utcnow
from nomina_engine.services.permission_scope import CallerContext, Scope
from nomina_engine.services.state_machine import (
    FiscalDocumentStateMachine,
    FiscalDocumentStatus,
    InvalidTransitionError,
    PeriodStateMachine,
)

logger = logging.getLogger(__name__)

CANCELLATION_MOTIVES = {
    "01": "Comprobante emitido con errores con relación",
    "02": "Comprobante emitido con errores sin relación",
    "03": "No se llevó a cabo la operación",
    "04": "Operación nominativa relacionada en una factura global",
}


class FiscalDocumentError(Exception):
    """A lifecycle operation was refused."""

    def __init__(self, message: str, document_id: UUID | None = None):
        self.document_id = document_id
        super().__init__(message)


class StampInProgressError(FiscalDocumentError):
    def __init__(self, document_id: UUID):
        super().__init__(f"Document {document_id} is held by another worker", document_id)


class CancellationDeadlineError(FiscalDocumentError):
    def __init__(self, document_id: UUID, deadline: date):
        self.deadline = deadline
        super().__init__(
            f"Document {document_id} can no longer be cancelled (deadline was {deadline.isoformat()})",
            document_id,
        )


def idempotency_key_for(detail_id: UUID, version: int) -> str:
    """Stable stamping key for one detail version."""
    return hashlib.sha256(f"{detail_id}:{version}".encode()).hexdigest()


class FiscalDocumentService:
    """Drives fiscal documents through PENDING → STAMPED/ERROR → CANCELLED."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PacProvider | None = None,
        settings: Settings | None = None,
        builder: CfdiXmlBuilder | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.provider = provider or get_provider(self.settings)
        self.builder = builder or CfdiXmlBuilder()

    # ===== Generation =====

    async def generate(self, detail_id: UUID, caller: CallerContext) -> FiscalDocument:
        """Render the CFDI for a current detail of an approved period.

        An existing PENDING or ERROR document for the detail is refreshed in
        place; a STAMPED or CANCELLED one is never replaced.
        """
        scope = caller.require("cfdi", "generate")
        detail = await self.session.scalar(
            select(PayrollDetail)
            .join(Employee, Employee.employee_id == PayrollDetail.employee_id)
            .where(PayrollDetail.detail_id == detail_id, caller.employee_filter(scope))
        )
        if detail is None:
            raise NotFoundError("PayrollDetail", detail_id)

        period = detail.period
        if not PeriodStateMachine.are_results_immutable(period.status):
            raise FiscalDocumentError(
                f"Period {period.period_id} is {period.status}; only approved periods can be stamped"
            )
        if not detail.is_current:
            raise FiscalDocumentError(
                f"Detail {detail_id} (v{detail.version}) has been superseded by a correction"
            )

        employee = detail.employee
        company = await self.session.get(Company, employee.company_id)
        xml = self.builder.build(detail, company, employee, period)

        existing = await self.session.scalar(
            select(FiscalDocument)
            .where(FiscalDocument.detail_id == detail_id)
            .order_by(FiscalDocument.created_at.desc())
        )
        if existing is not None:
            if existing.status in (
                FiscalDocumentStatus.STAMPED.value,
                FiscalDocumentStatus.CANCELLED.value,
            ):
                raise FiscalDocumentError(
                    f"Detail {detail_id} already has a {existing.status} document", existing.document_id
                )
            if existing.stamp_lock_id is not None:
                raise StampInProgressError(existing.document_id)
            if existing.status == FiscalDocumentStatus.ERROR.value:
                FiscalDocumentStateMachine.validate_transition(
                    existing.status, FiscalDocumentStatus.PENDING.value
                )
            existing.status = FiscalDocumentStatus.PENDING.value
            existing.xml_original = xml
            existing.last_error = None
            existing.last_error_kind = None
            existing.last_error_retryable = True
            existing.abandoned_at = None
            existing.abandon_reason = None
            existing.updated_at = utcnow()
            await self.session.commit()
            logger.info("Fiscal document %s regenerated for detail %s", existing.document_id, detail_id)
            return existing

        document = FiscalDocument(
            detail_id=detail.detail_id,
            detail_version=detail.version,
            company_id=company.company_id,
            employee_id=employee.employee_id,
            period_id=period.period_id,
            status=FiscalDocumentStatus.PENDING.value,
            xml_original=xml,
            idempotency_key=idempotency_key_for(detail.detail_id, detail.version),
            attempt_count=0,
        )
        self.session.add(document)
        await self.session.commit()
        await self.session.refresh(document)
        logger.info("Fiscal document %s generated for detail %s", document.document_id, detail_id)
        return document

    # ===== Stamping =====

    async def stamp(self, document_id: UUID, caller: CallerContext) -> FiscalDocument:
        """Stamp a PENDING document.

        A document that is already STAMPED is returned as is, without
        calling the provider again.
        """
        document = await self._get_scoped(document_id, caller, caller.require("cfdi", "stamp"))
        if document.status == FiscalDocumentStatus.STAMPED.value:
            logger.info("Document %s already stamped as %s", document_id, document.uuid)
            return document
        if document.status != FiscalDocumentStatus.PENDING.value:
            raise InvalidTransitionError(
                document.status,
                FiscalDocumentStatus.STAMPED.value,
                "only pending documents can be stamped; use retry for failed ones",
            )
        return await self._stamp(document)

    async def retry(self, document_id: UUID, caller: CallerContext) -> FiscalDocument:
        """Operator-initiated new stamping round for an ERROR document."""
        document = await self._get_scoped(
            document_id, caller, caller.require("cfdi", "retry_stamp")
        )
        if document.status == FiscalDocumentStatus.STAMPED.value:
            return document
        if document.status != FiscalDocumentStatus.ERROR.value:
            raise InvalidTransitionError(
                document.status, FiscalDocumentStatus.STAMPED.value, "only failed documents can be retried"
            )
        if document.abandoned_at is not None:
            raise InvalidTransitionError(
                document.status, FiscalDocumentStatus.STAMPED.value, "document was abandoned"
            )
        if not document.last_error_retryable:
            raise InvalidTransitionError(
                document.status,
                FiscalDocumentStatus.STAMPED.value,
                f"provider rejected the document ({document.last_error_kind}); regenerate it first",
            )
        return await self._stamp(document)

    async def abandon(self, document_id: UUID, reason: str, caller: CallerContext) -> FiscalDocument:
        """Give up on a failed document. It stays in ERROR."""
        if not reason or not reason.strip():
            raise FiscalDocumentError("Abandoning a document requires a reason", document_id)
        document = await self._get_scoped(document_id, caller, caller.require("cfdi", "stamp"))
        if document.status != FiscalDocumentStatus.ERROR.value:
            raise InvalidTransitionError(
                document.status, FiscalDocumentStatus.ERROR.value, "only failed documents can be abandoned"
            )
        if document.stamp_lock_id is not None:
            raise StampInProgressError(document_id)
        document.abandoned_at = utcnow()
        document.abandon_reason = reason.strip()
        document.updated_at = document.abandoned_at
        await self.session.commit()
        logger.warning("Document %s abandoned after %d attempt(s): %s", document_id, document.attempt_count, reason)
        return document

    async def _stamp(self, document: FiscalDocument) -> FiscalDocument:
        token = await self._claim(document)
        if document.status == FiscalDocumentStatus.STAMPED.value:
            return document

        try:
            last_error: PacError | None = None
            for round_number in range(1, self.settings.stamping_max_attempts + 1):
                attempt = await self._start_attempt(document, StampOperation.STAMP)
                try:
                    result = await self._call_stamp(document)
                except PacError as e:
                    last_error = e
                    self._fail_attempt(attempt, e)
                    await self.session.commit()
                    logger.warning(
                        "Stamping attempt %d for document %s failed (%s): %s",
                        attempt.attempt_number,
                        document.document_id,
                        e.kind,
                        e.message,
                    )
                    if not e.retryable or round_number == self.settings.stamping_max_attempts:
                        break
                    await asyncio.sleep(self._backoff(round_number))
                    continue

                return await self._record_stamp(document, attempt, result)

            return await self._record_failure(document, last_error)
        except BaseException:
            await self.session.rollback()
            await self._release(document.document_id, token)
            raise

    async def _call_stamp(self, document: FiscalDocument) -> StampResult:
        timeout = self.settings.pac_timeout_seconds
        try:
            try:
                return await asyncio.wait_for(
                    self.provider.stamp(document.xml_original, document.idempotency_key), timeout
                )
            except PacDuplicateError:
                existing = await asyncio.wait_for(
                    self.provider.lookup(document.idempotency_key), timeout
                )
                if existing is None:
                    raise
                logger.info(
                    "Provider already stamped key %s; reusing UUID %s",
                    document.idempotency_key,
                    existing.uuid,
                )
                return existing
        except asyncio.TimeoutError as e:
            raise PacTimeoutError(f"PAC did not answer within {timeout}s") from e

    async def _record_stamp(
        self, document: FiscalDocument, attempt: StampingAttempt, result: StampResult
    ) -> FiscalDocument:
        FiscalDocumentStateMachine.validate_transition(document.status, FiscalDocumentStatus.STAMPED.value)
        now = utcnow()
        attempt.status = AttemptStatus.SUCCESS.value
        attempt.provider_uuid = result.uuid
        attempt.completed_at = now

        document.status = FiscalDocumentStatus.STAMPED.value
        document.uuid = result.uuid
        document.xml_stamped = result.xml_stamped
        document.stamped_at = result.stamped_at
        document.sat_certificate_number = result.sat_certificate_number
        document.last_error = None
        document.last_error_kind = None
        document.last_error_retryable = True
        document.stamp_lock_id = None
        document.stamp_lock_at = None
        document.updated_at = now
        await self.session.commit()
        logger.info(
            "Document %s stamped with UUID %s after %d attempt(s)",
            document.document_id,
            result.uuid,
            document.attempt_count,
        )
        return document

    async def _record_failure(self, document: FiscalDocument, error: PacError | None) -> FiscalDocument:
        FiscalDocumentStateMachine.validate_transition(document.status, FiscalDocumentStatus.ERROR.value)
        document.status = FiscalDocumentStatus.ERROR.value
        if error is not None:
            document.last_error = error.message
            document.last_error_kind = error.kind
            document.last_error_retryable = error.retryable
        document.stamp_lock_id = None
        document.stamp_lock_at = None
        document.updated_at = utcnow()
        await self.session.commit()
        logger.error(
            "Document %s moved to ERROR after %d attempt(s): %s",
            document.document_id,
            document.attempt_count,
            document.last_error,
        )
        return document

    # ===== Cancellation =====

    async def cancel(
        self,
        document_id: UUID,
        reason: str,
        caller: CallerContext,
        motive: str = "02",
        replacement_uuid: str | None = None,
    ) -> FiscalDocument:
        """Cancel a STAMPED document with the provider.

        The stamped XML is kept untouched; only cancellation metadata is
        recorded.
        """
        if not reason or not reason.strip():
            raise FiscalDocumentError("Cancelling a document requires a reason", document_id)
        if motive not in CANCELLATION_MOTIVES:
            raise FiscalDocumentError(f"Unknown cancellation motive '{motive}'", document_id)
        if motive == "01" and not replacement_uuid:
            raise FiscalDocumentError("Motive 01 requires the UUID of the replacing document", document_id)

        document = await self._get_scoped(document_id, caller, caller.require("cfdi", "cancel"))
        if document.status != FiscalDocumentStatus.STAMPED.value:
            raise InvalidTransitionError(
                document.status,
                FiscalDocumentStatus.CANCELLED.value,
                "only stamped documents can be cancelled",
            )

        deadline = self.cancellation_deadline(document)
        if utcnow().date() > deadline:
            raise CancellationDeadlineError(document_id, deadline)

        token = await self._claim(document, settled=FiscalDocumentStatus.CANCELLED.value)
        if document.status == FiscalDocumentStatus.CANCELLED.value:
            return document
        try:
            return await self._call_cancel(document, reason, motive, replacement_uuid)
        except PacError:
            document.stamp_lock_id = None
            document.stamp_lock_at = None
            raise
        except BaseException:
            await self.session.rollback()
            raise
        finally:
            await self._release(document_id, token)

    async def _call_cancel(
        self, document: FiscalDocument, reason: str, motive: str, replacement_uuid: str | None
    ) -> FiscalDocument:
        document_id = document.document_id
        company = await self.session.get(Company, document.company_id)
        last_error: PacError | None = None
        for round_number in range(1, self.settings.stamping_max_attempts + 1):
            attempt = await self._start_attempt(document, StampOperation.CANCEL)
            try:
                result = await asyncio.wait_for(
                    self.provider.cancel(document.uuid, company.rfc, motive, replacement_uuid),
                    self.settings.pac_timeout_seconds,
                )
            except asyncio.TimeoutError:
                last_error = PacTimeoutError(
                    f"PAC did not answer within {self.settings.pac_timeout_seconds}s"
                )
            except PacError as e:
                last_error = e
            else:
                now = utcnow()
                attempt.status = AttemptStatus.SUCCESS.value
                attempt.provider_uuid = result.uuid
                attempt.completed_at = now
                document.status = FiscalDocumentStatus.CANCELLED.value
                document.cancellation_reason = reason.strip()
                document.cancellation_motive = motive
                document.replacement_uuid = replacement_uuid
                document.cancelled_at = result.acknowledged_at or now
                document.updated_at = now
                document.stamp_lock_id = None
                document.stamp_lock_at = None
                await self.session.commit()
                logger.info("Document %s (UUID %s) cancelled, motive %s", document_id, document.uuid, motive)
                return document

            self._fail_attempt(attempt, last_error)
            await self.session.commit()
            logger.warning(
                "Cancellation attempt %d for document %s failed (%s): %s",
                attempt.attempt_number,
                document_id,
                last_error.kind,
                last_error.message,
            )
            if not last_error.retryable or round_number == self.settings.stamping_max_attempts:
                break
            await asyncio.sleep(self._backoff(round_number))

        raise last_error

    def cancellation_deadline(self, document: FiscalDocument) -> date:
        """Last day a stamped document may be cancelled."""
        stamped = as_utc(document.stamped_at) or utcnow()
        return date(
            stamped.year + 1,
            self.settings.cancellation_deadline_month,
            self.settings.cancellation_deadline_day,
        )

    # ===== Inspection =====

    async def get(self, document_id: UUID, caller: CallerContext) -> FiscalDocument:
        return await self._get_scoped(document_id, caller, caller.require("cfdi", "read"))

    async def attempts(self, document_id: UUID, caller: CallerContext) -> list[StampingAttempt]:
        document = await self.get(document_id, caller)
        rows = await self.session.scalars(
            select(StampingAttempt)
            .where(StampingAttempt.document_id == document.document_id)
            .order_by(StampingAttempt.attempt_number)
        )
        return list(rows.all())

    # ===== Internals =====

    async def _get_scoped(self, document_id: UUID, caller: CallerContext, scope: Scope) -> FiscalDocument:
        document = await self.session.scalar(
            select(FiscalDocument)
            .join(Employee, Employee.employee_id == FiscalDocument.employee_id)
            .where(FiscalDocument.document_id == document_id, caller.employee_filter(scope))
        )
        if document is None:
            raise NotFoundError("FiscalDocument", document_id)
        return document

    async def _claim(
        self, document: FiscalDocument, settled: str = FiscalDocumentStatus.STAMPED.value
    ) -> str:
        """Take the per-document lock for a PAC operation.

        When another worker already moved the document to ``settled`` the
        returned token holds nothing and the caller should return early.
        """
        token = str(uuid4())
        now = utcnow()
        stale_before = now - timedelta(minutes=self.settings.stamp_lock_timeout_minutes)
        result = await self.session.execute(
            update(FiscalDocument)
            .where(
                FiscalDocument.document_id == document.document_id,
                FiscalDocument.status == document.status,
                or_(
                    FiscalDocument.stamp_lock_id.is_(None),
                    FiscalDocument.stamp_lock_at < stale_before,
                ),
            )
            .values(stamp_lock_id=token, stamp_lock_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            await self.session.refresh(document)
            if document.status == settled:
                return token
            raise StampInProgressError(document.document_id)
        await self.session.commit()
        await self.session.refresh(document)
        return token

    async def _release(self, document_id: UUID, token: str) -> None:
        await self.session.execute(
            update(FiscalDocument)
            .where(
                FiscalDocument.document_id == document_id,
                FiscalDocument.stamp_lock_id == token,
            )
            .values(stamp_lock_id=None, stamp_lock_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def _start_attempt(self, document: FiscalDocument, operation: StampOperation) -> StampingAttempt:
        document.attempt_count += 1
        attempt = StampingAttempt(
            document_id=document.document_id,
            idempotency_key=document.idempotency_key,
            operation=operation.value,
            attempt_number=document.attempt_count,
            status=AttemptStatus.IN_PROGRESS.value,
            started_at=utcnow(),
        )
        self.session.add(attempt)
        await self.session.commit()
        return attempt

    @staticmethod
    def _fail_attempt(attempt: StampingAttempt, error: PacError) -> None:
        attempt.status = AttemptStatus.FAILED.value
        attempt.error_kind = error.kind
        attempt.error_message = error.message
        attempt.completed_at = utcnow()

    def _backoff(self, round_number: int) -> float:
        return self.settings.stamping_backoff_seconds * (2 ** (round_number - 1))
