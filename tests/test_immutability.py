"""Tests for write-once enforcement on stamped documents and payroll snapshots."""

from decimal import Decimal

import pytest

from nomina_engine.models.immutability import ImmutableDocumentError
from nomina_engine.services.fiscal_document_service import FiscalDocumentService


@pytest.fixture
async def stamped_document(session, provider, settings, system_caller, approved_details):
    fiscal = FiscalDocumentService(session, provider, settings)
    document = await fiscal.generate(approved_details[0].detail_id, system_caller)
    return await fiscal.stamp(document.document_id, system_caller)


class TestFiscalDocumentImmutability:
    """Stamped CFDI content can never change."""

    async def test_stamped_xml_cannot_change(self, session, stamped_document):
        stamped_document.xml_stamped = "<tampered/>"
        with pytest.raises(ImmutableDocumentError) as exc_info:
            await session.flush()
        assert exc_info.value.field == "xml_stamped"

    async def test_uuid_cannot_change(self, session, stamped_document):
        stamped_document.uuid = "00000000-0000-0000-0000-000000000000"
        with pytest.raises(ImmutableDocumentError):
            await session.flush()

    async def test_bookkeeping_may_change(self, session, stamped_document):
        stamped_document.attempt_count += 1
        stamped_document.cancellation_reason = "nota"
        await session.flush()

    async def test_cancelled_status_is_terminal(
        self, session, provider, settings, system_caller, stamped_document
    ):
        fiscal = FiscalDocumentService(session, provider, settings)
        await fiscal.cancel(stamped_document.document_id, "duplicado", system_caller)

        stamped_document.status = "STAMPED"
        with pytest.raises(ImmutableDocumentError) as exc_info:
            await session.flush()
        assert exc_info.value.field == "status"


class TestPayrollDetailImmutability:
    """Calculated details change only by being superseded."""

    async def test_amounts_cannot_change(self, session, approved_details):
        detail = approved_details[0]
        detail.net_pay = Decimal("99999.00")
        with pytest.raises(ImmutableDocumentError) as exc_info:
            await session.flush()
        assert exc_info.value.field == "net_pay"

    async def test_lines_cannot_change(self, session, approved_details):
        line = approved_details[0].lines[0]
        line.amount = Decimal("1.00")
        with pytest.raises(ImmutableDocumentError):
            await session.flush()

    async def test_superseding_is_allowed(self, session, approved_details):
        detail = approved_details[0]
        detail.is_current = False
        await session.flush()
