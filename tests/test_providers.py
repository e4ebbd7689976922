"""Tests for PAC provider adapters (stub and HTTP)."""

import datetime

import httpx
import pytest
from lxml import etree

from nomina_engine.config import Settings
from nomina_engine.fiscal.providers import (
    HttpPacProvider,
    PacCancellationRejectedError,
    PacDuplicateError,
    PacRejectedError,
    PacStubProvider,
    PacTimeoutError,
    PacTransientError,
    classify_error,
    get_provider,
)
from nomina_engine.fiscal.providers.http import error_for_response
from nomina_engine.fiscal.providers.stub import STUB_CERTIFICATE_NUMBER, stub_uuid
from nomina_engine.fiscal.xml_builder import CFDI_NS, TFD_NS

UNSIGNED = (
    f'<?xml version="1.0" encoding="UTF-8"?>\n'
    f'<cfdi:Comprobante xmlns:cfdi="{CFDI_NS}" Version="4.0"><cfdi:Complemento/></cfdi:Comprobante>'
)

FIXED_NOW = datetime.datetime(2026, 1, 16, 10, 30, 15, 123456, tzinfo=datetime.timezone.utc)


class TestPacStubProvider:
    """Test the stub PAC."""

    async def test_stamp_appends_timbre(self):
        """Stamping adds a TimbreFiscalDigital with the deterministic UUID."""
        provider = PacStubProvider(clock=lambda: FIXED_NOW)
        result = await provider.stamp(UNSIGNED, "key-1")

        assert result.uuid == stub_uuid("key-1")
        assert result.sat_certificate_number == STUB_CERTIFICATE_NUMBER
        assert result.stamped_at == FIXED_NOW.replace(microsecond=0)

        root = etree.fromstring(result.xml_stamped.encode("utf-8"))
        timbre = root.find(f"{{{CFDI_NS}}}Complemento/{{{TFD_NS}}}TimbreFiscalDigital")
        assert timbre is not None
        assert timbre.get("UUID") == result.uuid
        assert timbre.get("FechaTimbrado") == "2026-01-16T10:30:15"

    async def test_same_key_same_uuid(self):
        provider = PacStubProvider()
        first = await provider.stamp(UNSIGNED, "key-1")
        second = await provider.stamp(UNSIGNED, "key-1")
        other = await provider.stamp(UNSIGNED, "key-2")

        assert first.uuid == second.uuid
        assert first.uuid != other.uuid
        assert provider.stamp_calls == 3

    def test_uuid_format(self):
        value = stub_uuid("abc")
        assert value == value.upper()
        assert len(value) == 36

    async def test_report_duplicates(self):
        provider = PacStubProvider(report_duplicates=True)
        await provider.stamp(UNSIGNED, "key-1")
        with pytest.raises(PacDuplicateError) as exc_info:
            await provider.stamp(UNSIGNED, "key-1")
        assert exc_info.value.code == "307"
        assert (await provider.lookup("key-1")).uuid == stub_uuid("key-1")

    async def test_fail_next(self):
        """Injected failures are raised in order, then stamping succeeds."""
        provider = PacStubProvider()
        provider.fail_next(PacTransientError("503 Service Unavailable"), times=2)

        for _ in range(2):
            with pytest.raises(PacTransientError):
                await provider.stamp(UNSIGNED, "key-1")
        result = await provider.stamp(UNSIGNED, "key-1")
        assert result.uuid == stub_uuid("key-1")
        assert provider.stamp_calls == 3

    async def test_cancel(self):
        provider = PacStubProvider()
        result = await provider.cancel("UUID-1", "CCE010101AB1", "02")
        assert result.accepted is True
        assert result.status_code == "201"
        assert provider.cancel_calls == 1

    async def test_lookup_unknown(self):
        assert await PacStubProvider().lookup("missing") is None


class TestErrorTaxonomy:
    """Test error classification."""

    def test_retryable_flags(self):
        assert PacTransientError("x").retryable is True
        assert PacTimeoutError("x").retryable is True
        assert PacRejectedError("x").retryable is False
        assert PacDuplicateError("x").retryable is False

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("CFDI previamente timbrado", PacDuplicateError),
            ("Connection reset by peer", PacTransientError),
            ("Invalid schema: missing Curp", PacRejectedError),
            ("something odd", PacTransientError),
        ],
    )
    def test_classify_error(self, message, expected):
        assert classify_error(message) is expected

    @pytest.mark.parametrize(
        "status,expected",
        [
            (409, PacDuplicateError),
            (429, PacTransientError),
            (503, PacTransientError),
            (400, PacRejectedError),
            (422, PacRejectedError),
        ],
    )
    def test_error_for_response(self, status, expected):
        response = httpx.Response(status, json={"message": "boom", "code": "X1"})
        error = error_for_response(response)
        assert type(error) is expected
        assert error.code == "X1"
        assert f"HTTP {status}" in error.message


def http_provider(handler) -> HttpPacProvider:
    client = httpx.AsyncClient(
        base_url="https://pac.example.test", transport=httpx.MockTransport(handler)
    )
    return HttpPacProvider("https://pac.example.test", client=client)


class TestHttpPacProvider:
    """Test the HTTP adapter against a mocked PAC."""

    async def test_stamp(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("Idempotency-Key")
            return httpx.Response(
                200,
                json={
                    "uuid": "ab12cd34-0000-4000-8000-000000000001",
                    "xml": "<stamped/>",
                    "stamped_at": "2026-01-16T10:30:00Z",
                    "certificate": "30001000000500003416",
                },
            )

        provider = http_provider(handler)
        result = await provider.stamp("<xml/>", "key-1")

        assert seen == {"path": "/stamp", "key": "key-1"}
        assert result.uuid == "AB12CD34-0000-4000-8000-000000000001"
        assert result.stamped_at.tzinfo is not None
        assert result.sat_certificate_number == "30001000000500003416"
        await provider.aclose()

    async def test_stamp_rejected(self):
        provider = http_provider(lambda request: httpx.Response(400, json={"message": "CURP invalida"}))
        with pytest.raises(PacRejectedError):
            await provider.stamp("<xml/>", "key-1")

    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        provider = http_provider(handler)
        with pytest.raises(PacTimeoutError) as exc_info:
            await provider.stamp("<xml/>", "key-1")
        assert exc_info.value.retryable is True

    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = http_provider(handler)
        with pytest.raises(PacTransientError):
            await provider.stamp("<xml/>", "key-1")

    async def test_malformed_response(self):
        provider = http_provider(lambda request: httpx.Response(200, json={"xml": "<x/>"}))
        with pytest.raises(PacTransientError):
            await provider.stamp("<xml/>", "key-1")

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="oops"),
            httpx.Response(200, json=["not", "an", "object"]),
        ],
    )
    async def test_undecodable_success_body_is_transient(self, response):
        """A 2xx body that is not a JSON object is retried, never left unclassified."""
        provider = http_provider(lambda request: response)
        with pytest.raises(PacTransientError) as exc_info:
            await provider.stamp("<xml/>", "key-1")
        assert exc_info.value.code == "200"

        with pytest.raises(PacTransientError):
            await provider.lookup("key-1")

    async def test_undecodable_cancel_body_is_transient(self):
        provider = http_provider(lambda request: httpx.Response(202, text="<html>gateway</html>"))
        with pytest.raises(PacTransientError):
            await provider.cancel("UUID-1", "CCE010101AB1", "02")

    async def test_lookup(self):
        def handler(request):
            if request.url.path == "/stamps/known":
                return httpx.Response(200, json={"uuid": "u-1", "xml": "<x/>"})
            return httpx.Response(404, json={"message": "not found"})

        provider = http_provider(handler)
        assert (await provider.lookup("known")).uuid == "U-1"
        assert await provider.lookup("unknown") is None

    async def test_cancel_rejected(self):
        provider = http_provider(
            lambda request: httpx.Response(200, json={"accepted": False, "status": "205", "message": "No existe"})
        )
        with pytest.raises(PacCancellationRejectedError):
            await provider.cancel("UUID-1", "CCE010101AB1", "02")

    async def test_cancel_client_error(self):
        provider = http_provider(lambda request: httpx.Response(400, json={"message": "Motivo invalido"}))
        with pytest.raises(PacCancellationRejectedError):
            await provider.cancel("UUID-1", "CCE010101AB1", "09")


class TestGetProvider:
    def test_stub_without_url(self, settings):
        assert isinstance(get_provider(settings), PacStubProvider)

    def test_http_with_url(self):
        settings = Settings(
            database_url="sqlite+aiosqlite:///:memory:",
            engine_version="test",
            host="localhost",
            port=8000,
            debug=False,
            log_level="INFO",
            pac_url="https://pac.example.test",
        )
        assert isinstance(get_provider(settings), HttpPacProvider)
