"""PAC stub provider for local development and testing.

Replace with a real PAC adapter (see ``http.py``) for production.
"""

from __future__ import annotations

import datetime
import hashlib
import uuid
from collections import deque

from lxml import etree

from nomina_engine.fiscal.providers.base import (
    CancelResult,
    PacDuplicateError,
    PacError,
    StampResult,
)
from nomina_engine.fiscal.xml_builder import CFDI_NS, TFD_NS, TFD_SCHEMA_LOCATION, XSI_NS

STUB_CERTIFICATE_NUMBER = "00001000000000000000"


def stub_uuid(idempotency_key: str) -> str:
    """Deterministic stamp UUID for an idempotency key."""
    digest = hashlib.sha256(f"pac-stub:{idempotency_key}".encode()).digest()
    return str(uuid.UUID(bytes=digest[:16])).upper()


class PacStubProvider:
    """Stub PAC for development.

    Stamps are simulated by appending a ``tfd:TimbreFiscalDigital`` to the
    document. The same idempotency key always yields the same UUID.

    Failures can be injected with ``fail_next`` to exercise the retry
    paths of the lifecycle manager.
    """

    provider_name = "pac_stub"

    def __init__(self, report_duplicates: bool = False, clock=None):
        """Initialize stub provider.

        Args:
            report_duplicates: If True, a second stamp request for a known key
                raises ``PacDuplicateError`` (as most real PACs do) instead of
                returning the original stamp.
            clock: Optional callable returning the current aware datetime.
        """
        self.report_duplicates = report_duplicates
        self._clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self._stamped: dict[str, StampResult] = {}
        self._cancelled: dict[str, CancelResult] = {}
        self._failures: deque[PacError] = deque()
        self.stamp_calls = 0
        self.cancel_calls = 0

    def fail_next(self, error: PacError, times: int = 1) -> None:
        """Queue ``error`` to be raised by the next ``times`` calls."""
        for _ in range(times):
            self._failures.append(error)

    def _maybe_fail(self) -> None:
        if self._failures:
            raise self._failures.popleft()

    async def stamp(self, xml: str, idempotency_key: str) -> StampResult:
        self.stamp_calls += 1
        self._maybe_fail()

        existing = self._stamped.get(idempotency_key)
        if existing is not None:
            if self.report_duplicates:
                raise PacDuplicateError(
                    f"CFDI previamente timbrado (key {idempotency_key})", code="307"
                )
            return existing

        stamp_uuid = stub_uuid(idempotency_key)
        stamped_at = self._clock().replace(microsecond=0)
        result = StampResult(
            uuid=stamp_uuid,
            xml_stamped=self._append_timbre(xml, stamp_uuid, stamped_at),
            stamped_at=stamped_at,
            sat_certificate_number=STUB_CERTIFICATE_NUMBER,
            message="Timbrado simulado",
        )
        self._stamped[idempotency_key] = result
        return result

    async def cancel(
        self,
        uuid: str,
        rfc_emisor: str,
        motive: str,
        replacement_uuid: str | None = None,
    ) -> CancelResult:
        self.cancel_calls += 1
        self._maybe_fail()

        if uuid in self._cancelled:
            return self._cancelled[uuid]
        result = CancelResult(
            uuid=uuid,
            accepted=True,
            status_code="201",
            message="Cancelación simulada",
            acknowledged_at=self._clock(),
        )
        self._cancelled[uuid] = result
        return result

    async def lookup(self, idempotency_key: str) -> StampResult | None:
        return self._stamped.get(idempotency_key)

    @staticmethod
    def _append_timbre(xml: str, stamp_uuid: str, stamped_at: datetime.datetime) -> str:
        root = etree.fromstring(xml.encode("utf-8"))
        complemento = root.find(f"{{{CFDI_NS}}}Complemento")
        if complemento is None:
            complemento = etree.SubElement(root, f"{{{CFDI_NS}}}Complemento")

        timbre = etree.SubElement(
            complemento,
            f"{{{TFD_NS}}}TimbreFiscalDigital",
            nsmap={"tfd": TFD_NS, "xsi": XSI_NS},
        )
        timbre.set(f"{{{XSI_NS}}}schemaLocation", TFD_SCHEMA_LOCATION)
        timbre.set("Version", "1.1")
        timbre.set("UUID", stamp_uuid)
        timbre.set("FechaTimbrado", stamped_at.strftime("%Y-%m-%dT%H:%M:%S"))
        timbre.set("RfcProvCertif", "SPR190613I52")
        timbre.set("SelloCFD", "SELLO_SIMULADO")
        timbre.set("NoCertificadoSAT", STUB_CERTIFICATE_NUMBER)
        timbre.set("SelloSAT", "SELLO_SAT_SIMULADO")

        return etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")
