"""HTTP adapter for a PAC exposing a JSON stamping API.

Expected endpoints (relative to ``base_url``):

- ``POST /stamp``   ``{"xml", "idempotency_key"}`` -> ``{"uuid", "xml", "stamped_at", "certificate"}``
- ``POST /cancel``  ``{"uuid", "rfc", "motive", "replacement_uuid"}`` -> ``{"accepted", "status", "message"}``
- ``GET  /stamps/{idempotency_key}`` -> stamp payload, 404 when unknown
"""

from __future__ import annotations

import datetime
import logging
from typing import Any

import httpx

from nomina_engine.fiscal.providers.base import (
    CancelResult,
    PacCancellationRejectedError,
    PacDuplicateError,
    PacError,
    PacRejectedError,
    PacTimeoutError,
    PacTransientError,
    StampResult,
    classify_error,
)

logger = logging.getLogger(__name__)


def _parse_timestamp(value: str | None) -> datetime.datetime:
    if not value:
        return datetime.datetime.now(datetime.timezone.utc)
    parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def error_for_response(response: httpx.Response) -> PacError:
    """Translate a non-success HTTP response into the provider error taxonomy."""
    try:
        body = response.json()
        message = body.get("message") or body.get("error") or response.text
        code = body.get("code")
    except (ValueError, AttributeError):
        message, code = response.text, None
    message = f"HTTP {response.status_code}: {message}"
    code = str(code) if code is not None else str(response.status_code)

    status = response.status_code
    if status == 409:
        return PacDuplicateError(message, code)
    if status == 429 or status >= 500:
        return PacTransientError(message, code)
    if 400 <= status < 500:
        return PacRejectedError(message, code)
    return classify_error(message)(message, code)


def decode_body(response: httpx.Response) -> dict[str, Any]:
    """Decode a success body, treating anything but a JSON object as a transient fault."""
    try:
        body = response.json()
    except ValueError as e:
        logger.error("PAC returned undecodable body (HTTP %s)", response.status_code)
        raise PacTransientError(f"Malformed PAC response: {e}", str(response.status_code)) from e
    if not isinstance(body, dict):
        raise PacTransientError("Malformed PAC response: expected a JSON object", str(response.status_code))
    return body


class HttpPacProvider:
    """PAC provider backed by ``httpx.AsyncClient``.

    Timeouts and connection failures become ``PacTimeoutError``/
    ``PacTransientError`` so the lifecycle manager can retry them.
    """

    provider_name = "pac_http"

    def __init__(
        self,
        base_url: str,
        user: str = "",
        password: str = "",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        auth = httpx.BasicAuth(user, password) if user else None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, auth=auth)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise PacTimeoutError(f"PAC timeout on {url}: {e}") from e
        except httpx.TransportError as e:
            raise PacTransientError(f"PAC network error on {url}: {e}") from e

    async def stamp(self, xml: str, idempotency_key: str) -> StampResult:
        response = await self._request(
            "POST",
            "/stamp",
            json={"xml": xml, "idempotency_key": idempotency_key},
            headers={"Idempotency-Key": idempotency_key},
        )
        if response.status_code not in (200, 201):
            raise error_for_response(response)
        return self._stamp_result(decode_body(response))

    async def cancel(
        self,
        uuid: str,
        rfc_emisor: str,
        motive: str,
        replacement_uuid: str | None = None,
    ) -> CancelResult:
        response = await self._request(
            "POST",
            "/cancel",
            json={
                "uuid": uuid,
                "rfc": rfc_emisor,
                "motive": motive,
                "replacement_uuid": replacement_uuid,
            },
        )
        if response.status_code not in (200, 201, 202):
            error = error_for_response(response)
            if isinstance(error, PacRejectedError):
                raise PacCancellationRejectedError(error.message, error.code)
            raise error

        body = decode_body(response)
        result = CancelResult(
            uuid=uuid,
            accepted=bool(body.get("accepted", True)),
            status_code=str(body.get("status", response.status_code)),
            message=body.get("message", ""),
            acknowledged_at=_parse_timestamp(body.get("acknowledged_at")),
        )
        if not result.accepted:
            raise PacCancellationRejectedError(result.message or "Cancellation rejected", result.status_code)
        return result

    async def lookup(self, idempotency_key: str) -> StampResult | None:
        response = await self._request("GET", f"/stamps/{idempotency_key}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise error_for_response(response)
        return self._stamp_result(decode_body(response))

    @staticmethod
    def _stamp_result(body: dict[str, Any]) -> StampResult:
        try:
            return StampResult(
                uuid=str(body["uuid"]).upper(),
                xml_stamped=body["xml"],
                stamped_at=_parse_timestamp(body.get("stamped_at")),
                sat_certificate_number=body.get("certificate"),
                message=body.get("message", ""),
            )
        except KeyError as e:
            logger.error("PAC response missing field %s", e)
            raise PacTransientError(f"Malformed PAC response: missing {e}") from e
