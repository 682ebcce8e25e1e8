"""HTTP client for the remote patient service.

Used by gateways (on behalf of peers) and by online devices issuing their own
requests. Never raises for network or server failures: every call returns an
outcome whose text can be relayed over the mesh as-is, so the requester's
pending state always resolves to something.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from bitmedic.config.schema import BackendConfig
from bitmedic.mesh.protocol import EMPTY_TERM, INVALID_RESPONSE, NO_RESULTS, SEARCH_FAILED, SERVER_ERROR


@dataclass
class SearchOutcome:
    """Result of a name search: records, or a status line explaining why none."""

    ok: bool
    records: list[dict[str, Any]] = field(default_factory=list)
    message: str = ""


@dataclass
class PostOutcome:
    """Result of a JSON POST (record creation or passthrough)."""

    ok: bool
    message: str
    status_code: int | None = None
    transport_error: bool = False   # request never got an HTTP answer


def validate_json(payload: str) -> str | None:
    """Return an error description if *payload* is not well-formed JSON."""
    try:
        json.loads(payload)
    except (json.JSONDecodeError, TypeError) as exc:
        return f"Invalid JSON format: {exc}"
    return None


def _describe(exc: Exception) -> str:
    return str(exc) or type(exc).__name__


class BackendClient:
    """Thin async wrapper around ``httpx.AsyncClient`` for the three endpoints."""

    def __init__(
        self,
        config: BackendConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or BackendConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.request_timeout, connect=5.0),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, term: str) -> SearchOutcome:
        """Partial-name search, keeping at most ``search_result_limit`` records."""
        term = term.strip()
        if not term:
            return SearchOutcome(ok=True, message=EMPTY_TERM)

        try:
            client = await self._get_client()
            resp = await client.request(
                self.config.search_method,
                self.config.search_url,
                params={"name": term},
            )
        except httpx.HTTPError as exc:
            logger.warning("[Backend] search for {!r} failed: {}", term, exc)
            return SearchOutcome(ok=False, message=SEARCH_FAILED.format(error=_describe(exc)))

        if not resp.is_success:
            logger.warning("[Backend] search for {!r} returned {}", term, resp.status_code)
            return SearchOutcome(ok=False, message=SERVER_ERROR.format(status=resp.status_code))

        try:
            data = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, list):
            text = resp.text.strip()
            logger.debug("[Backend] non-array search response for {!r}", term)
            return SearchOutcome(ok=False, message=f"{INVALID_RESPONSE}: {text[:200]}" if text else INVALID_RESPONSE)

        if not data:
            return SearchOutcome(ok=True, message=NO_RESULTS.format(term=term))

        records = [item for item in data if isinstance(item, dict)]
        records = records[: self.config.search_result_limit]
        logger.debug("[Backend] search for {!r} returned {} records", term, len(records))
        return SearchOutcome(ok=True, records=records)

    # ------------------------------------------------------------------
    # POST endpoints
    # ------------------------------------------------------------------

    async def create(self, document: str) -> PostOutcome:
        """POST a patient document to the record-creation endpoint."""
        return await self._post_json(self.config.create_url, document, label="create")

    async def post_raw(self, payload: str) -> PostOutcome:
        """POST an arbitrary JSON payload to the passthrough endpoint."""
        return await self._post_json(self.config.passthrough_url, payload, label="passthrough")

    async def _post_json(self, url: str, payload: str, *, label: str) -> PostOutcome:
        error = validate_json(payload)
        if error:
            return PostOutcome(ok=False, message=error)

        try:
            client = await self._get_client()
            resp = await client.post(
                url,
                content=payload.encode("utf-8"),
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("[Backend] {} POST to {} failed: {}", label, url, exc)
            return PostOutcome(ok=False, message=_describe(exc), transport_error=True)

        body = resp.text.strip()
        if resp.is_success:
            logger.info("[Backend] {} POST to {} succeeded ({})", label, url, resp.status_code)
            detail = f"status {resp.status_code}"
            return PostOutcome(
                ok=True,
                message=f"{detail}: {body[:200]}" if body else detail,
                status_code=resp.status_code,
            )

        logger.warning("[Backend] {} POST to {} returned {}", label, url, resp.status_code)
        return PostOutcome(
            ok=False,
            message=f"Server error {resp.status_code}",
            status_code=resp.status_code,
        )
