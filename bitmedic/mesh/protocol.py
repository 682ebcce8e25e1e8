"""Text vocabulary carried over the mesh.

The radio transport moves opaque strings. Every message this package cares
about starts with one of a closed set of case-sensitive prefixes; anything
else is ignored.

Vocabulary
----------
``PatientSearch:<query>``
    A peer asks everyone to search their local store.
``PatientSearchResponse:{json}``
    ``{"senderId", "originalQuery", "records": [...], "timestamp"}``.
``PingToServer: /search?q=<url-encoded term>``
    Gateway search command.
``PingToServer: /createpatient <json>``
    Gateway create command (``/create <json>`` is accepted too).
``PingToServer: <json>``
    Raw JSON the gateway POSTs verbatim to the passthrough endpoint.
``Results: <text | json array | a | b | c>``
    Gateway answer to a search command.
``CreatePatientResult: success - ... | error - ...``
    Gateway answer to a create command.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import quote, unquote

from loguru import logger

from bitmedic.store.models import Patient


class Prefix(str, Enum):
    """Top-level message tags."""

    PEER_SEARCH = "PatientSearch:"
    PEER_SEARCH_RESPONSE = "PatientSearchResponse:"
    GATEWAY = "PingToServer:"
    SEARCH_RESULT = "Results:"
    CREATE_RESULT = "CreatePatientResult:"


class MsgKind(str, Enum):
    """What an inbound message asks for, after unwrapping the gateway envelope."""

    PEER_SEARCH = "peer_search"
    PEER_SEARCH_RESPONSE = "peer_search_response"
    GATEWAY_SEARCH = "gateway_search"
    GATEWAY_CREATE = "gateway_create"
    PASSTHROUGH = "passthrough"
    SEARCH_RESULT = "search_result"
    CREATE_RESULT = "create_result"


SEARCH_COMMAND = "/search?q="
CREATE_COMMAND = "/createpatient"

_CREATE_RE = re.compile(r"^/create(?:patient)?(?:\s+(.*))?$", re.DOTALL)

# Status lines produced by gateways in place of a record list.
NO_RESULTS = "No patients found for '{term}'"
EMPTY_TERM = "Please enter a patient name to search"
SEARCH_FAILED = "Search failed - {error}"
SERVER_ERROR = "Server error ({status})"
INVALID_RESPONSE = "Invalid server response"
STATUS_PREFIXES = ("No patients found", "Please enter", "Search failed", "Server error", "Invalid ")

NAME_SEPARATOR = " | "


@dataclass
class MeshMessage:
    """One recognised inbound message."""

    kind: MsgKind
    body: str


def parse_message(text: str) -> MeshMessage | None:
    """Classify *text*; returns None for anything outside the vocabulary."""
    # PatientSearchResponse: must be tested before PatientSearch:
    if text.startswith(Prefix.PEER_SEARCH_RESPONSE.value):
        return MeshMessage(MsgKind.PEER_SEARCH_RESPONSE, text[len(Prefix.PEER_SEARCH_RESPONSE.value):].strip())
    if text.startswith(Prefix.PEER_SEARCH.value):
        return MeshMessage(MsgKind.PEER_SEARCH, text[len(Prefix.PEER_SEARCH.value):].strip())
    if text.startswith(Prefix.SEARCH_RESULT.value):
        return MeshMessage(MsgKind.SEARCH_RESULT, text[len(Prefix.SEARCH_RESULT.value):].strip())
    if text.startswith(Prefix.CREATE_RESULT.value):
        return MeshMessage(MsgKind.CREATE_RESULT, text[len(Prefix.CREATE_RESULT.value):].strip())
    if text.startswith(Prefix.GATEWAY.value):
        return _parse_gateway(text[len(Prefix.GATEWAY.value):].strip())
    return None


def _parse_gateway(inner: str) -> MeshMessage:
    if inner.startswith(SEARCH_COMMAND):
        return MeshMessage(MsgKind.GATEWAY_SEARCH, unquote(inner[len(SEARCH_COMMAND):]).strip())
    m = _CREATE_RE.match(inner)
    if m:
        return MeshMessage(MsgKind.GATEWAY_CREATE, (m.group(1) or "").strip())
    return MeshMessage(MsgKind.PASSTHROUGH, inner)


# ---------------------------------------------------------------------------
# Encoders
# ---------------------------------------------------------------------------

def encode_peer_search(query: str) -> str:
    return f"{Prefix.PEER_SEARCH.value}{query}"


def encode_gateway_search(term: str) -> str:
    return f"{Prefix.GATEWAY.value} {SEARCH_COMMAND}{quote(term, safe='')}"


def encode_gateway_create(document: str) -> str:
    return f"{Prefix.GATEWAY.value} {CREATE_COMMAND} {document}"


def encode_passthrough(raw_json: str) -> str:
    return f"{Prefix.GATEWAY.value} {raw_json}"


def encode_search_result(text: str) -> str:
    return f"{Prefix.SEARCH_RESULT.value} {text}"


def encode_search_records(records: list[dict[str, Any]]) -> str:
    return encode_search_result(json.dumps(records, ensure_ascii=False))


def encode_create_result(ok: bool, detail: str) -> str:
    status = "success" if ok else "error"
    return f"{Prefix.CREATE_RESULT.value} {status} - {detail}"


# ---------------------------------------------------------------------------
# Peer search response
# ---------------------------------------------------------------------------

@dataclass
class PeerSearchResponse:
    """A peer's answer to ``PatientSearch:`` from its own local store."""

    sender_id: str
    original_query: str
    records: list[Patient] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "senderId": self.sender_id,
            "originalQuery": self.original_query,
            "records": [p.to_dict() for p in self.records],
            "timestamp": self.timestamp,
        }

    def encode(self) -> str:
        return Prefix.PEER_SEARCH_RESPONSE.value + json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> PeerSearchResponse:
        raw_records = d.get("records", d.get("patients", [])) or []
        ts = d.get("timestamp")
        return cls(
            sender_id=str(d.get("senderId") or d.get("senderNickname") or ""),
            original_query=str(d.get("originalQuery", "")),
            records=[Patient.from_dict(r) for r in raw_records if isinstance(r, dict)],
            timestamp=float(ts) if isinstance(ts, (int, float)) else time.time(),
        )

    @classmethod
    def decode(cls, body: str) -> PeerSearchResponse | None:
        """Parse the JSON body of a ``PatientSearchResponse:`` message."""
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.debug("[Mesh/Protocol] malformed peer search response: {}", exc)
            return None
        if not isinstance(data, dict):
            return None
        return cls.from_dict(data)


# ---------------------------------------------------------------------------
# Gateway result bodies
# ---------------------------------------------------------------------------

@dataclass
class SearchResultBody:
    """Decoded ``Results:`` payload: records, or a status line when none."""

    records: list[Patient] = field(default_factory=list)
    message: str = ""


def is_status_text(text: str) -> bool:
    return text.startswith(STATUS_PREFIXES)


def parse_search_result(body: str) -> SearchResultBody:
    """Decode a ``Results:`` body.

    JSON arrays become records. Known gateway status lines are kept as the
    message. Anything else is read as ``name | name | ...``.
    """
    text = body.strip()
    if text.startswith("["):
        try:
            items = json.loads(text)
        except json.JSONDecodeError:
            items = None
        if isinstance(items, list):
            records = []
            for item in items:
                if isinstance(item, dict):
                    records.append(Patient.from_dict(item))
                elif isinstance(item, str) and item.strip():
                    records.append(Patient(name=item.strip()))
            return SearchResultBody(records=records)

    if not text or is_status_text(text):
        return SearchResultBody(message=text)

    names = [n.strip() for n in text.split("|") if n.strip()]
    return SearchResultBody(records=[Patient(name=n) for n in names])


def parse_create_result(body: str) -> tuple[bool, str]:
    """Split a ``CreatePatientResult:`` body into ``(ok, detail)``."""
    status, _, detail = body.strip().partition(" - ")
    ok = status.strip().lower() == "success"
    return ok, (detail.strip() or status.strip())
