"""Mesh gateway — the request/response protocol engine.

Every device runs one gateway. It plays two roles at once:

*Originator*
    Issues searches and record creations for the local user. Searches race
    two paths: a broadcast on the mesh and, when online, a direct backend
    call; the first successful answer wins and later ones are dropped. A
    failed direct call leaves the search open for the mesh and its error is
    reported only if nothing else answers before the timeout.
    Creations go direct when online and over the mesh otherwise, so a record
    is never posted twice; a direct call that fails at the transport level
    falls back to the mesh within the same request.

*Gateway*
    When online, executes ``PingToServer:`` commands received from other
    peers against the backend and broadcasts a tagged answer
    (``Results:`` / ``CreatePatientResult:``). Offline, such commands are
    dropped silently: some other online peer may serve them.

Acceptance rules
----------------
- ``CreatePatientResult:`` is accepted only while a create request that was
  put on the mesh is outstanding; it completes that request.
- ``Results:`` is accepted only while a search request is outstanding; it is
  merged into the aggregator under the sender's id and completes the request.
- ``PatientSearchResponse:`` is merged while its ``originalQuery`` is the
  query of the current search session, which lasts from ``issue_search``
  until timeout, ``cancel_search`` or the next search. It does not complete
  the search, so any number of peers can contribute.
Everything else that does not match state is discarded without error:
under broadcast delivery, answers meant for someone else are normal.
"""

from __future__ import annotations

import json
import time
from typing import Any

from loguru import logger

from bitmedic.gateway.aggregator import ResultAggregator
from bitmedic.gateway.backend import BackendClient, validate_json
from bitmedic.gateway.connectivity import ConnectivityMonitor
from bitmedic.gateway.events import (
    CreateResolved,
    EventHub,
    GatewayFeedback,
    SearchResolved,
    SearchTimedOut,
)
from bitmedic.gateway.tracker import OutstandingRequest, RequestKind, RequestTracker
from bitmedic.mesh.link import MeshLink
from bitmedic.mesh.protocol import (
    MsgKind,
    PeerSearchResponse,
    encode_create_result,
    encode_gateway_create,
    encode_gateway_search,
    encode_passthrough,
    encode_peer_search,
    encode_search_records,
    encode_search_result,
    parse_create_result,
    parse_message,
    parse_search_result,
)
from bitmedic.mesh.resilience import RetryPolicy, retry_send, supervised_task
from bitmedic.store.models import Patient
from bitmedic.store.repository import PatientRepository

DIRECT_SOURCE = "server"

_GATEWAY_KINDS = (MsgKind.GATEWAY_SEARCH, MsgKind.GATEWAY_CREATE, MsgKind.PASSTHROUGH)


class MeshGateway:
    """Parses inbound mesh text, serves peers, and issues local requests.

    Parameters
    ----------
    node_id:
        This device's mesh identity; commands echoed from it are ignored.
    monitor:
        Consulted at every routing decision.
    tracker:
        Sole owner of the outstanding search / create slots.
    aggregator:
        Receives accepted search results.
    backend:
        HTTP client for the remote service.
    repository:
        Local store used to answer ``PatientSearch:`` from peers. Optional.
    nickname:
        Name placed in ``PatientSearchResponse`` messages (defaults to *node_id*).
    dedupe_window:
        Seconds during which an identical gateway command from the same
        sender is executed only once.
    """

    def __init__(
        self,
        node_id: str,
        monitor: ConnectivityMonitor,
        tracker: RequestTracker,
        aggregator: ResultAggregator,
        backend: BackendClient,
        *,
        link: MeshLink | None = None,
        repository: PatientRepository | None = None,
        events: EventHub | None = None,
        nickname: str = "",
        search_timeout: float = 10.0,
        create_timeout: float = 15.0,
        dedupe_window: float = 30.0,
        retry_policy: RetryPolicy | None = None,
    ):
        self.node_id = node_id
        self.monitor = monitor
        self.tracker = tracker
        self.aggregator = aggregator
        self.backend = backend
        self.repository = repository
        self.events = events or aggregator.events or EventHub()
        self.nickname = nickname or node_id
        self.search_timeout = search_timeout
        self.create_timeout = create_timeout
        self.dedupe_window = dedupe_window
        self.retry_policy = retry_policy or RetryPolicy()
        self.link: MeshLink | None = None
        # (sender, text) → monotonic time first seen
        self._recent: dict[tuple[str, str], float] = {}
        # query whose peer-store answers are still merged; None outside a search
        self._session: str | None = None
        if link is not None:
            self.attach(link)

    def attach(self, link: MeshLink) -> None:
        """Bind to a mesh link and start receiving from it."""
        self.link = link
        link.on_message(self.handle_message)

    async def _broadcast(self, text: str) -> bool:
        if self.link is None:
            logger.warning("[Gateway] no mesh link attached, cannot broadcast")
            return False
        return await retry_send(self.link.broadcast, text, policy=self.retry_policy, label="mesh broadcast")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, sender: str, text: str) -> None:
        """Entry point for every text the mesh delivers to this device."""
        msg = parse_message(text)
        if msg is None:
            return

        if msg.kind is MsgKind.CREATE_RESULT:
            self._accept_create_result(sender, msg.body)
        elif msg.kind is MsgKind.SEARCH_RESULT:
            self._accept_search_result(sender, msg.body)
        elif msg.kind is MsgKind.PEER_SEARCH_RESPONSE:
            self._accept_peer_response(sender, msg.body)
        elif msg.kind is MsgKind.PEER_SEARCH:
            await self._answer_peer_search(sender, msg.body)
        elif msg.kind in _GATEWAY_KINDS:
            await self._handle_gateway_command(sender, text, msg.kind, msg.body)

    def _accept_create_result(self, sender: str, body: str) -> None:
        request = self.tracker.current(RequestKind.CREATE)
        if request is None:
            logger.debug("[Gateway] create result from {} with nothing outstanding, ignored", sender)
            return
        if not request.relayed:
            logger.debug("[Gateway] create result from {} while create {} is direct-only, ignored",
                         sender, request.request_id)
            return
        ok, detail = parse_create_result(body)
        self.tracker.complete(RequestKind.CREATE, request)
        logger.info("[Gateway] create {} resolved by {}: {}", request.request_id, sender, "ok" if ok else "error")
        self.events.emit(CreateResolved(ok=ok, message=detail, source=sender))

    def _accept_search_result(self, sender: str, body: str) -> None:
        request = self.tracker.current(RequestKind.SEARCH)
        if request is None:
            logger.debug("[Gateway] search result from {} with nothing outstanding, ignored", sender)
            return
        result = parse_search_result(body)
        self._resolve_search(request, sender, result.records, result.message)

    def _accept_peer_response(self, sender: str, body: str) -> None:
        response = PeerSearchResponse.decode(body)
        if response is None:
            return
        if self._session is None or response.original_query.strip().lower() != self._session.lower():
            logger.debug(
                "[Gateway] peer response for {!r} outside the current search, ignored",
                response.original_query,
            )
            return
        self.aggregator.merge_remote(response.sender_id or sender, response.records, time.time())

    async def _answer_peer_search(self, sender: str, query: str) -> None:
        if sender == self.node_id or self.repository is None or not query:
            return
        matches = self.repository.search(query)
        if not matches:
            return
        response = PeerSearchResponse(sender_id=self.nickname, original_query=query, records=matches)
        logger.info("[Gateway] answering {}'s search {!r} with {} local records", sender, query, len(matches))
        await self._broadcast(response.encode())

    # ------------------------------------------------------------------
    # Gateway role
    # ------------------------------------------------------------------

    async def _handle_gateway_command(self, sender: str, text: str, kind: MsgKind, body: str) -> None:
        if sender == self.node_id:
            return
        if kind is MsgKind.PASSTHROUGH:
            error = validate_json(body)
            if error:
                logger.warning("[Gateway] rejected passthrough from {}: {}", sender, error)
                self.events.emit(GatewayFeedback(message=error, is_error=True))
                return
        if not self.monitor.online:
            logger.debug("[Gateway] offline, dropping {} from {}", kind.value, sender)
            return
        if self._is_duplicate(sender, text):
            logger.debug("[Gateway] duplicate {} from {}, ignored", kind.value, sender)
            return

        if kind is MsgKind.GATEWAY_SEARCH:
            await self._serve_search(sender, body)
        elif kind is MsgKind.GATEWAY_CREATE:
            await self._serve_create(sender, body)
        else:
            await self._serve_passthrough(sender, body)

    async def _serve_search(self, sender: str, term: str) -> None:
        logger.info("[Gateway] searching {!r} for {}", term, sender)
        outcome = await self.backend.search(term)
        if outcome.records:
            await self._broadcast(encode_search_records(outcome.records))
        else:
            await self._broadcast(encode_search_result(outcome.message))

    async def _serve_create(self, sender: str, document: str) -> None:
        error = validate_json(document) if document else "Empty patient document"
        if error:
            await self._broadcast(encode_create_result(False, error))
            return
        logger.info("[Gateway] creating record for {}", sender)
        outcome = await self.backend.create(document)
        await self._broadcast(encode_create_result(outcome.ok, outcome.message))

    async def _serve_passthrough(self, sender: str, payload: str) -> None:
        outcome = await self.backend.post_raw(payload)
        if outcome.ok:
            self.events.emit(GatewayFeedback(message=f"Server response: {outcome.message}"))
        else:
            self.events.emit(GatewayFeedback(
                message=f"Failed to send message to server: {outcome.message}",
                is_error=True,
            ))

    def _is_duplicate(self, sender: str, text: str) -> bool:
        if self.dedupe_window <= 0:
            return False
        now = time.monotonic()
        self._recent = {k: t for k, t in self._recent.items() if now - t < self.dedupe_window}
        key = (sender, text)
        if key in self._recent:
            return True
        self._recent[key] = now
        return False

    # ------------------------------------------------------------------
    # Originator role
    # ------------------------------------------------------------------

    async def issue_search(self, query: str) -> OutstandingRequest | None:
        """Start a search for *query*, superseding any search in flight."""
        query = query.strip()
        if not query:
            return None
        request = self.tracker.begin(RequestKind.SEARCH, query)
        self._session = query
        self.aggregator.set_query(query)
        self.aggregator.set_loading(True)
        self.tracker.timeout(RequestKind.SEARCH, self.search_timeout, self._on_search_timeout)

        if self.monitor.online:
            task = supervised_task(self._direct_search(request), name=f"direct-search-{request.request_id}")
            self.tracker.attach(request, task)

        await self._broadcast(encode_peer_search(query))
        await self._broadcast(encode_gateway_search(query))
        logger.info("[Gateway] search {} issued for {!r}", request.request_id, query)
        return request

    def cancel_search(self) -> None:
        """Give up on the outstanding search, if any, and end its session."""
        if self.tracker.complete(RequestKind.SEARCH):
            logger.debug("[Gateway] outstanding search cancelled")
        self._session = None
        self.aggregator.set_loading(False)

    @property
    def search_session(self) -> str | None:
        """Query whose peer answers are currently merged, if any."""
        return self._session

    async def _direct_search(self, request: OutstandingRequest) -> None:
        outcome = await self.backend.search(request.payload)
        if not self.tracker.owns(request):
            logger.debug("[Gateway] direct search {} superseded, result dropped", request.request_id)
            return
        if not outcome.ok:
            # Mesh answers may still arrive; the failure is reported only on timeout.
            request.failure = outcome.message
            logger.info("[Gateway] direct search {} failed ({}), waiting for the mesh",
                        request.request_id, outcome.message)
            return
        records = [Patient.from_dict(r) for r in outcome.records]
        self._resolve_search(request, DIRECT_SOURCE, records, outcome.message)

    def _resolve_search(
        self,
        request: OutstandingRequest,
        source: str,
        records: list[Patient],
        message: str,
    ) -> None:
        self.tracker.complete(RequestKind.SEARCH, request)
        self.aggregator.set_loading(False)
        if records:
            self.aggregator.merge_remote(source, records)
        logger.info("[Gateway] search {} resolved by {} ({} records)", request.request_id, source, len(records))
        self.events.emit(SearchResolved(query=request.payload, source=source, records=records, message=message))

    def _on_search_timeout(self, request: OutstandingRequest) -> None:
        if self._session == request.payload:
            self._session = None
        self.aggregator.set_loading(False)
        self.events.emit(SearchTimedOut(query=request.payload, message=request.failure))

    async def issue_create(self, document: Patient | dict[str, Any] | str) -> OutstandingRequest | None:
        """Create a record remotely. Returns None if *document* is not valid JSON."""
        if isinstance(document, Patient):
            payload = json.dumps(document.to_dict(), ensure_ascii=False)
        elif isinstance(document, dict):
            payload = json.dumps(document, ensure_ascii=False)
        else:
            payload = document.strip()
            error = validate_json(payload)
            if error:
                logger.warning("[Gateway] create rejected before sending: {}", error)
                self.events.emit(GatewayFeedback(message=error, is_error=True))
                return None

        request = self.tracker.begin(RequestKind.CREATE, payload)
        self.tracker.timeout(RequestKind.CREATE, self.create_timeout, self._on_create_timeout)

        if self.monitor.online:
            task = supervised_task(self._direct_create(request), name=f"direct-create-{request.request_id}")
            self.tracker.attach(request, task)
        else:
            request.relayed = True
            await self._broadcast(encode_gateway_create(payload))
        logger.info("[Gateway] create {} issued", request.request_id)
        return request

    async def _direct_create(self, request: OutstandingRequest) -> None:
        outcome = await self.backend.create(request.payload)
        if not self.tracker.owns(request):
            logger.debug("[Gateway] direct create {} superseded, result dropped", request.request_id)
            return
        if outcome.transport_error:
            logger.info("[Gateway] direct create {} unreachable, relaying via mesh", request.request_id)
            request.relayed = True
            await self._broadcast(encode_gateway_create(request.payload))
            return
        self.tracker.complete(RequestKind.CREATE, request)
        self.events.emit(CreateResolved(ok=outcome.ok, message=outcome.message, source=DIRECT_SOURCE))

    def _on_create_timeout(self, request: OutstandingRequest) -> None:
        self.events.emit(CreateResolved(
            ok=False,
            message="No response from any gateway",
            timed_out=True,
        ))

    async def submit_raw(self, payload: str) -> bool:
        """Broadcast a passthrough envelope after checking it is valid JSON."""
        payload = payload.strip()
        error = validate_json(payload)
        if error:
            logger.warning("[Gateway] passthrough rejected before sending: {}", error)
            self.events.emit(GatewayFeedback(message=error, is_error=True))
            return False
        return await self._broadcast(encode_passthrough(payload))
