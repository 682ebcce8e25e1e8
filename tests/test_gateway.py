"""Tests for the mesh gateway: acceptance, gateway role, issuance, timeouts."""

from __future__ import annotations

import asyncio
import json
import tempfile
from pathlib import Path

import httpx
import pytest

from bitmedic.config.schema import BackendConfig
from bitmedic.gateway import (
    BackendClient,
    ConnectivityMonitor,
    CreateResolved,
    EventHub,
    GatewayFeedback,
    MeshGateway,
    RequestKind,
    RequestTracker,
    ResultAggregator,
    SearchResolved,
    SearchTimedOut,
)
from bitmedic.mesh.link import MeshHub, MeshLink
from bitmedic.mesh.protocol import PeerSearchResponse, encode_gateway_search
from bitmedic.mesh.resilience import RetryPolicy
from bitmedic.store import Patient, PatientRepository


class FakeLink(MeshLink):
    """Records broadcasts instead of sending them."""

    def __init__(self, node_id: str = "me", ok: bool = True):
        super().__init__(node_id)
        self.sent: list[str] = []
        self.ok = ok

    async def broadcast(self, text: str) -> bool:
        self.sent.append(text)
        return self.ok


class Rig:
    """One gateway with a fake link, a mock backend and an event log."""

    def __init__(
        self,
        *,
        online: bool = False,
        search_body=None,
        create_status: int = 201,
        search_gate: dict[str, asyncio.Event] | None = None,
        create_error: bool = False,
        search_error: bool = False,
        create_gate: asyncio.Event | None = None,
        repository: PatientRepository | None = None,
        node_id: str = "me",
        link: MeshLink | None = None,
        **gateway_kwargs,
    ):
        self.requests: list[httpx.Request] = []
        self.search_body = search_body if search_body is not None else []
        self.search_gate = search_gate or {}
        self.create_status = create_status
        self.create_error = create_error
        self.search_error = search_error
        self.create_gate = create_gate

        self.events = EventHub()
        self.seen: list[object] = []
        for event_type in (SearchResolved, SearchTimedOut, CreateResolved, GatewayFeedback):
            self.events.subscribe(event_type, self.seen.append)

        self.monitor = ConnectivityMonitor(check_interval=0, initial=online)
        self.tracker = RequestTracker()
        self.aggregator = ResultAggregator(self.events)
        self.backend = BackendClient(
            BackendConfig(
                search_url="https://search.test/",
                create_url="https://create.test/posts",
                passthrough_url="https://raw.test/posts",
            ),
            transport=httpx.MockTransport(self._handle),
        )
        self.link = link or FakeLink(node_id)
        self.gateway = MeshGateway(
            node_id,
            self.monitor,
            self.tracker,
            self.aggregator,
            self.backend,
            link=self.link,
            repository=repository,
            events=self.events,
            retry_policy=RetryPolicy(max_retries=0),
            **gateway_kwargs,
        )

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "search.test":
            gate = self.search_gate.get(request.url.params.get("name", ""))
            if gate is not None:
                await gate.wait()
            if self.search_error:
                raise httpx.ConnectError("unreachable", request=request)
            return httpx.Response(200, json=self.search_body)
        if request.url.host == "create.test":
            if self.create_gate is not None:
                await self.create_gate.wait()
            if self.create_error:
                raise httpx.ConnectError("unreachable", request=request)
            return httpx.Response(self.create_status, json={"id": 101})
        return httpx.Response(200, text="accepted")

    @property
    def sent(self) -> list[str]:
        return self.link.sent

    def of_type(self, event_type):
        return [e for e in self.seen if isinstance(e, event_type)]


async def settle(delay: float = 0.05) -> None:
    await asyncio.sleep(delay)


@pytest.fixture
def repo():
    with tempfile.TemporaryDirectory() as d:
        r = PatientRepository(Path(d) / "patients.json")
        r.add(Patient(name="Ana Lopez", id="p-ana"))
        r.add(Patient(name="Bo Chen", id="p-bo"))
        yield r


# ---------------------------------------------------------------------------
# Response acceptance
# ---------------------------------------------------------------------------

class TestSearchResponses:
    @pytest.mark.asyncio
    async def test_results_without_outstanding_request_ignored(self):
        rig = Rig()
        await rig.gateway.handle_message("peer", "Results: Ana | Bo")
        assert rig.aggregator.remote_count == 0
        assert rig.of_type(SearchResolved) == []

    @pytest.mark.asyncio
    async def test_results_accepted_once(self):
        rig = Rig()
        await rig.gateway.issue_search("an")
        assert rig.aggregator.loading

        await rig.gateway.handle_message("gw-1", "Results: Ana | Andy")
        await rig.gateway.handle_message("gw-2", "Results: Anne")

        resolved = rig.of_type(SearchResolved)
        assert len(resolved) == 1
        assert resolved[0].source == "gw-1"
        assert [p.name for p in resolved[0].records] == ["Ana", "Andy"]
        assert rig.aggregator.peer_count == 1
        assert not rig.aggregator.loading
        assert not rig.tracker.has_outstanding(RequestKind.SEARCH)

    @pytest.mark.asyncio
    async def test_status_text_result(self):
        rig = Rig()
        await rig.gateway.issue_search("zed")
        await rig.gateway.handle_message("gw-1", "Results: No patients found for 'zed'")
        resolved = rig.of_type(SearchResolved)[0]
        assert resolved.records == []
        assert resolved.message == "No patients found for 'zed'"
        assert rig.aggregator.peer_count == 0

    @pytest.mark.asyncio
    async def test_superseded_search_response_discarded(self):
        gate = asyncio.Event()
        rig = Rig(online=True, search_body=[{"id": 1, "name": "Bo Chen"}], search_gate={"ana": gate})
        await rig.gateway.issue_search("ana")
        await rig.gateway.issue_search("bo")
        await settle()
        gate.set()
        await settle()

        resolved = rig.of_type(SearchResolved)
        assert [r.query for r in resolved] == ["bo"]
        assert resolved[0].source == "server"

    @pytest.mark.asyncio
    async def test_cancelled_search_ignores_late_results(self):
        rig = Rig()
        await rig.gateway.issue_search("ana")
        rig.gateway.cancel_search()
        await rig.gateway.handle_message("gw-1", "Results: Ana")
        assert rig.of_type(SearchResolved) == []
        assert not rig.aggregator.loading


class TestPeerSearchResponses:
    def _response(self, sender: str, query: str, *names: str) -> str:
        return PeerSearchResponse(sender, query, [Patient(name=n) for n in names]).encode()

    @pytest.mark.asyncio
    async def test_matching_query_merged_without_completing(self):
        rig = Rig()
        await rig.gateway.issue_search("Ana")
        await rig.gateway.handle_message("n1", self._response("kit-1", "ana", "Ana Lopez"))
        await rig.gateway.handle_message("n2", self._response("kit-2", "ANA", "Ana Ruiz"))
        assert rig.aggregator.peer_count == 2
        assert rig.tracker.has_outstanding(RequestKind.SEARCH)

    @pytest.mark.asyncio
    async def test_other_query_discarded(self):
        rig = Rig()
        await rig.gateway.issue_search("bo")
        await rig.gateway.handle_message("n1", self._response("kit-1", "ana", "Ana Lopez"))
        assert rig.aggregator.peer_count == 0

    @pytest.mark.asyncio
    async def test_same_peer_replaces(self):
        rig = Rig()
        await rig.gateway.issue_search("an")
        await rig.gateway.handle_message("n1", self._response("kit-1", "an", "Ana", "Andy"))
        await rig.gateway.handle_message("n1", self._response("kit-1", "an", "Anne"))
        assert rig.aggregator.peer_count == 1
        assert rig.aggregator.remote_count == 1

    @pytest.mark.asyncio
    async def test_no_query_discards(self):
        rig = Rig()
        await rig.gateway.handle_message("n1", self._response("kit-1", "an", "Ana"))
        assert rig.aggregator.peer_count == 0

    @pytest.mark.asyncio
    async def test_shown_query_without_search_discards(self):
        rig = Rig()
        rig.aggregator.set_query("an")
        await rig.gateway.handle_message("n1", self._response("kit-1", "an", "Ana"))
        assert rig.aggregator.peer_count == 0

    @pytest.mark.asyncio
    async def test_answer_after_timeout_discarded(self):
        rig = Rig(search_timeout=0.05)
        await rig.gateway.issue_search("ana")
        await settle(0.1)
        assert not rig.tracker.has_outstanding(RequestKind.SEARCH)
        await rig.gateway.handle_message("n1", self._response("kit-1", "ana", "Ana Lopez"))
        assert rig.aggregator.remote_count == 0
        assert rig.gateway.search_session is None

    @pytest.mark.asyncio
    async def test_answer_after_cancel_discarded(self):
        rig = Rig()
        await rig.gateway.issue_search("ana")
        rig.gateway.cancel_search()
        await rig.gateway.handle_message("n1", self._response("kit-1", "ana", "Ana Lopez"))
        assert rig.aggregator.remote_count == 0

    @pytest.mark.asyncio
    async def test_answer_after_gateway_reply_still_merged(self):
        rig = Rig()
        await rig.gateway.issue_search("ana")
        await rig.gateway.handle_message("gw", "Results: Ana Lopez")
        await rig.gateway.handle_message("n1", self._response("kit-1", "ana", "Ana Ruiz"))
        assert rig.aggregator.peer_count == 2
        assert rig.gateway.search_session == "ana"


class TestCreateResponses:
    @pytest.mark.asyncio
    async def test_without_outstanding_request_ignored(self):
        rig = Rig()
        await rig.gateway.handle_message("gw", "CreatePatientResult: success - status 201")
        assert rig.of_type(CreateResolved) == []

    @pytest.mark.asyncio
    async def test_accepted_and_completes(self):
        rig = Rig()
        await rig.gateway.issue_create({"name": "Ana"})
        await rig.gateway.handle_message("gw", "CreatePatientResult: error - Server error 500")
        await rig.gateway.handle_message("gw", "CreatePatientResult: success - status 201")
        resolved = rig.of_type(CreateResolved)
        assert resolved == [CreateResolved(ok=False, message="Server error 500", source="gw")]
        assert not rig.tracker.has_outstanding(RequestKind.CREATE)


# ---------------------------------------------------------------------------
# Gateway role
# ---------------------------------------------------------------------------

class TestServingPeers:
    @pytest.mark.asyncio
    async def test_offline_drops_silently(self):
        rig = Rig(online=False)
        await rig.gateway.handle_message("peer", encode_gateway_search("ana"))
        await rig.gateway.handle_message("peer", 'PingToServer: /createpatient {"name": "Ana"}')
        await rig.gateway.handle_message("peer", 'PingToServer: {"title": "x"}')
        assert rig.sent == []
        assert rig.requests == []
        assert rig.seen == []

    @pytest.mark.asyncio
    async def test_search_served(self):
        rig = Rig(online=True, search_body=[{"id": 3, "name": "Ana Lopez"}])
        await rig.gateway.handle_message("peer", encode_gateway_search("Ana Lopez"))
        assert rig.requests[0].url.params["name"] == "Ana Lopez"
        assert len(rig.sent) == 1
        assert rig.sent[0].startswith("Results: [")
        assert json.loads(rig.sent[0][len("Results: "):])[0]["name"] == "Ana Lopez"

    @pytest.mark.asyncio
    async def test_search_with_no_matches(self):
        rig = Rig(online=True, search_body=[])
        await rig.gateway.handle_message("peer", encode_gateway_search("zed"))
        assert rig.sent == ["Results: No patients found for 'zed'"]

    @pytest.mark.asyncio
    async def test_own_echo_ignored(self):
        rig = Rig(online=True)
        await rig.gateway.handle_message("me", encode_gateway_search("ana"))
        assert rig.requests == []
        assert rig.sent == []

    @pytest.mark.asyncio
    async def test_redelivered_command_runs_once(self):
        rig = Rig(online=True)
        text = 'PingToServer: /createpatient {"name": "Ana"}'
        await rig.gateway.handle_message("peer", text)
        await rig.gateway.handle_message("peer", text)
        await rig.gateway.handle_message("other", text)
        assert len(rig.requests) == 2
        assert len(rig.sent) == 2

    @pytest.mark.asyncio
    async def test_dedupe_disabled(self):
        rig = Rig(online=True, dedupe_window=0)
        text = encode_gateway_search("ana")
        await rig.gateway.handle_message("peer", text)
        await rig.gateway.handle_message("peer", text)
        assert len(rig.requests) == 2

    @pytest.mark.asyncio
    async def test_create_served(self):
        rig = Rig(online=True)
        await rig.gateway.handle_message("peer", 'PingToServer: /create {"name": "Ana"}')
        assert json.loads(rig.requests[0].content) == {"name": "Ana"}
        assert rig.sent[0].startswith("CreatePatientResult: success - status 201")

    @pytest.mark.asyncio
    async def test_create_server_error_relayed(self):
        rig = Rig(online=True, create_status=500)
        await rig.gateway.handle_message("peer", 'PingToServer: /createpatient {"name": "Ana"}')
        assert rig.sent == ["CreatePatientResult: error - Server error 500"]

    @pytest.mark.asyncio
    async def test_malformed_create_document_not_posted(self):
        rig = Rig(online=True)
        await rig.gateway.handle_message("peer", "PingToServer: /createpatient {name: Ana}")
        assert rig.requests == []
        assert len(rig.sent) == 1
        assert rig.sent[0].startswith("CreatePatientResult: error - Invalid JSON format")

    @pytest.mark.asyncio
    async def test_malformed_passthrough_never_posted(self):
        rig = Rig(online=True)
        await rig.gateway.handle_message("peer", "PingToServer: {not json")
        assert rig.requests == []
        assert rig.sent == []
        feedback = rig.of_type(GatewayFeedback)
        assert len(feedback) == 1
        assert feedback[0].is_error

    @pytest.mark.asyncio
    async def test_passthrough_posted(self):
        rig = Rig(online=True)
        await rig.gateway.handle_message("peer", 'PingToServer: {"title": "x"}')
        assert str(rig.requests[0].url) == "https://raw.test/posts"
        feedback = rig.of_type(GatewayFeedback)
        assert feedback[0].message.startswith("Server response: status 200")
        assert not feedback[0].is_error

    @pytest.mark.asyncio
    async def test_connectivity_read_per_message(self):
        rig = Rig(online=False)
        text = encode_gateway_search("ana")
        await rig.gateway.handle_message("peer", text)
        rig.monitor.set_online(True)
        await rig.gateway.handle_message("peer", text)
        assert len(rig.requests) == 1


class TestPeerSearch:
    @pytest.mark.asyncio
    async def test_answers_from_local_store(self, repo):
        rig = Rig(repository=repo, nickname="clinic-tent")
        await rig.gateway.handle_message("peer", "PatientSearch: lopez")
        assert len(rig.sent) == 1
        body = rig.sent[0][len("PatientSearchResponse:"):]
        response = PeerSearchResponse.decode(body)
        assert response.sender_id == "clinic-tent"
        assert response.original_query == "lopez"
        assert [p.id for p in response.records] == ["p-ana"]

    @pytest.mark.asyncio
    async def test_no_matches_no_answer(self, repo):
        rig = Rig(repository=repo)
        await rig.gateway.handle_message("peer", "PatientSearch: zed")
        assert rig.sent == []

    @pytest.mark.asyncio
    async def test_without_repository(self):
        rig = Rig()
        await rig.gateway.handle_message("peer", "PatientSearch: ana")
        assert rig.sent == []


# ---------------------------------------------------------------------------
# Issuing requests
# ---------------------------------------------------------------------------

class TestIssueSearch:
    @pytest.mark.asyncio
    async def test_offline_goes_to_mesh_only(self):
        rig = Rig(online=False)
        request = await rig.gateway.issue_search(" Mary Ann ")
        assert request.payload == "Mary Ann"
        assert rig.sent == ["PatientSearch:Mary Ann", "PingToServer: /search?q=Mary%20Ann"]
        await settle()
        assert rig.requests == []

    @pytest.mark.asyncio
    async def test_online_also_calls_backend(self):
        rig = Rig(online=True, search_body=[{"id": 9, "name": "Ana Lopez"}])
        await rig.gateway.issue_search("ana")
        await settle()
        assert len(rig.sent) == 2
        resolved = rig.of_type(SearchResolved)
        assert resolved[0].source == "server"
        assert [s.title for s in rig.aggregator.sections()] == ["From server"]
        assert not rig.aggregator.loading

    @pytest.mark.asyncio
    async def test_mesh_answer_after_direct_answer_ignored(self):
        rig = Rig(online=True, search_body=[{"id": 9, "name": "Ana Lopez"}])
        await rig.gateway.issue_search("ana")
        await settle()
        await rig.gateway.handle_message("gw", "Results: Ana Lopez")
        assert len(rig.of_type(SearchResolved)) == 1

    @pytest.mark.asyncio
    async def test_blank_query(self):
        rig = Rig()
        assert await rig.gateway.issue_search("   ") is None
        assert rig.sent == []

    @pytest.mark.asyncio
    async def test_timeout_fires_once(self):
        rig = Rig(search_timeout=0.05)
        await rig.gateway.issue_search("ana")
        await settle(0.15)
        assert rig.of_type(SearchTimedOut) == [SearchTimedOut(query="ana")]
        assert not rig.aggregator.loading
        await rig.gateway.handle_message("gw", "Results: Ana")
        assert rig.of_type(SearchResolved) == []

    @pytest.mark.asyncio
    async def test_answered_search_does_not_time_out(self):
        rig = Rig(search_timeout=0.05)
        await rig.gateway.issue_search("ana")
        await rig.gateway.handle_message("gw", "Results: Ana")
        await settle(0.15)
        assert rig.of_type(SearchTimedOut) == []

    @pytest.mark.asyncio
    async def test_failed_broadcast_still_tracked(self):
        rig = Rig(link=FakeLink(ok=False))
        request = await rig.gateway.issue_search("ana")
        assert rig.tracker.owns(request)

    @pytest.mark.asyncio
    async def test_failed_direct_call_leaves_search_open_for_mesh(self):
        rig = Rig(online=True, search_error=True)
        request = await rig.gateway.issue_search("ana")
        await settle()
        assert rig.tracker.owns(request)
        assert rig.of_type(SearchResolved) == []
        assert rig.aggregator.loading

        await rig.gateway.handle_message("gw", 'Results: [{"id": 1, "name": "Ana"}]')
        resolved = rig.of_type(SearchResolved)
        assert len(resolved) == 1
        assert resolved[0].source == "gw"
        assert [s.title for s in rig.aggregator.sections()] == ["From gw"]

    @pytest.mark.asyncio
    async def test_server_error_leaves_search_open(self):
        rig = Rig(online=True, search_body={"error": "maintenance"})
        request = await rig.gateway.issue_search("ana")
        await settle()
        assert rig.tracker.owns(request)
        assert request.failure.startswith("Invalid server response")

    @pytest.mark.asyncio
    async def test_direct_failure_reported_on_timeout(self):
        rig = Rig(online=True, search_error=True, search_timeout=0.1)
        await rig.gateway.issue_search("ana")
        await settle(0.2)
        timed_out = rig.of_type(SearchTimedOut)
        assert len(timed_out) == 1
        assert timed_out[0].message.startswith("Search failed - ")
        assert rig.of_type(SearchResolved) == []
        assert not rig.aggregator.loading

    @pytest.mark.asyncio
    async def test_empty_direct_answer_resolves(self):
        rig = Rig(online=True, search_body=[])
        await rig.gateway.issue_search("zed")
        await settle()
        resolved = rig.of_type(SearchResolved)
        assert [r.message for r in resolved] == ["No patients found for 'zed'"]
        assert not rig.tracker.has_outstanding(RequestKind.SEARCH)


class TestIssueCreate:
    @pytest.mark.asyncio
    async def test_online_goes_direct_only(self):
        rig = Rig(online=True)
        await rig.gateway.issue_create(Patient(name="Ana", id="p1"))
        await settle()
        assert rig.sent == []
        assert json.loads(rig.requests[0].content)["id"] == "p1"
        resolved = rig.of_type(CreateResolved)
        assert len(resolved) == 1
        assert resolved[0].ok
        assert resolved[0].source == "server"

    @pytest.mark.asyncio
    async def test_offline_goes_to_mesh_only(self):
        rig = Rig(online=False)
        await rig.gateway.issue_create({"name": "Ana"})
        assert rig.requests == []
        assert rig.sent == ['PingToServer: /createpatient {"name": "Ana"}']

    @pytest.mark.asyncio
    async def test_transport_failure_falls_back_to_mesh(self):
        rig = Rig(online=True, create_error=True)
        await rig.gateway.issue_create({"name": "Ana"})
        await settle()
        assert rig.sent == ['PingToServer: /createpatient {"name": "Ana"}']
        assert rig.tracker.has_outstanding(RequestKind.CREATE)
        await rig.gateway.handle_message("gw", "CreatePatientResult: success - status 201")
        assert rig.of_type(CreateResolved)[0].source == "gw"

    @pytest.mark.asyncio
    async def test_server_error_is_terminal(self):
        rig = Rig(online=True, create_status=500)
        await rig.gateway.issue_create({"name": "Ana"})
        await settle()
        assert rig.sent == []
        assert rig.of_type(CreateResolved) == [
            CreateResolved(ok=False, message="Server error 500", source="server"),
        ]

    @pytest.mark.asyncio
    async def test_malformed_document_rejected_locally(self):
        rig = Rig(online=True)
        assert await rig.gateway.issue_create("{name: Ana}") is None
        await settle()
        assert rig.sent == []
        assert rig.requests == []
        assert rig.of_type(GatewayFeedback)[0].is_error
        assert not rig.tracker.has_outstanding(RequestKind.CREATE)

    @pytest.mark.asyncio
    async def test_timeout(self):
        rig = Rig(create_timeout=0.05)
        await rig.gateway.issue_create({"name": "Ana"})
        await settle(0.15)
        resolved = rig.of_type(CreateResolved)
        assert len(resolved) == 1
        assert resolved[0].timed_out
        assert not resolved[0].ok

    @pytest.mark.asyncio
    async def test_mesh_result_ignored_while_direct_create_in_flight(self):
        gate = asyncio.Event()
        rig = Rig(online=True, create_gate=gate)
        request = await rig.gateway.issue_create(Patient(name="Ana"))
        await settle()
        assert not request.relayed

        await rig.gateway.handle_message("other", "CreatePatientResult: success - someone else's record")
        assert rig.of_type(CreateResolved) == []
        assert rig.tracker.owns(request)

        gate.set()
        await settle()
        resolved = rig.of_type(CreateResolved)
        assert len(resolved) == 1
        assert resolved[0].source == "server"
        assert resolved[0].ok

    @pytest.mark.asyncio
    async def test_offline_create_is_marked_relayed(self):
        rig = Rig(online=False)
        request = await rig.gateway.issue_create({"name": "Ana"})
        assert request.relayed


class TestSubmitRaw:
    @pytest.mark.asyncio
    async def test_valid_payload_broadcast(self):
        rig = Rig()
        assert await rig.gateway.submit_raw(' {"title": "x"} ') is True
        assert rig.sent == ['PingToServer: {"title": "x"}']

    @pytest.mark.asyncio
    async def test_malformed_payload_not_broadcast(self):
        rig = Rig()
        assert await rig.gateway.submit_raw("{oops") is False
        assert rig.sent == []
        assert rig.of_type(GatewayFeedback)[0].is_error


# ---------------------------------------------------------------------------
# Two devices on one mesh
# ---------------------------------------------------------------------------

class TestOverMesh:
    @pytest.mark.asyncio
    async def test_offline_device_searches_through_online_peer(self):
        hub = MeshHub()
        field_kit = Rig(online=False, node_id="field", link=hub.join("field"))
        base = Rig(online=True, node_id="base", link=hub.join("base"),
                   search_body=[{"id": 5, "name": "Ana Lopez", "DOB": "1990-02-03"}])

        await field_kit.gateway.issue_search("ana")
        await hub.drain()

        assert len(base.requests) == 1
        resolved = field_kit.of_type(SearchResolved)
        assert len(resolved) == 1
        assert resolved[0].source == "base"
        assert resolved[0].records[0].date_of_birth == "1990-02-03"
        assert field_kit.aggregator.display_message() == "0 local patients, 1 from 1 peer"
        # the base device never had a request of its own
        assert base.of_type(SearchResolved) == []

    @pytest.mark.asyncio
    async def test_offline_device_creates_through_online_peer_once(self):
        hub = MeshHub(copies=2)
        field_kit = Rig(online=False, node_id="field", link=hub.join("field"))
        base = Rig(online=True, node_id="base", link=hub.join("base"))

        await field_kit.gateway.issue_create({"name": "Ana"})
        await hub.drain()

        assert len(base.requests) == 1
        assert [e.ok for e in field_kit.of_type(CreateResolved)] == [True]

    @pytest.mark.asyncio
    async def test_peer_local_store_contributes(self, repo):
        hub = MeshHub()
        field_kit = Rig(online=False, node_id="field", link=hub.join("field"))
        Rig(online=False, node_id="tent", link=hub.join("tent"), repository=repo)

        await field_kit.gateway.issue_search("bo")
        await hub.drain()

        sections = field_kit.aggregator.sections()
        assert [s.title for s in sections] == ["From tent"]
        assert [p.id for p in sections[0].records] == ["p-bo"]
        assert field_kit.tracker.has_outstanding(RequestKind.SEARCH)
