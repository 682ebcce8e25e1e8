"""Request/response bridge between the mesh and the remote patient service."""

from bitmedic.gateway.aggregator import RemoteResult, ResultAggregator, ResultSection
from bitmedic.gateway.backend import BackendClient, PostOutcome, SearchOutcome, validate_json
from bitmedic.gateway.connectivity import ConnectivityMonitor
from bitmedic.gateway.events import (
    CreateResolved,
    EventHub,
    GatewayFeedback,
    ResultsUpdated,
    SearchResolved,
    SearchTimedOut,
)
from bitmedic.gateway.gateway import MeshGateway
from bitmedic.gateway.search import SearchController
from bitmedic.gateway.tracker import OutstandingRequest, RequestKind, RequestTracker

__all__ = [
    "BackendClient",
    "ConnectivityMonitor",
    "CreateResolved",
    "EventHub",
    "GatewayFeedback",
    "MeshGateway",
    "OutstandingRequest",
    "PostOutcome",
    "RemoteResult",
    "RequestKind",
    "RequestTracker",
    "ResultAggregator",
    "ResultSection",
    "ResultsUpdated",
    "SearchController",
    "SearchOutcome",
    "SearchResolved",
    "SearchTimedOut",
    "validate_json",
]
