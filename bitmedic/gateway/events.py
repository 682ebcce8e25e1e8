"""Typed event channels between the gateway, the aggregator and the host UI.

One dataclass per event kind; subscribers register for a class and receive
only instances of it. Handlers may be sync or async; async handlers run as
supervised tasks so a slow subscriber never blocks mesh processing.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from loguru import logger

from bitmedic.mesh.resilience import supervised_task
from bitmedic.store.models import Patient


@dataclass(frozen=True)
class SearchResolved:
    """A search request was answered (directly or by a gateway peer)."""

    query: str
    source: str
    records: list[Patient] = field(default_factory=list)
    message: str = ""


@dataclass(frozen=True)
class SearchTimedOut:
    """No answer arrived for *query* before the search timeout.

    *message* carries the direct backend failure, if one was seen.
    """

    query: str
    message: str = ""


@dataclass(frozen=True)
class CreateResolved:
    """Terminal outcome of a create request."""

    ok: bool
    message: str
    source: str = ""
    timed_out: bool = False


@dataclass(frozen=True)
class GatewayFeedback:
    """Local notice from the gateway (rejected payloads, passthrough replies)."""

    message: str
    is_error: bool = False


@dataclass(frozen=True)
class ResultsUpdated:
    """The aggregated result view changed."""

    query: str
    local_count: int
    remote_count: int
    peer_count: int


E = TypeVar("E")


class EventHub:
    """Per-type observer registry."""

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callable[[Any], Any]]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: object) -> None:
        for handler in list(self._subscribers.get(type(event), [])):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    supervised_task(result, name=f"event-{type(event).__name__}")
            except Exception as exc:
                logger.error("[Events] {} handler error: {}", type(event).__name__, exc)
