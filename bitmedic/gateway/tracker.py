"""Request correlation: one outstanding request per kind.

A device has at most one live *search* and one live *create* at any time.
Starting a new request of a kind supersedes the previous one: its direct
call is cancelled, its timer disarmed, and any answer that still trickles in
for it is rejected by ``owns()`` / ``is_current()``.

Every async resumption point that wants to apply a result must check
ownership first; cancellation is best effort and a superseded call can still
complete.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from loguru import logger

from bitmedic.mesh.resilience import supervised_task


class RequestKind(str, Enum):
    SEARCH = "search"
    CREATE = "create"


@dataclass(eq=False)
class OutstandingRequest:
    """Handle for one tracked request. Compared by identity."""

    kind: RequestKind
    payload: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)
    relayed: bool = False       # put on the mesh; gateway answers may resolve it
    failure: str = ""           # last direct-call failure, reported on timeout
    task: asyncio.Task | None = field(default=None, repr=False)
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


TimeoutCallback = Callable[[OutstandingRequest], Any]


def _is_running_task(task: asyncio.Task) -> bool:
    try:
        return task is asyncio.current_task()
    except RuntimeError:
        return False


class RequestTracker:
    """Owns the per-kind outstanding request slots."""

    def __init__(self) -> None:
        self._slots: dict[RequestKind, OutstandingRequest] = {}

    # -- lifecycle -----------------------------------------------------------

    def begin(self, kind: RequestKind, payload: str) -> OutstandingRequest:
        """Install a new request of *kind*, discarding the previous one."""
        previous = self._slots.pop(kind, None)
        if previous is not None:
            self._release(previous)
            logger.debug(
                "[Tracker] {} {} superseded by new request",
                kind.value, previous.request_id,
            )
        request = OutstandingRequest(kind=kind, payload=payload)
        self._slots[kind] = request
        return request

    def attach(self, request: OutstandingRequest, task: asyncio.Task) -> None:
        """Associate the in-flight direct call with *request*.

        A task attached to a request that is no longer current is cancelled
        straight away.
        """
        if self.owns(request):
            request.task = task
        elif not task.done():
            task.cancel()

    def complete(self, kind: RequestKind, request: OutstandingRequest | None = None) -> bool:
        """Clear the slot for *kind*.

        With *request* given, only clears if that request is still current.
        Returns True if a request was cleared.
        """
        current = self._slots.get(kind)
        if current is None or (request is not None and current is not request):
            return False
        del self._slots[kind]
        self._release(current)
        return True

    def timeout(
        self,
        kind: RequestKind,
        duration: float,
        on_timeout: TimeoutCallback | None = None,
    ) -> bool:
        """Arm a timer that clears the current request of *kind* after
        *duration* seconds unless it completes first.

        *on_timeout* runs at most once, and only if the request was still
        outstanding when the timer fired. Returns False if nothing is
        outstanding.
        """
        request = self._slots.get(kind)
        if request is None:
            return False
        if request.timer is not None:
            request.timer.cancel()
        loop = asyncio.get_running_loop()
        request.timer = loop.call_later(duration, self._fire_timeout, request, on_timeout)
        return True

    def clear(self) -> None:
        """Drop every outstanding request (shutdown)."""
        for request in list(self._slots.values()):
            self._release(request)
        self._slots.clear()

    # -- queries -------------------------------------------------------------

    def current(self, kind: RequestKind) -> OutstandingRequest | None:
        return self._slots.get(kind)

    def is_current(self, kind: RequestKind, payload: str) -> bool:
        """True iff *payload* matches the outstanding request of *kind*."""
        request = self._slots.get(kind)
        return request is not None and request.payload == payload

    def owns(self, request: OutstandingRequest) -> bool:
        """True iff *request* is still the outstanding request of its kind."""
        return self._slots.get(request.kind) is request

    def has_outstanding(self, kind: RequestKind) -> bool:
        return kind in self._slots

    # -- internals -----------------------------------------------------------

    def _release(self, request: OutstandingRequest) -> None:
        if request.timer is not None:
            request.timer.cancel()
            request.timer = None
        task = request.task
        request.task = None
        if task is not None and not task.done() and not _is_running_task(task):
            task.cancel()

    def _fire_timeout(self, request: OutstandingRequest, on_timeout: TimeoutCallback | None) -> None:
        request.timer = None
        if not self.owns(request):
            return
        del self._slots[request.kind]
        self._release(request)
        logger.info(
            "[Tracker] {} {} timed out after {:.1f}s",
            request.kind.value, request.request_id, time.time() - request.started_at,
        )
        if on_timeout is None:
            return
        try:
            result = on_timeout(request)
            if asyncio.iscoroutine(result):
                supervised_task(result, name=f"timeout-{request.kind.value}")
        except Exception as exc:
            logger.error("[Tracker] timeout callback error: {}", exc)
