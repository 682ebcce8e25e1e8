"""Mesh transport abstraction.

The radio mesh (discovery, encryption, fragmentation, delivery) lives outside
this package. It is seen only through ``MeshLink``: broadcast a string, and
receive ``(sender_id, text)`` pairs with at-least-once, unordered delivery.

``MeshHub`` is an in-memory broadcast medium implementing that contract for
simulation and tests. Each delivery runs as its own task, so handlers
interleave the way they do on a real radio.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from loguru import logger

from bitmedic.mesh.resilience import supervised_task

# Callback type: (sender_id, text) -> awaitable
InboundHandler = Callable[[str, str], Awaitable[None]]


class MeshLink(ABC):
    """One node's attachment to the mesh."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        self._handlers: list[InboundHandler] = []

    def on_message(self, handler: InboundHandler) -> None:
        """Register a callback for every text delivered to this node."""
        self._handlers.append(handler)

    async def dispatch(self, sender_id: str, text: str) -> None:
        """Hand one inbound message to every registered handler."""
        for handler in self._handlers:
            try:
                await handler(sender_id, text)
            except Exception as exc:
                logger.error("[Mesh/Link] handler error on {}: {}", self.node_id, exc)

    @abstractmethod
    async def broadcast(self, text: str) -> bool:
        """Send *text* to every reachable peer. Returns False if not sent."""


class HubLink(MeshLink):
    """A node attached to a ``MeshHub``."""

    def __init__(self, node_id: str, hub: MeshHub):
        super().__init__(node_id)
        self.hub = hub
        self.connected = True

    async def broadcast(self, text: str) -> bool:
        if not self.connected:
            logger.debug("[Mesh/Link] {} is detached, dropping broadcast", self.node_id)
            return False
        self.hub.deliver(self.node_id, text)
        return True


class MeshHub:
    """In-memory broadcast medium.

    Parameters
    ----------
    copies:
        How many times each message reaches each peer (>1 simulates
        at-least-once redelivery).
    """

    def __init__(self, copies: int = 1):
        self.copies = max(1, copies)
        self._links: dict[str, HubLink] = {}
        self._pending: set[asyncio.Task] = set()
        self.history: list[tuple[str, str]] = []  # (sender_id, text)

    def join(self, node_id: str) -> HubLink:
        link = HubLink(node_id, self)
        self._links[node_id] = link
        return link

    def leave(self, node_id: str) -> None:
        link = self._links.pop(node_id, None)
        if link is not None:
            link.connected = False

    def deliver(self, sender_id: str, text: str) -> None:
        """Schedule delivery of *text* to every member except the sender."""
        self.history.append((sender_id, text))
        for node_id, link in list(self._links.items()):
            if node_id == sender_id:
                continue
            for _ in range(self.copies):
                task = supervised_task(link.dispatch(sender_id, text), name=f"mesh-deliver-{node_id}")
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait until no delivery (including ones scheduled meanwhile) is running."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
