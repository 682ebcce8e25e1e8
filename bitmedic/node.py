"""MedicNode: one device's full stack, wired from a ``Config``."""

from __future__ import annotations

import httpx
from loguru import logger

from bitmedic.config.schema import Config
from bitmedic.gateway.aggregator import ResultAggregator
from bitmedic.gateway.backend import BackendClient
from bitmedic.gateway.connectivity import ConnectivityMonitor
from bitmedic.gateway.events import EventHub
from bitmedic.gateway.gateway import MeshGateway
from bitmedic.gateway.search import SearchController
from bitmedic.gateway.tracker import OutstandingRequest, RequestTracker
from bitmedic.mesh.link import MeshLink
from bitmedic.mesh.resilience import RetryPolicy
from bitmedic.store.models import Patient
from bitmedic.store.repository import PatientRepository


class MedicNode:
    """Composition root for a device.

    Owns the repository, connectivity monitor, tracker, aggregator, backend
    client, gateway and search controller. The mesh link may be supplied
    now or later through ``attach()``.
    """

    def __init__(
        self,
        config: Config | None = None,
        link: MeshLink | None = None,
        *,
        backend_transport: httpx.AsyncBaseTransport | None = None,
        check_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or Config()
        self.node_id = self.config.mesh.node_id or (link.node_id if link else "") or _default_node_id()

        self.events = EventHub()
        self.repository = PatientRepository(self.config.store.expanded_path)
        self.monitor = ConnectivityMonitor(
            check_url=self.config.connectivity.check_url,
            check_timeout=self.config.connectivity.check_timeout,
            check_interval=self.config.connectivity.check_interval,
            initial=self.config.connectivity.assume_online,
            transport=check_transport,
        )
        self.tracker = RequestTracker()
        self.aggregator = ResultAggregator(self.events)
        self.backend = BackendClient(self.config.backend, transport=backend_transport)
        self.gateway = MeshGateway(
            self.node_id,
            self.monitor,
            self.tracker,
            self.aggregator,
            self.backend,
            repository=self.repository,
            events=self.events,
            nickname=self.config.mesh.nickname,
            search_timeout=self.config.gateway.search_timeout,
            create_timeout=self.config.gateway.create_timeout,
            dedupe_window=self.config.mesh.dedupe_window,
            retry_policy=RetryPolicy(max_retries=self.config.mesh.broadcast_retries),
        )
        self.search_controller = SearchController(
            self.repository,
            self.aggregator,
            self.gateway,
            debounce=self.config.gateway.search_debounce,
            min_query_length=self.config.gateway.min_query_length,
        )
        self._running = False
        if link is not None:
            self.attach(link)

    @property
    def link(self) -> MeshLink | None:
        return self.gateway.link

    @property
    def running(self) -> bool:
        return self._running

    def attach(self, link: MeshLink) -> None:
        self.gateway.attach(link)

    async def start(self) -> None:
        """Load the store and begin connectivity probing."""
        self.repository.load()
        if self.config.connectivity.check_interval > 0:
            await self.monitor.check()
            self.monitor.start()
        self._running = True
        self.search_controller.refresh_local()
        logger.info(
            "[MedicNode] {} started ({} local patients, {})",
            self.node_id, len(self.repository), "online" if self.monitor.online else "offline",
        )

    async def stop(self) -> None:
        self._running = False
        self.monitor.stop()
        self.search_controller.cancel()
        self.tracker.clear()
        try:
            await self.backend.close()
        except Exception as exc:
            logger.error("[MedicNode] backend close error: {}", exc)
        logger.info("[MedicNode] {} stopped", self.node_id)

    # -- user operations -------------------------------------------------

    def search(self, query: str) -> None:
        """Update the search query (local now, remote after the debounce)."""
        self.search_controller.set_query(query)

    async def search_now(self, query: str) -> OutstandingRequest | None:
        """Show local matches and issue the remote search without debouncing."""
        self.search_controller.cancel()
        self.aggregator.set_query(query.strip())
        self.aggregator.set_local_results(self.repository.search(query))
        return await self.gateway.issue_search(query)

    async def create_patient(self, patient: Patient, sync_remote: bool = True) -> Patient:
        """Store *patient* locally and, optionally, create it on the backend."""
        stored = self.repository.add(patient)
        self.search_controller.refresh_local()
        if sync_remote:
            await self.gateway.issue_create(stored)
        return stored

    async def deliver(self, sender: str, text: str) -> None:
        """Feed one inbound mesh text (for transports that push rather than call back)."""
        await self.gateway.handle_message(sender, text)


def _default_node_id() -> str:
    """Generate a stable default node ID from the machine's hostname."""
    import socket

    return f"bitmedic-{socket.gethostname()}"
