"""User-facing search flow.

Local results are published as soon as the query changes. The remote search
(mesh broadcast plus, when online, a direct backend call) waits for the user
to stop typing for ``debounce`` seconds, and is skipped for very short
queries.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from bitmedic.gateway.aggregator import ResultAggregator
from bitmedic.gateway.gateway import MeshGateway
from bitmedic.gateway.tracker import RequestKind
from bitmedic.mesh.resilience import supervised_task
from bitmedic.store.repository import PatientRepository


class SearchController:
    def __init__(
        self,
        repository: PatientRepository,
        aggregator: ResultAggregator,
        gateway: MeshGateway,
        *,
        debounce: float = 1.0,
        min_query_length: int = 2,
    ):
        self.repository = repository
        self.aggregator = aggregator
        self.gateway = gateway
        self.debounce = debounce
        self.min_query_length = min_query_length
        self._pending: asyncio.Task | None = None

    @property
    def pending(self) -> asyncio.Task | None:
        """The debounce task waiting to issue a remote search, if any."""
        if self._pending is not None and self._pending.done():
            return None
        return self._pending

    def set_query(self, query: str) -> None:
        """Show local matches for *query* and schedule the remote search."""
        self.cancel()
        query = query.strip()

        if not self.gateway.tracker.is_current(RequestKind.SEARCH, query):
            self.gateway.cancel_search()
        self.aggregator.set_query(query)
        self.aggregator.set_local_results(self.repository.search(query))

        if not query:
            self.aggregator.clear_remote()
            return
        if len(query) < self.min_query_length:
            return
        self._pending = supervised_task(self._issue_later(query), name="search-debounce")

    def clear(self) -> None:
        self.set_query("")

    def refresh_local(self) -> None:
        """Re-run the local search after the store changed."""
        self.aggregator.set_local_results(self.repository.search(self.aggregator.query))

    async def _issue_later(self, query: str) -> None:
        if self.debounce > 0:
            await asyncio.sleep(self.debounce)
        logger.debug("[Search] debounce elapsed, issuing remote search for {!r}", query)
        await self.gateway.issue_search(query)

    def cancel(self) -> None:
        """Drop the pending debounce, if any."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
