"""Merged view of local and remote search results.

Local results arrive synchronously from the repository; remote results
arrive whenever peers (or the backend) answer. The aggregator keeps one entry
per source, replacing rather than appending, and renders them as ordered
sections: local first, then sources by most recent arrival.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from loguru import logger

from bitmedic.gateway.events import EventHub, ResultsUpdated
from bitmedic.store.models import Patient


@dataclass
class RemoteResult:
    """Latest record list from one peer."""

    peer_id: str
    records: list[Patient] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)


@dataclass
class ResultSection:
    title: str
    records: list[Patient]
    is_local: bool


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


class ResultAggregator:
    """Owns the Remote Result Set and the current local results."""

    LOCAL_TITLE = "Local Database"

    def __init__(self, events: EventHub | None = None):
        self.events = events
        self._query = ""
        self._local: list[Patient] = []
        self._remote: dict[str, RemoteResult] = {}
        self.loading = False

    # -- mutations -----------------------------------------------------------

    def set_query(self, query: str) -> None:
        """Make *query* current; a different query discards remote results."""
        if query.strip().lower() != self._query.strip().lower() and self._remote:
            logger.debug("[Aggregator] query changed, dropping {} remote entries", len(self._remote))
            self._remote.clear()
        self._query = query
        self._notify()

    def set_local_results(self, records: list[Patient]) -> None:
        self._local = list(records)
        self._notify()

    def merge_remote(
        self,
        peer_id: str,
        records: list[Patient],
        timestamp: float | None = None,
    ) -> None:
        """Store *records* as *peer_id*'s contribution, replacing any previous one."""
        self._remote[peer_id] = RemoteResult(
            peer_id=peer_id,
            records=list(records),
            timestamp=timestamp if timestamp is not None else time.time(),
        )
        logger.info("[Aggregator] {} records from {}", len(records), peer_id)
        self._notify()

    def set_loading(self, loading: bool) -> None:
        self.loading = loading

    def clear_remote(self) -> None:
        self._remote.clear()
        self._notify()

    def clear(self) -> None:
        """Reset to the empty-query state."""
        self._query = ""
        self._local = []
        self._remote.clear()
        self.loading = False
        self._notify()

    # -- queries -------------------------------------------------------------

    @property
    def query(self) -> str:
        return self._query

    @property
    def has_query(self) -> bool:
        return bool(self._query.strip())

    @property
    def local_count(self) -> int:
        return len(self._local)

    @property
    def remote_count(self) -> int:
        return sum(len(r.records) for r in self._remote.values())

    @property
    def peer_count(self) -> int:
        """Number of sources that have answered (including empty answers)."""
        return len(self._remote)

    def remote_results(self) -> list[RemoteResult]:
        return sorted(self._remote.values(), key=lambda r: r.timestamp, reverse=True)

    def sections(self) -> list[ResultSection]:
        sections: list[ResultSection] = []
        if self._local:
            sections.append(ResultSection(self.LOCAL_TITLE, list(self._local), is_local=True))
        for result in self.remote_results():
            if result.records:
                sections.append(ResultSection(f"From {result.peer_id}", list(result.records), is_local=False))
        return sections

    def display_message(self) -> str:
        local = self.local_count
        remote = self.remote_count
        if self.has_query:
            if local + remote == 0:
                return f"No patients found for '{self._query}'"
            message = _plural(local, "local patient")
            if remote > 0:
                message += f", {remote} from {_plural(self.peer_count, 'peer')}"
            return message
        if local == 0:
            return "No patients in local database"
        return f"{_plural(local, 'patient')} in local database"

    # -- internals -----------------------------------------------------------

    def _notify(self) -> None:
        if self.events is not None:
            self.events.emit(ResultsUpdated(
                query=self._query,
                local_count=self.local_count,
                remote_count=self.remote_count,
                peer_count=self.peer_count,
            ))
