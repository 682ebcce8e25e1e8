"""Internet reachability tracking.

The platform reports network-path changes through ``set_online()``; a path
being up does not guarantee the internet is reachable, so ``check()`` sends a
HEAD to a known URL and is also run periodically by a ``Watchdog``. Callers read
``online`` at the moment they decide, never once for a whole request.
"""

from __future__ import annotations

from typing import Any, Callable

import httpx
from loguru import logger

from bitmedic.mesh.resilience import Watchdog

ChangeCallback = Callable[[bool], Any]


class ConnectivityMonitor:
    """Current internet reachability as a boolean.

    Parameters
    ----------
    check_url:
        URL answered with ``HEAD``; a 2xx reply means online.
    check_timeout:
        Seconds before a check counts as failed.
    check_interval:
        Seconds between periodic checks once started (0 disables them).
    initial:
        State before the first check or path report.
    transport:
        Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        check_url: str = "https://www.google.com",
        check_timeout: float = 5.0,
        check_interval: float = 10.0,
        initial: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.check_url = check_url
        self.check_timeout = check_timeout
        self.check_interval = check_interval
        self._online = initial
        self._transport = transport
        self._callbacks: list[ChangeCallback] = []
        self._watchdog: Watchdog | None = None
        if check_interval > 0:
            self._watchdog = Watchdog("connectivity", self.check, interval=check_interval)

    @property
    def online(self) -> bool:
        return self._online

    def on_change(self, callback: ChangeCallback) -> None:
        """Register ``callback(online)`` for state transitions."""
        self._callbacks.append(callback)

    def set_online(self, online: bool) -> None:
        """Record a new state; callbacks fire only on transitions."""
        if online == self._online:
            return
        self._online = online
        logger.info("[Connectivity] internet {}", "available" if online else "unavailable")
        for cb in self._callbacks:
            try:
                cb(online)
            except Exception as exc:
                logger.error("[Connectivity] change callback error: {}", exc)

    async def check(self) -> bool:
        """Check internet reachability once and update the state."""
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.check_timeout),
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                resp = await client.head(self.check_url)
            reachable = resp.is_success
        except httpx.HTTPError as exc:
            logger.debug("[Connectivity] check failed: {}", exc)
            reachable = False
        self.set_online(reachable)
        return reachable

    def start(self) -> None:
        if self._watchdog is not None:
            self._watchdog.start()

    def stop(self) -> None:
        if self._watchdog is not None:
            self._watchdog.stop()
