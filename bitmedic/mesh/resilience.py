"""Fault-tolerance helpers shared by the mesh and gateway layers.

Provides:
- ``RetryPolicy`` / ``retry_send`` — exponential backoff for mesh broadcasts
- ``Watchdog`` — periodic async loop (connectivity probing)
- ``supervised_task`` — create_task wrapper that logs failures
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Exponential-backoff parameters.

    Parameters
    ----------
    max_retries:
        Attempts after the first one (0 = single attempt).
    base_delay:
        Delay in seconds before the first retry.
    max_delay:
        Upper bound for any single delay.
    backoff_factor:
        Multiplier applied after each retry.
    """

    max_retries: int = 2
    base_delay: float = 0.25
    max_delay: float = 5.0
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Return the delay (seconds) before retry *attempt* (0-based)."""
        return min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)


DEFAULT_RETRY = RetryPolicy()


async def retry_send(
    send_fn: Callable[..., Awaitable[bool]],
    *args: Any,
    policy: RetryPolicy = DEFAULT_RETRY,
    label: str = "send",
    **kwargs: Any,
) -> bool:
    """Call *send_fn* until it returns ``True`` or the policy is exhausted."""
    attempts = 1 + policy.max_retries
    for attempt in range(attempts):
        try:
            if await send_fn(*args, **kwargs):
                if attempt > 0:
                    logger.info("[Resilience] {} succeeded on attempt {}/{}", label, attempt + 1, attempts)
                return True
        except Exception as exc:
            logger.warning("[Resilience] {} attempt {}/{} raised: {}", label, attempt + 1, attempts, exc)

        if attempt < policy.max_retries:
            delay = policy.delay_for(attempt)
            logger.debug("[Resilience] {} failed, retrying in {:.2f}s", label, delay)
            await asyncio.sleep(delay)

    logger.warning("[Resilience] {} failed after {} attempts", label, attempts)
    return False


# ---------------------------------------------------------------------------
# Watchdog: periodic async loop
# ---------------------------------------------------------------------------

class Watchdog:
    """Invoke *callback* every *interval* seconds in a background task.

    The callback may be sync or async. Exceptions are logged and the loop
    keeps running.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Any],
        interval: float = 10.0,
    ) -> None:
        self.name = name
        self._callback = callback
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                result = self._callback()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[Watchdog/{}] callback error: {}", self.name, exc)

    def start(self) -> None:
        if not self.running:
            self._task = supervised_task(self._loop(), name=f"watchdog-{self.name}")
            logger.debug("[Watchdog/{}] started (interval={:.0f}s)", self.name, self._interval)

    def stop(self) -> None:
        if self.running:
            self._task.cancel()
            logger.debug("[Watchdog/{}] stopped", self.name)
        self._task = None


# ---------------------------------------------------------------------------
# Supervised task
# ---------------------------------------------------------------------------

def supervised_task(coro: Awaitable[Any], *, name: str = "") -> asyncio.Task:
    """``asyncio.create_task`` that logs an unhandled failure instead of
    leaving it to the "exception was never retrieved" warning."""
    task = asyncio.create_task(coro, name=name or None)

    def _on_done(t: asyncio.Task) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error("[Resilience] supervised task {!r} failed: {!r}", t.get_name(), exc)

    task.add_done_callback(_on_done)
    return task
