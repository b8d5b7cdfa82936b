"""
IdempotencyGuard: at-most-once execution of business operations.

Keyed by a business key such as "<session_id>:payment_and_service".
- A call whose key is already in flight joins the running call.
- After a success the result is cached; later calls get it back with
  replayed=True and nothing is re-sent.
- Failures are not cached, so the operator can retry.

Memory is bounded with FIFO eviction of cached successes.

Thread-safe for single-threaded asyncio usage (no internal locks).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from swapflow.core.json_utils import dumps
from swapflow.execution.correlation import CorrelationResult

if TYPE_CHECKING:
    from swapflow.monitoring.metrics_rich import EngineMetrics

log = logging.getLogger("swapflow")


def business_key(session_id: str, operation: str) -> str:
    return f"{session_id}:{operation}"


class IdempotencyGuard:
    """
    Single-flight plus success cache for correlated operations.

    Usage:
        guard = IdempotencyGuard()
        result = await guard.run(key, lambda: client.request(subject, payload))
    """

    def __init__(
        self,
        max_entries: int = 1000,
        log_event: Optional[Callable[..., None]] = None,
        metrics: Optional["EngineMetrics"] = None,
    ) -> None:
        self.max_entries = max_entries
        self.metrics = metrics
        self._completed: Dict[str, CorrelationResult] = {}
        self._order: List[str] = []  # For FIFO eviction
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._log_event = log_event or self._default_log
        self._stats = {
            "executed": 0,
            "joined": 0,
            "replayed": 0,
            "failures": 0,
            "evictions": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        """Default logging implementation."""
        log.debug(dumps({"event": event, **kwargs}))

    async def run(
        self,
        key: str,
        operation: Callable[[], Awaitable[CorrelationResult]],
        action: str = "",
    ) -> CorrelationResult:
        cached = self._completed.get(key)
        if cached is not None:
            self._stats["replayed"] += 1
            if self.metrics:
                self.metrics.idempotent_replays.labels(action=action or key.rsplit(":", 1)[-1]).inc()
            self._log_event("idempotent_replay", key=key, correlation_id=cached.correlation_id)
            return cached.as_replay()

        running = self._in_flight.get(key)
        if running is not None:
            self._stats["joined"] += 1
            self._log_event("idempotent_join", key=key)
            return await asyncio.shield(running)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        self._stats["executed"] += 1
        try:
            result = await operation()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Joined waiters see the exception; mark retrieved for the no-joiner case
            future.exception()
            raise
        finally:
            self._in_flight.pop(key, None)

        if result.success:
            self._remember(key, result)
        else:
            self._stats["failures"] += 1
        future.set_result(result)
        return result

    def _remember(self, key: str, result: CorrelationResult) -> None:
        if len(self._order) >= self.max_entries:
            old_key = self._order.pop(0)
            self._completed.pop(old_key, None)
            self._stats["evictions"] += 1
        self._completed[key] = result
        self._order.append(key)

    def completed(self, key: str) -> Optional[CorrelationResult]:
        return self._completed.get(key)

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def forget(self, key: str) -> None:
        if self._completed.pop(key, None) is not None:
            self._order.remove(key)

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "cached": len(self._completed),
            "in_flight": len(self._in_flight),
            "max_entries": self.max_entries,
        }
