"""
Single-flight execution for definition refreshes.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar

T = TypeVar("T")


@dataclass
class DedupConfig:
    """Configuration for request deduplication."""

    enabled: bool = True
    """Collapse concurrent calls with the same key into one."""


@dataclass
class DedupStats:
    """Counters for ``RequestDeduplicator``."""

    total_requests: int = 0
    deduplicated_requests: int = 0
    inflight_count: int = 0

    @property
    def dedup_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.deduplicated_requests / self.total_requests


class RequestDeduplicator:
    """
    Collapses concurrent identical requests into one.

    The first caller for a key becomes the leader and runs the request;
    callers arriving while it is in flight await the leader's future and get
    the same result or the same exception. Once it settles the key is free
    and the next call starts over.

    Lookup and registration happen without an ``await`` in between, so on a
    single event loop no second leader can slip in.

    Example:
        ```python
        dedup = RequestDeduplicator()

        # One fetch, three results
        await asyncio.gather(
            dedup.dedupe("definitions", fetch),
            dedup.dedupe("definitions", fetch),
            dedup.dedupe("definitions", fetch),
        )
        ```
    """

    def __init__(self, config: Optional[DedupConfig] = None):
        self._enabled = (config or DedupConfig()).enabled
        self._inflight: Dict[str, "asyncio.Future[object]"] = {}
        self._stats = DedupStats()

    async def dedupe(self, key: str, request_fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``request_fn`` unless a request for ``key`` is already in flight.

        A waiter that is cancelled stops waiting; the shared request keeps
        running for everyone else. Cancelling the leader cancels the request
        and every waiter sees ``CancelledError``.
        """
        if not self._enabled:
            return await request_fn()

        self._stats.total_requests += 1
        shared = self._inflight.get(key)
        if shared is not None:
            self._stats.deduplicated_requests += 1
            return await asyncio.shield(shared)  # type: ignore[return-value]

        shared = asyncio.get_running_loop().create_future()
        self._inflight[key] = shared
        try:
            result = await request_fn()
        except asyncio.CancelledError:
            shared.cancel()
            raise
        except Exception as e:
            shared.set_exception(e)
            # Retrieved here so a leader-only failure is not reported as unhandled
            shared.exception()
            raise
        else:
            shared.set_result(result)
            return result
        finally:
            if self._inflight.get(key) is shared:
                del self._inflight[key]

    @property
    def inflight_count(self) -> int:
        """Number of keys with a request in flight."""
        return len(self._inflight)

    def get_stats(self) -> DedupStats:
        """Snapshot of the counters."""
        return DedupStats(
            total_requests=self._stats.total_requests,
            deduplicated_requests=self._stats.deduplicated_requests,
            inflight_count=len(self._inflight),
        )

    def reset_stats(self) -> None:
        """Reset statistics counters."""
        self._stats = DedupStats()
