"""
Stats batcher for evaluation, conversion and custom events.

Events are buffered in memory and flushed in batches: when the queue
reaches ``batch_size``, periodically if configured, on demand, and once more
at shutdown. Delivery is best effort; losing telemetry is acceptable,
blocking or failing the caller is not.
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional, Set

from togglebox.config import StatsConfig
from togglebox.errors import ToggleBoxError, classify_error
from togglebox.models import Event
from togglebox.transport import Transport

logger = logging.getLogger("togglebox.stats")

MAX_ATTEMPTS = 2


@dataclass
class FlushResult:
    """Outcome of one flush."""

    sent: int = 0
    requeued: int = 0
    dropped: int = 0
    error: Optional[ToggleBoxError] = None
    abandoned: bool = False

    @property
    def success(self) -> bool:
        return self.error is None and not self.abandoned


class StatsBatcher:
    """
    Thread-safe, bounded event queue with asynchronous batch delivery.

    ``track`` may be called from the event loop or from worker threads; it
    only appends under a short lock and, when the batch threshold is
    crossed, schedules a flush on the loop the batcher was started on.
    """

    def __init__(self, transport: Transport, config: Optional[StatsConfig] = None):
        self._transport = transport
        self._config = config or StatsConfig()
        self._queue: Deque[Event] = deque()
        self._lock = threading.Lock()
        self._flush_lock: Optional[asyncio.Lock] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Future] = set()
        self._closing = False

        self._tracked = 0
        self._sent = 0
        self._dropped = 0
        self._failed_flushes = 0

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def start(self) -> None:
        """Bind to the running loop and start periodic flushing if configured."""
        self._loop = asyncio.get_running_loop()
        if self._config.enabled and self._config.flush_interval_ms > 0:
            self._flush_task = asyncio.create_task(self._flush_loop())

    def track(self, event: Event) -> None:
        """Queue an event. Never blocks on I/O and never raises."""
        if not self._config.enabled or self._closing:
            return

        try:
            with self._lock:
                self._queue.append(event)
                self._tracked += 1
                overflow = len(self._queue) - self._config.max_queue_size
                for _ in range(max(0, overflow)):
                    self._queue.popleft()
                    self._dropped += 1
                threshold_reached = len(self._queue) >= self._config.batch_size

            if overflow > 0:
                logger.warning(f"Stats queue full, dropped {overflow} oldest event(s)")
            if threshold_reached:
                self._schedule_flush()
        except Exception as e:
            logger.warning(f"Failed to track event: {e}")

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(self._flush_quiet())
            with self._lock:
                self._pending.add(task)
            task.add_done_callback(self._forget)
            return

        # Called from a thread without a loop: hand off to the bound loop
        if self._loop is not None and self._loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._flush_quiet(), self._loop)
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._forget)
        # Otherwise the events wait for the next explicit or final flush

    def _forget(self, future) -> None:
        with self._lock:
            self._pending.discard(future)

    async def flush(self) -> FlushResult:
        """
        Drain the queue and send it as one batch.

        On failure, events on their first attempt are put back at the front
        of the queue; events that already failed once are dropped.
        """
        if self._flush_lock is None:
            self._flush_lock = asyncio.Lock()

        async with self._flush_lock:
            with self._lock:
                batch = list(self._queue)
                self._queue.clear()

            if not batch:
                return FlushResult()

            try:
                await self._transport.post_events([event.to_dict() for event in batch])
            except asyncio.CancelledError:
                with self._lock:
                    self._dropped += len(batch)
                logger.debug(f"Flush cancelled, dropped {len(batch)} event(s) in flight")
                raise
            except Exception as e:
                error = classify_error(e)
                return self._handle_failure(batch, error)

            self._sent += len(batch)
            logger.debug(f"Flushed {len(batch)} event(s)")
            return FlushResult(sent=len(batch))

    def _handle_failure(self, batch: "list[Event]", error: ToggleBoxError) -> FlushResult:
        self._failed_flushes += 1
        retry = []
        dropped = 0
        for event in batch:
            event.attempts += 1
            if event.attempts < MAX_ATTEMPTS:
                retry.append(event)
            else:
                dropped += 1

        with self._lock:
            self._queue.extendleft(reversed(retry))
            overflow = len(self._queue) - self._config.max_queue_size
            for _ in range(max(0, overflow)):
                self._queue.popleft()
                dropped += 1
            self._dropped += dropped

        requeued = len(retry) - max(0, overflow)
        logger.warning(
            f"Stats flush failed ({error.message}): requeued {requeued}, dropped {dropped}"
        )
        return FlushResult(requeued=requeued, dropped=dropped, error=error)

    async def _flush_quiet(self) -> None:
        """Flush without raising."""
        try:
            await self.flush()
        except Exception as e:
            logger.warning(f"Background stats flush error: {e}")

    async def _flush_loop(self) -> None:
        interval = self._config.flush_interval_ms / 1000
        while not self._closing:
            await asyncio.sleep(interval)
            if self._closing:
                break
            await self._flush_quiet()

    async def shutdown(
        self,
        grace_period_ms: Optional[int] = None,
        flush: bool = True,
    ) -> FlushResult:
        """
        Stop accepting events and flush what is queued.

        The final flush, including any flush already in flight, is bounded by
        the grace period; past it the remaining work is abandoned. With
        ``flush=False`` queued events are discarded.
        """
        self._closing = True
        grace = (
            self._config.shutdown_grace_ms if grace_period_ms is None else grace_period_ms
        ) / 1000

        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        if not flush:
            with self._lock:
                discarded = len(self._queue)
                self._queue.clear()
                self._dropped += discarded
            if discarded:
                logger.debug(f"Discarded {discarded} unflushed event(s) on shutdown")
            return FlushResult(dropped=discarded)

        async def drain() -> FlushResult:
            with self._lock:
                inflight = list(self._pending)
            pending = [
                f if isinstance(f, asyncio.Future) else asyncio.wrap_future(f) for f in inflight
            ]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            return await self.flush()

        dropped_before = self._dropped
        try:
            return await asyncio.wait_for(drain(), timeout=grace)
        except asyncio.TimeoutError:
            # Cancelled flushes have already counted the batches they held
            with self._lock:
                self._dropped += len(self._queue)
                self._queue.clear()
                dropped = self._dropped - dropped_before
            logger.warning(
                f"Stats flush did not finish within {grace:.1f}s, abandoned {dropped} event(s)"
            )
            return FlushResult(dropped=dropped, abandoned=True)

    @property
    def queue_size(self) -> int:
        """Get the current number of buffered events."""
        return len(self._queue)

    def get_stats(self) -> Dict[str, Any]:
        """Return counters for tracked, sent and dropped events."""
        return {
            "queued": len(self._queue),
            "tracked": self._tracked,
            "sent": self._sent,
            "dropped": self._dropped,
            "failedFlushes": self._failed_flushes,
        }
