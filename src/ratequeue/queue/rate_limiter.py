"""
Rate limiting and request queue management.

Admits queued requests only while the number of requests counted in the
trailing window stays below the configured ceiling; the rest wait in FIFO
order until capacity frees up.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger()

T = TypeVar("T")

RequestFunction = Callable[[], Union[Awaitable[T], T]]


class QueueError(Exception):
    """Base exception for errors raised by the queue itself."""


class QueueClosedError(QueueError):
    """Raised when a request cannot run because the queue was closed."""


class AdmissionMode(str, Enum):
    """What counts against the ceiling when admitting a request."""

    RESERVED = "reserved"  # completions in window + requests in flight
    COMPLETIONS = "completions"  # completions in window only


class RateLimitConfig(BaseModel):
    """Configuration for the rate-limited queue."""

    model_config = ConfigDict(frozen=True)

    max_requests_per_minute: int = Field(
        gt=0, description="Maximum requests counted in one window"
    )
    window_seconds: float = Field(default=60.0, gt=0, description="Window length")
    report_interval_seconds: float = Field(
        default=60.0, gt=0, description="Interval between status reports"
    )
    admission_mode: AdmissionMode = Field(
        default=AdmissionMode.RESERVED,
        description="Whether in-flight requests hold a slot in the window",
    )


@dataclass
class QueuedRequest(Generic[T]):
    """A request waiting in the queue."""

    request_id: str
    timestamp: float
    callback: RequestFunction
    future: asyncio.Future


@dataclass
class QueueStats:
    """Queue statistics."""

    total_queued: int = 0
    total_dispatched: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    total_discarded: int = 0
    current_queue_size: int = 0
    active_requests: int = 0
    avg_wait_time_ms: float = 0.0
    estimated_minutes: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_queued": self.total_queued,
            "total_dispatched": self.total_dispatched,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "total_discarded": self.total_discarded,
            "current_queue_size": self.current_queue_size,
            "active_requests": self.active_requests,
            "avg_wait_time_ms": round(self.avg_wait_time_ms, 2),
            "estimated_minutes": round(self.estimated_minutes, 2),
        }


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class RateLimitedQueue:
    """
    FIFO request queue throttled by a sliding completion window.

    Features:
    - Arrival-order dispatch
    - Per-request futures that carry the request's own result or exception
    - Batch submission with fail-fast aggregation
    - Periodic status reporting
    - Drain or discard on close

    All state is owned by the event loop the queue runs on; mutations happen
    between suspension points, so no lock is needed.

    Example:
        async with RateLimitedQueue(max_requests_per_minute=30) as queue:
            # Single request
            result = await queue.enqueue(lambda: client.fetch(url))

            # Batch, results in input order
            results = await queue.process_all(
                [lambda u=u: client.fetch(u) for u in urls]
            )
    """

    def __init__(
        self,
        max_requests_per_minute: int | None = None,
        *,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the queue.

        Args:
            max_requests_per_minute: Ceiling for requests counted per window
            config: Full configuration (overrides max_requests_per_minute)
            clock: Zero-argument callable returning the current time in seconds

        Raises:
            ValueError: If the ceiling is missing or not positive
        """
        if config is None:
            if max_requests_per_minute is None:
                raise ValueError("max_requests_per_minute or config is required")
            config = RateLimitConfig(max_requests_per_minute=max_requests_per_minute)
        self.config = config
        self._clock = clock

        self._queue: deque[QueuedRequest] = deque()
        self._timestamps: deque[float] = deque()
        self._active_requests = 0
        self._in_flight: set[asyncio.Task] = set()

        self._stats = QueueStats()
        self._total_wait_time = 0.0
        self._request_counter = 0

        self._closed = False
        self._reporter_task: asyncio.Task | None = None
        self._wakeup_handle: asyncio.TimerHandle | None = None
        self._idle: asyncio.Event | None = None

    @classmethod
    def from_settings(cls, settings: Any = None, **kwargs: Any) -> "RateLimitedQueue":
        """Build a queue from environment-driven settings."""
        from ratequeue.core.config import get_settings

        settings = settings or get_settings()
        return cls(config=settings.to_rate_limit_config(), **kwargs)

    async def __aenter__(self) -> "RateLimitedQueue":
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close(drain=True)

    @property
    def max_requests_per_minute(self) -> int:
        return self.config.max_requests_per_minute

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def active_requests(self) -> int:
        return self._active_requests

    @property
    def window_count(self) -> int:
        """Completions recorded in the current window."""
        self._cleanup_old_timestamps()
        return len(self._timestamps)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """
        Start the periodic status reporter.

        The reporter task runs until close() is awaited and holds a reference
        to the queue, so a queue used outside ``async with`` must be closed
        explicitly.
        """
        if self._reporter_task is not None or self._closed:
            return
        self._reporter_task = asyncio.get_running_loop().create_task(
            self._report_status()
        )

    def enqueue(self, callback: RequestFunction) -> asyncio.Future:
        """
        Submit a request to the queue.

        Starts the status reporter on first use; see start().

        Args:
            callback: Zero-argument callable returning an awaitable or a value

        Returns:
            Future that resolves with the callback's result or exception, or
            is cancelled if the callback raises CancelledError
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        if self._closed:
            future.set_exception(QueueClosedError("Queue is closed"))
            return future

        self.start()

        self._request_counter += 1
        request = QueuedRequest(
            request_id=f"req_{self._request_counter}",
            timestamp=self._clock(),
            callback=callback,
            future=future,
        )
        self._queue.append(request)
        self._stats.total_queued += 1

        self.process_queue()
        return future

    async def process_all(self, callbacks: Iterable[RequestFunction]) -> list[Any]:
        """
        Submit a batch of requests and wait for all of them.

        Args:
            callbacks: Zero-argument callables, submitted in order

        Returns:
            Results in the same order as the callbacks

        Raises:
            The first exception raised by any request in the batch
        """
        futures = [self.enqueue(callback) for callback in callbacks]
        for future in futures:
            future.add_done_callback(_consume_exception)
        return list(await asyncio.gather(*futures))

    def process_queue(self) -> None:
        """Dispatch queued requests while the window has capacity."""
        self._cleanup_old_timestamps()

        while self._queue and self._can_process_more_requests():
            self._dispatch(self._queue.popleft())

        if self._queue:
            self._schedule_wakeup()
        self._check_idle()

    async def close(self, drain: bool = True) -> None:
        """
        Close the queue.

        Args:
            drain: Run every queued request before returning. If False, queued
                requests are rejected with QueueClosedError instead.
        """
        if not self._closed:
            self._closed = True
            logger.info(
                "queue.closed",
                drain=drain,
                queue_size=len(self._queue),
                active_requests=self._active_requests,
            )

        if not drain:
            self._discard_pending()

        if self._queue or self._in_flight:
            # Shared by overlapping close() calls
            if self._idle is None:
                self._idle = asyncio.Event()
            self.process_queue()
            await self._idle.wait()

        if self._wakeup_handle is not None:
            self._wakeup_handle.cancel()
            self._wakeup_handle = None

        if self._reporter_task is not None:
            self._reporter_task.cancel()
            try:
                await self._reporter_task
            except asyncio.CancelledError:
                pass
            self._reporter_task = None

    def get_stats(self) -> QueueStats:
        """Get queue statistics."""
        self._stats.current_queue_size = len(self._queue)
        self._stats.active_requests = self._active_requests
        self._stats.estimated_minutes = self._estimated_minutes()
        return self._stats

    def _can_process_more_requests(self) -> bool:
        used = len(self._timestamps)
        if self.config.admission_mode is AdmissionMode.RESERVED:
            used += self._active_requests
        return used < self.config.max_requests_per_minute

    def _cleanup_old_timestamps(self) -> None:
        cutoff = self._clock() - self.config.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _estimated_minutes(self) -> float:
        return len(self._queue) / self.config.max_requests_per_minute

    def _dispatch(self, request: QueuedRequest) -> None:
        self._active_requests += 1
        self._stats.total_dispatched += 1
        self._total_wait_time += (self._clock() - request.timestamp) * 1000
        self._stats.avg_wait_time_ms = self._total_wait_time / self._stats.total_dispatched

        logger.debug(
            "queue.dispatched",
            request_id=request.request_id,
            queue_size=len(self._queue),
            active_requests=self._active_requests,
        )

        task = asyncio.get_running_loop().create_task(self._run(request))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run(self, request: QueuedRequest) -> None:
        try:
            with structlog.contextvars.bound_contextvars(
                request_id=request.request_id
            ):
                try:
                    outcome = request.callback()
                except Exception as e:
                    logger.error(
                        "queue.dispatch_failed",
                        request_id=request.request_id,
                        error=str(e),
                        exc_info=True,
                    )
                    raise

                if inspect.isawaitable(outcome):
                    outcome = await outcome

        except asyncio.CancelledError:
            self._stats.total_failed += 1
            logger.warning("queue.request_cancelled", request_id=request.request_id)
            request.future.cancel()
            raise
        except Exception as e:
            self._stats.total_failed += 1
            logger.warning(
                "queue.request_failed",
                request_id=request.request_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            if not request.future.done():
                request.future.set_exception(e)
        else:
            self._stats.total_succeeded += 1
            if not request.future.done():
                request.future.set_result(outcome)
        finally:
            self._active_requests -= 1
            self._timestamps.append(self._clock())
            self.process_queue()

    def _schedule_wakeup(self) -> None:
        """Run a dispatch pass once the oldest completion leaves the window."""
        if not self._timestamps:
            # Only in-flight requests hold the window; their completion re-runs the pass.
            return

        delay = max(
            self._timestamps[0] + self.config.window_seconds - self._clock(), 0.0
        )
        if self._wakeup_handle is not None:
            self._wakeup_handle.cancel()
        self._wakeup_handle = asyncio.get_running_loop().call_later(
            delay, self._on_wakeup
        )

    def _on_wakeup(self) -> None:
        self._wakeup_handle = None
        self.process_queue()

    def _discard_pending(self) -> None:
        while self._queue:
            request = self._queue.popleft()
            self._stats.total_discarded += 1
            logger.warning("queue.discarded", request_id=request.request_id)
            if not request.future.done():
                request.future.set_exception(
                    QueueClosedError("Queue closed before request was dispatched")
                )

    def _check_idle(self) -> None:
        if self._idle is not None and not self._queue and not self._active_requests:
            self._idle.set()

    async def _report_status(self) -> None:
        """Prune the window and log queue depth on a fixed interval."""
        interval = self.config.report_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self._cleanup_old_timestamps()
                logger.debug(
                    "queue.status",
                    queue_size=len(self._queue),
                    rate_limit=self.config.max_requests_per_minute,
                    active_requests=self._active_requests,
                    window_count=len(self._timestamps),
                    estimated_minutes=round(self._estimated_minutes(), 2),
                )
            except Exception:
                logger.exception("queue.status_failed")
