"""
Rate-limited request queue.

Defers requests until the trailing window has room for them.
"""

from ratequeue.queue.rate_limiter import (
    AdmissionMode,
    QueueClosedError,
    QueueError,
    QueuedRequest,
    QueueStats,
    RateLimitConfig,
    RateLimitedQueue,
)

__all__ = [
    "AdmissionMode",
    "QueueClosedError",
    "QueueError",
    "QueuedRequest",
    "QueueStats",
    "RateLimitConfig",
    "RateLimitedQueue",
]
