"""
ratequeue - in-process admission control for async work

Queues awaitable requests and runs them only while the number of requests
counted in the trailing minute stays under a fixed ceiling.
"""

__version__ = "1.0.0"

from ratequeue.queue.rate_limiter import (
    AdmissionMode,
    QueueClosedError,
    QueueError,
    RateLimitConfig,
    RateLimitedQueue,
)

__all__ = [
    "AdmissionMode",
    "QueueClosedError",
    "QueueError",
    "RateLimitConfig",
    "RateLimitedQueue",
]
