#!/usr/bin/env python3
"""
Basic usage examples for ratequeue.

Uses a short window so the throttling is visible in a few seconds.
"""

import asyncio
import random
import time

from ratequeue import RateLimitConfig, RateLimitedQueue
from ratequeue.utils.logging import setup_logging


async def fake_request(i: int) -> str:
    await asyncio.sleep(random.uniform(0.05, 0.2))
    return f"response {i}"


async def single_requests():
    """Submit requests one at a time."""
    print("\n=== Single Requests ===\n")

    async with RateLimitedQueue(max_requests_per_minute=100) as queue:
        result = await queue.enqueue(lambda: fake_request(1))
        print(f"Result: {result}")
        print(f"Stats: {queue.get_stats().to_dict()}")


async def throttled_batch():
    """Run a batch larger than the ceiling."""
    print("\n=== Throttled Batch ===\n")

    config = RateLimitConfig(max_requests_per_minute=3, window_seconds=1.0)
    start = time.monotonic()

    async with RateLimitedQueue(config=config) as queue:
        results = await queue.process_all(
            [lambda i=i: fake_request(i) for i in range(9)]
        )

    print(f"Results: {results}")
    print(f"Elapsed: {time.monotonic() - start:.1f}s")


async def failing_batch():
    """A failing request rejects the whole batch."""
    print("\n=== Failing Batch ===\n")

    async def flaky(i: int) -> str:
        if i == 2:
            raise ConnectionError("upstream unavailable")
        return await fake_request(i)

    async with RateLimitedQueue(max_requests_per_minute=10) as queue:
        try:
            await queue.process_all([lambda i=i: flaky(i) for i in range(5)])
        except ConnectionError as e:
            print(f"Batch failed: {e}")


async def main():
    setup_logging(level="INFO", json_format=False)

    await single_requests()
    await throttled_batch()
    await failing_batch()


if __name__ == "__main__":
    asyncio.run(main())
