"""
Request spacing for the external leaderboard APIs.

The Nadeo services allow a fixed budget (2 requests/second). Calls are never dropped:
each caller waits until the minimum interval since the previous call has elapsed.
One spacer is shared by every client in the process so concurrent jobs stay under the budget together.
"""

from __future__ import annotations

import asyncio
import logging
import time

from record_alerts.config import settings

logger = logging.getLogger(__name__)


class RequestSpacer:
    """Async context manager that serializes entry and spaces it by ``min_interval`` seconds."""

    def __init__(self, min_interval: float, clock=time.monotonic, sleep=asyncio.sleep) -> None:
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: float | None = None
        self.calls = 0

    async def acquire(self) -> None:
        async with self._lock:
            if self._last_call is not None:
                wait = self.min_interval - (self._clock() - self._last_call)
                if wait > 0:
                    logger.debug("Rate limit: waiting %.3fs before next leaderboard call", wait)
                    await self._sleep(wait)
            self._last_call = self._clock()
            self.calls += 1

    async def __aenter__(self) -> "RequestSpacer":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


_spacer: RequestSpacer | None = None


def get_request_spacer() -> RequestSpacer:
    """Process-wide spacer built from settings.leaderboard_requests_per_second."""
    global _spacer
    if _spacer is None:
        _spacer = RequestSpacer(settings.leaderboard_min_interval)
    return _spacer
