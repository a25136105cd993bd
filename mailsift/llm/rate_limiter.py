"""Rate limiting for generation backend calls.

Responsibilities:
- Enforce a requests-per-window cap and a minimum spacing between calls.
- Keep pacing state in one injectable instance shared by all invokers of a run,
  since the backend limit applies to the whole API key.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from time import monotonic
from typing import Awaitable, Callable

from ..telemetry.logger import log_event


@dataclass(slots=True)
class RateLimiter:
    """Window-counter plus minimum-interval limiter used around backend requests."""

    max_requests_per_window: int = 20
    min_interval_seconds: float = 4.0
    window_seconds: float = 60.0
    clock: Callable[[], float] = monotonic
    sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep
    _window_start: float | None = None
    _request_count: int = 0
    _last_request_at: float | None = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def acquire(self) -> None:
        """Wait until both pacing constraints allow a call, then record it."""

        async with self._lock:
            now = self.clock()
            if self._window_start is None or now - self._window_start >= self.window_seconds:
                self._window_start = now
                self._request_count = 0

            window_wait = 0.0
            if self.max_requests_per_window > 0 and (
                self._request_count >= self.max_requests_per_window
            ):
                window_wait = self._window_start + self.window_seconds - now

            interval_wait = 0.0
            if self._last_request_at is not None and self.min_interval_seconds > 0.0:
                interval_wait = self._last_request_at + self.min_interval_seconds - now

            wait_seconds = max(window_wait, interval_wait)
            if wait_seconds > 0.0:
                log_event(
                    "DEBUG",
                    "rate-limit",
                    "wait",
                    seconds=f"{wait_seconds:.2f}",
                    reason="window" if window_wait >= interval_wait else "interval",
                )
                await self.sleeper(wait_seconds)
                now = self.clock()
                if now - self._window_start >= self.window_seconds:
                    self._window_start = now
                    self._request_count = 0

            self._request_count += 1
            self._last_request_at = now

    @property
    def request_count(self) -> int:
        """Return calls recorded in the current window."""

        return self._request_count
