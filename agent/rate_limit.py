"""
Sliding 60-second token and request budget for provider calls.

check_rate_limit() waits when a request would exceed the budget, but only a
bounded number of times: after max_wait_attempts the request is allowed
anyway (fail-open) so a mis-sized estimate can never deadlock the loop.
"""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from config import rate_limit_settings

logger = logging.getLogger(__name__)

WINDOW_MS = 60000


@dataclass
class UsageRecord:
    tokens: int
    timestamp: float  # ms
    request_id: str


@dataclass
class RateLimitUsage:
    tokens: int
    requests: int
    percent_used: int
    time_until_reset: float  # ms


def _new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class RateLimiter:
    """Rolling-window limiter. Clock returns seconds; internal bookkeeping is in ms."""

    def __init__(
        self,
        tokens_per_minute: int = rate_limit_settings.tokens_per_minute,
        requests_per_minute: int = rate_limit_settings.requests_per_minute,
        max_wait_attempts: int = rate_limit_settings.max_wait_attempts,
        min_wait_ms: int = rate_limit_settings.min_wait_ms,
        burst_threshold: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.tokens_per_minute = tokens_per_minute
        self.requests_per_minute = requests_per_minute or 50
        self.max_wait_attempts = max_wait_attempts
        self.min_wait_ms = min_wait_ms
        self.burst_threshold = burst_threshold or int(tokens_per_minute * rate_limit_settings.burst_threshold)
        self._clock = clock
        self._sleep = sleep
        self._usage: List[UsageRecord] = []
        self._lock = threading.Lock()
        self._waiting: Dict[str, asyncio.Event] = {}
        logger.info(f"Rate limiter initialized: {tokens_per_minute} tokens/min, "
                    f"{self.requests_per_minute} requests/min")

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _cleanup(self, now: float) -> None:
        cutoff = now - WINDOW_MS
        self._usage = [u for u in self._usage if u.timestamp > cutoff]

    def _window_usage(self, now: float):
        cutoff = now - WINDOW_MS
        recent = [u for u in self._usage if u.timestamp > cutoff]
        return sum(u.tokens for u in recent), len(recent)

    def calculate_wait_time(self, estimated_tokens: int) -> float:
        """Milliseconds until enough of the oldest window entries age out."""
        now = self._now_ms()
        with self._lock:
            self._cleanup(now)
            if not self._usage:
                return 0.0
            tokens, requests = self._window_usage(now)
            ordered = sorted(self._usage, key=lambda u: u.timestamp)

        wait = 0.0
        needed = tokens + estimated_tokens - self.tokens_per_minute
        if needed > 0:
            oldest_relevant = now
            for record in ordered:
                needed -= record.tokens
                oldest_relevant = record.timestamp
                if needed <= 0:
                    break
            wait = max(0.0, oldest_relevant + WINDOW_MS - now)

        if requests >= self.requests_per_minute:
            # Enough requests must expire to open one slot
            surplus = requests - self.requests_per_minute
            wait = max(wait, ordered[surplus].timestamp + WINDOW_MS - now)
        return wait

    async def check_rate_limit(self, estimated_tokens: int, request_id: Optional[str] = None) -> bool:
        """
        Wait until the request fits the budget. Always returns True eventually:
        after max_wait_attempts it fails open, and a wait released by
        cancel_waiting_requests returns at once so the caller can re-check
        whether it still wants to send.
        """
        request_id = request_id or _new_request_id()
        for attempt in range(self.max_wait_attempts):
            now = self._now_ms()
            with self._lock:
                self._cleanup(now)
                tokens, requests = self._window_usage(now)

            exceeds_tokens = tokens + estimated_tokens > self.tokens_per_minute
            exceeds_requests = requests >= self.requests_per_minute
            logger.debug(
                f"Rate check: {estimated_tokens} tokens requested, usage {tokens}/{self.tokens_per_minute} "
                f"tokens, {requests}/{self.requests_per_minute} requests (attempt {attempt + 1})"
            )
            if not (exceeds_tokens or exceeds_requests):
                return True

            wait_ms = self.calculate_wait_time(estimated_tokens)
            if wait_ms <= self.min_wait_ms:
                logger.debug(f"Wait time minimal ({wait_ms:.0f}ms), allowing request")
                return True

            logger.info(f"Rate limit reached, waiting {wait_ms / 1000:.1f}s for {estimated_tokens} tokens")
            if await self._wait(wait_ms, request_id):
                logger.info(f"Wait for {request_id} cancelled, releasing request")
                return True

        logger.warning("Max rate limit attempts reached, allowing request to prevent deadlock")
        return True

    async def _wait(self, wait_ms: float, request_id: str) -> bool:
        """Sleep for wait_ms unless cancelled first. True if cancelled."""
        cancelled = asyncio.Event()
        self._waiting[request_id] = cancelled
        sleeper = asyncio.ensure_future(self._sleep(wait_ms / 1000))
        watcher = asyncio.ensure_future(cancelled.wait())
        try:
            await asyncio.wait({sleeper, watcher}, return_when=asyncio.FIRST_COMPLETED)
            return cancelled.is_set()
        finally:
            for task in (sleeper, watcher):
                if not task.done():
                    task.cancel()
            self._waiting.pop(request_id, None)

    def record_usage(self, actual_tokens: int, request_id: Optional[str] = None) -> None:
        now = self._now_ms()
        with self._lock:
            self._usage.append(UsageRecord(actual_tokens, now, request_id or _new_request_id()))
            tokens, requests = self._window_usage(now)
        percent = round(tokens / self.tokens_per_minute * 100) if self.tokens_per_minute else 0
        logger.debug(f"Recorded usage: {actual_tokens} tokens, window {tokens}/{self.tokens_per_minute} ({percent}%)")
        if tokens >= self.burst_threshold:
            logger.warning(f"Approaching rate limit ({percent}% used, {requests} requests)")

    def get_current_usage(self) -> RateLimitUsage:
        now = self._now_ms()
        with self._lock:
            self._cleanup(now)
            tokens, requests = self._window_usage(now)
            oldest = min((u.timestamp for u in self._usage), default=now)
        return RateLimitUsage(
            tokens=tokens,
            requests=requests,
            percent_used=round(tokens / self.tokens_per_minute * 100) if self.tokens_per_minute else 0,
            time_until_reset=max(0.0, WINDOW_MS - (now - oldest)),
        )

    def cancel_waiting_requests(self) -> None:
        """Release every waiter immediately."""
        for request_id, event in list(self._waiting.items()):
            logger.info(f"Cancelling waiting request: {request_id}")
            event.set()
        self._waiting.clear()

    def reset(self) -> None:
        with self._lock:
            self._usage = []
        self.cancel_waiting_requests()
        logger.info("Rate limiter reset")

    def update_config(self, tokens_per_minute: Optional[int] = None,
                      requests_per_minute: Optional[int] = None,
                      max_wait_attempts: Optional[int] = None) -> None:
        if tokens_per_minute is not None:
            self.tokens_per_minute = tokens_per_minute
            self.burst_threshold = int(tokens_per_minute * rate_limit_settings.burst_threshold)
        if requests_per_minute is not None:
            self.requests_per_minute = requests_per_minute
        if max_wait_attempts is not None:
            self.max_wait_attempts = max_wait_attempts
        logger.info(f"Rate limiter config updated: {self.tokens_per_minute} tokens/min, "
                    f"{self.requests_per_minute} requests/min")


_default_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter built from environment settings."""
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = RateLimiter()
    return _default_limiter
