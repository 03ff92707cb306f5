"""
Retry engine: exponential backoff with jitter and explicit retry-after support.
"""

import asyncio
import functools
import inspect
import logging
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from config import retry_settings

from .errors import ProviderAuthError, RetryableError

logger = logging.getLogger(__name__)

# Status codes only match as whole numbers so "1500 tokens" is not a 500
_RETRYABLE_PATTERN = re.compile(
    r"rate limit|quota exceeded|network|timeout|connection|econnreset|enotfound"
    r"|overloaded|try again|\b(?:429|500|502|503|504)\b"
)
_NON_RETRYABLE_PATTERN = re.compile(
    r"unauthorized|invalid api key|bad request|invalid|\b(?:400|401|403)\b"
)


@dataclass
class RetryConfig:
    """Backoff policy. Delays are in milliseconds."""
    max_retries: int = retry_settings.max_retries
    base_delay: int = retry_settings.base_delay_ms
    max_delay: int = retry_settings.max_delay_ms
    backoff_multiplier: float = retry_settings.backoff_multiplier
    jitter: bool = retry_settings.jitter


@dataclass
class RetryAttempt:
    """One failed attempt, kept only while the retried call runs"""
    attempt: int
    error: BaseException
    delay: int
    timestamp: float


@dataclass
class RetryResult:
    success: bool
    result: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    total_duration: float = 0.0  # ms
    history: List[RetryAttempt] = field(default_factory=list)

    def unwrap(self) -> Any:
        """Return the result or raise the last error."""
        if self.success:
            return self.result
        raise self.error


API_CALL_CONFIG = RetryConfig(max_retries=5, base_delay=2000, max_delay=60000, backoff_multiplier=2.5)
FILE_OPERATION_CONFIG = RetryConfig(max_retries=3, base_delay=500, max_delay=5000, backoff_multiplier=2, jitter=False)

RetryListener = Callable[[str, RetryAttempt], None]
_listeners: List[RetryListener] = []


def add_retry_listener(listener: RetryListener) -> None:
    """Register a callback invoked as listener(operation_name, attempt) before each backoff sleep."""
    _listeners.append(listener)


def remove_retry_listener(listener: RetryListener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def _emit_retry(name: str, attempt: RetryAttempt) -> None:
    for listener in list(_listeners):
        try:
            listener(name, attempt)
        except Exception:
            logger.exception(f"Retry listener failed for {name}")


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error. Unknown errors are retryable."""
    if isinstance(error, RetryableError):
        return True
    if isinstance(error, ProviderAuthError):
        return False

    message = str(error).lower()
    if _RETRYABLE_PATTERN.search(message):
        return True
    if _NON_RETRYABLE_PATTERN.search(message):
        return False
    return True


def calculate_delay(attempt: int, config: RetryConfig,
                    retry_after: Optional[float] = None) -> int:
    """Delay in ms before retrying after the given 1-based attempt.

    An explicit retry_after (seconds) is honoured exactly, capped at max_delay.
    """
    if retry_after is not None:
        return int(min(retry_after * 1000, config.max_delay))

    delay = min(config.base_delay * config.backoff_multiplier ** (attempt - 1), config.max_delay)
    if config.jitter:
        delay += delay * 0.1 * (random.random() * 2 - 1)
    return max(0, int(round(delay)))


async def with_retry(
    operation: Callable[[], Any],
    config: Optional[RetryConfig] = None,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> RetryResult:
    """Run operation() up to max_retries + 1 times.

    operation may be sync or async. Never raises for operation errors;
    inspect RetryResult.success or call unwrap().
    """
    cfg = config or RetryConfig()
    start = clock()
    history: List[RetryAttempt] = []

    for attempt in range(1, cfg.max_retries + 2):
        try:
            value = operation()
            if inspect.isawaitable(value):
                value = await value
            duration = (clock() - start) * 1000
            if attempt > 1:
                logger.info(f"{name} succeeded on attempt {attempt} ({duration:.0f}ms)")
            return RetryResult(success=True, result=value, attempts=attempt,
                               total_duration=duration, history=history)
        except Exception as e:
            if not is_retryable_error(e) or attempt > cfg.max_retries:
                duration = (clock() - start) * 1000
                logger.warning(f"{name} failed permanently after {attempt} attempt(s): {e}")
                return RetryResult(success=False, error=e, attempts=attempt,
                                   total_duration=duration, history=history)

            delay = calculate_delay(attempt, cfg, getattr(e, "retry_after", None))
            record = RetryAttempt(attempt=attempt, error=e, delay=delay, timestamp=time.time())
            history.append(record)
            logger.info(f"{name} attempt {attempt} failed: {e}. Retrying in {delay}ms...")
            _emit_retry(name, record)
            await sleep(delay / 1000)

    # Unreachable: the last iteration always returns
    return RetryResult(success=False, error=RuntimeError("Maximum retries exceeded"),
                       attempts=cfg.max_retries + 1, history=history)


async def retry_api_call(operation: Callable[[], Any], name: str = "API call", **kw: Any) -> RetryResult:
    return await with_retry(operation, API_CALL_CONFIG, name, **kw)


async def retry_file_operation(operation: Callable[[], Any], name: str = "file operation", **kw: Any) -> RetryResult:
    return await with_retry(operation, FILE_OPERATION_CONFIG, name, **kw)


def retryable(config: Optional[RetryConfig] = None, name: Optional[str] = None):
    """Decorator: retry an async function and return its value or raise its last error."""
    def decorator(func):
        op_name = name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            outcome = await with_retry(lambda: func(*args, **kwargs), config, op_name)
            return outcome.unwrap()
        return wrapper
    return decorator
