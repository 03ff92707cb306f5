"""
Error taxonomy for the agent control loop.

Only SessionAlreadyActive, ProviderAuthError, ContextOverflow and unclassified
exceptions ever reach the caller; everything else is recovered locally.
"""

import math
import re
import time
from typing import Any, Dict, Optional

# Raised by the tool registry; re-exported here so the whole taxonomy is importable from one place
from tools._common import ToolValidationError  # noqa: F401

_RETRY_AFTER_HEADERS = ("retry-after", "x-ratelimit-reset", "ratelimit-reset")
_RETRY_AFTER_TEXT = re.compile(r"retry after (\d+) seconds?", re.IGNORECASE)


class AgentError(Exception):
    """Base class for all agent errors"""
    pass


class SessionAlreadyActive(AgentError):
    """Raised when start_session is called while another session runs"""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        super().__init__(
            "Another agent session is already running. Stop it first or wait for completion."
        )


def parse_retry_after(headers: Optional[Dict[str, Any]] = None,
                      message: str = "",
                      now: Optional[float] = None) -> Optional[float]:
    """Extract a retry-after duration in seconds.

    Header values larger than the current epoch second are absolute reset
    timestamps; smaller values are delta seconds. Falls back to a
    "retry after N seconds" phrase in the message.
    """
    now = time.time() if now is None else now
    lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
    for name in _RETRY_AFTER_HEADERS:
        raw = lowered.get(name)
        if raw is None:
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            continue
        if value > now:
            return float(max(0, math.ceil(value - now)))
        return value

    match = _RETRY_AFTER_TEXT.search(message or "")
    if match:
        return float(match.group(1))
    return None


class RetryableError(AgentError):
    """An error that should always be retried, optionally after an explicit delay."""

    status = 429

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 headers: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after
        self.headers = dict(headers or {})

    @classmethod
    def from_provider_error(cls, error: BaseException,
                            headers: Optional[Dict[str, Any]] = None) -> "RetryableError":
        """Wrap a provider exception, recovering any retry-after hint it carries."""
        message = str(error)
        headers = headers if headers is not None else getattr(error, "headers", None)
        return cls(message, retry_after=parse_retry_after(headers, message), headers=headers)


class ProviderTransportError(RetryableError):
    """Throttling, network or 5xx failure talking to the model provider"""
    pass


class ProviderAuthError(AgentError):
    """Credentials rejected by the provider. Never retried."""
    pass


class RateLimitExceeded(AgentError):
    """
    Local token/request budget exhausted.

    Part of the error taxonomy only: RateLimiter itself never raises it, since
    it waits and then fails open. Callers that want a hard budget can raise it
    from their own gate.
    """

    def __init__(self, wait_ms: float, message: str = ""):
        self.wait_ms = wait_ms
        super().__init__(message or f"Rate limit exceeded, retry in {wait_ms:.0f}ms")


class LoopDetected(AgentError):
    """Proposed tool batch repeats earlier calls too often"""

    def __init__(self, reason: str, suggestion: str = ""):
        self.reason = reason
        self.suggestion = suggestion
        super().__init__(reason)


class ContextOverflow(AgentError):
    """History still exceeds the hard token maximum after emergency truncation"""

    def __init__(self, tokens: int, limit: int):
        self.tokens = tokens
        self.limit = limit
        super().__init__(f"Context still holds ~{tokens} tokens after emergency truncation (limit {limit})")
