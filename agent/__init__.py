"""
Agent package - single-session coding agent control loop.

This package contains the control loop and the engines it drives:
- core: CodingAgent, the session state machine
- models: Session, Message and ToolCall data types
- errors: the agent error taxonomy
- events: AgentEvent and the notification hook
- provider: the abstract LLM provider contract
- tokens: heuristic token estimation
- history: context window management and truncation
- rate_limit: rolling-window token and request budget
- retry: exponential backoff with retry-after support
- loop_guard: repetition detection over recent tool calls
- execution: category-aware tool execution scheduler
- parsing: tool calls written as text
- completion: final-answer and completion-trigger policies
- prompts: system prompt and injected message templates
"""

from .core import CodingAgent
from .events import AgentEvent
from .models import (
    Message,
    Session,
    ToolCall,
    ToolResultRecord,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_USER_STOPPED,
)
from .errors import (
    AgentError,
    SessionAlreadyActive,
    RetryableError,
    ProviderTransportError,
    ProviderAuthError,
    RateLimitExceeded,
    ToolValidationError,
    LoopDetected,
    ContextOverflow,
)
from .provider import LLMProvider, ProviderResponse
from .history import ContextWindowManager, ContextResult, ContextStats
from .rate_limit import RateLimiter, get_rate_limiter
from .retry import RetryConfig, RetryResult, with_retry
from .loop_guard import RepetitionDetector, LoopCheck
from .execution import ToolExecutionScheduler
from .parsing import ToolCallParser, Parsed, Unparsed
from .completion import FinalAnswerPolicy, CompletionTriggerPolicy

__all__ = [
    # Main agent class
    "CodingAgent",

    # Data types
    "AgentEvent",
    "Message",
    "Session",
    "ToolCall",
    "ToolResultRecord",
    "STATUS_ACTIVE",
    "STATUS_COMPLETED",
    "STATUS_ERROR",
    "STATUS_USER_STOPPED",

    # Errors
    "AgentError",
    "SessionAlreadyActive",
    "RetryableError",
    "ProviderTransportError",
    "ProviderAuthError",
    "RateLimitExceeded",
    "ToolValidationError",
    "LoopDetected",
    "ContextOverflow",

    # Provider contract
    "LLMProvider",
    "ProviderResponse",

    # Engines
    "ContextWindowManager",
    "ContextResult",
    "ContextStats",
    "RateLimiter",
    "get_rate_limiter",
    "RetryConfig",
    "RetryResult",
    "with_retry",
    "RepetitionDetector",
    "LoopCheck",
    "ToolExecutionScheduler",
    "ToolCallParser",
    "Parsed",
    "Unparsed",
    "FinalAnswerPolicy",
    "CompletionTriggerPolicy",
]
