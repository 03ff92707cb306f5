"""
Agent event data type and the notification hook helper.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Event types
SESSION_START = "session_start"
SESSION_END = "session_end"
ITERATION_START = "iteration_start"
ASSISTANT_TEXT = "text"
TOOL_CALL = "tool_call"
TOOL_RESULT = "tool_result"
LOOP_DETECTED = "loop_detected"
CONTEXT_TRUNCATED = "context_truncated"
ERROR = "error"


@dataclass
class AgentEvent:
    """Event emitted during agent execution"""
    type: str
    content: str = ""
    data: Optional[Dict[str, Any]] = None


EventHook = Callable[[AgentEvent], Any]


async def emit(hook: Optional[EventHook], event: AgentEvent) -> None:
    """Deliver an event to a sync or async hook. Hook failures are logged, never raised."""
    if hook is None:
        return
    try:
        value = hook(event)
        if inspect.isawaitable(value):
            await value
    except Exception:
        logger.exception(f"Event hook failed for {event.type}")
