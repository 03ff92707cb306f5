"""
Session and message data model for the control loop.
"""

import json
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from tools._common import ToolResult

# Session status values
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
STATUS_USER_STOPPED = "user_stopped"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_ERROR, STATUS_USER_STOPPED})

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


def new_tool_call_id() -> str:
    return f"tool_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def serialize_input(payload: Any) -> str:
    """Stable serialization used for identity comparisons of tool inputs."""
    return json.dumps(payload, sort_keys=True, default=str)


@dataclass
class ToolCall:
    """A tool invocation proposed by the model"""
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_tool_call_id)

    @property
    def key(self) -> str:
        """Identity of the call: tool name plus serialized input."""
        return f"{self.name}:{serialize_input(self.input)}"


@dataclass
class ToolResultRecord:
    """A tool result attached to the message that folds it into history"""
    tool_call_id: str
    result: ToolResult


@dataclass
class Message:
    """One entry of the conversation history"""
    role: str
    content: str = ""
    token_count: Optional[int] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResultRecord] = field(default_factory=list)

    def with_content(self, content: str) -> "Message":
        """Copy with new content; the cached token count is dropped."""
        return Message(
            role=self.role,
            content=content,
            token_count=None,
            tool_calls=list(self.tool_calls),
            tool_results=list(self.tool_results),
        )


@dataclass
class Session:
    """One end-to-end run of the agent toward a single goal"""
    id: str
    goal: str
    messages: List[Message] = field(default_factory=list)
    status: str = STATUS_ACTIVE
    iterations: int = 0
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    error: Optional[str] = None
    final_answer: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def finish(self, status: str, error: Optional[str] = None) -> None:
        """Move to a terminal status. The first terminal status wins."""
        if self.status in TERMINAL_STATUSES:
            return
        self.status = status
        self.end_time = time.time()
        if error:
            self.error = error

    def has_tool_results(self) -> bool:
        return any(m.tool_results for m in self.messages)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ToolCallHistoryEntry:
    """One recorded invocation, used only by the repetition detector"""
    tool: str
    input: str
    timestamp: float
    iteration: int
