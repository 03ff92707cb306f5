"""Shared fakes for the test suite. Nothing here talks to AWS."""

import threading
from typing import Any, Dict, List, Optional

import pytest

from agent.models import Message, ToolCall, ROLE_ASSISTANT, ROLE_USER
from agent.provider import LLMProvider, ProviderResponse


class FakeClock:
    """Manually advanced clock; sleep() advances it instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedProvider(LLMProvider):
    """Replays a list of replies. An Exception in the script is raised instead."""

    def __init__(self, replies: List[Any], model_id: str = "us.anthropic.claude-sonnet-4-20250514-v1:0"):
        self.replies = list(replies)
        self.model_id = model_id
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def send(self, messages: List[Message], tools: Optional[List[Dict[str, Any]]] = None) -> ProviderResponse:
        with self._lock:
            self.calls.append({"messages": list(messages), "tools": tools})
            if not self.replies:
                return ProviderResponse(text="Nothing more to add.")
            reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return ProviderResponse(text=reply)
        return reply


def tool_reply(*calls: ToolCall, text: str = "") -> ProviderResponse:
    return ProviderResponse(text=text, tool_calls=list(calls))


def conversation(count: int, body_chars: int = 800) -> List[Message]:
    """Alternating user/assistant messages with unique prose bodies."""
    filler = "the quick brown fox jumps over the lazy dog "
    messages = []
    for i in range(count):
        body = f"message {i} " + (filler * (body_chars // len(filler) + 1))[:body_chars]
        messages.append(Message(role=ROLE_USER if i % 2 == 0 else ROLE_ASSISTANT, content=body))
    return messages


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("def main():\n    return 'hello'\n")
    (tmp_path / "README.md").write_text("# Demo project\n\nA tiny workspace for tests.\n")
    (tmp_path / ".gitignore").write_text("build/\n*.log\n")
    (tmp_path / "build").mkdir()
    (tmp_path / "build" / "out.txt").write_text("artifact\n")
    (tmp_path / "debug.log").write_text("noise\n")
    return tmp_path
