"""
Abstract language-model provider the control loop depends on.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import Message, ToolCall


@dataclass
class ProviderResponse:
    """One model reply. tool_calls is empty when the reply is plain text."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: Optional[str] = None


class LLMProvider(ABC):
    """Blocking provider call; the loop runs it in an executor.

    Implementations raise ProviderTransportError for retryable failures and
    ProviderAuthError for rejected credentials.
    """

    model_id: str = ""

    @abstractmethod
    def send(self, messages: List[Message], tools: Optional[List[Dict[str, Any]]] = None) -> ProviderResponse:
        """Send the history. tools, when given, enables structured tool calls."""
