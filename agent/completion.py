"""
Completion policies for the control loop.

FinalAnswerPolicy decides whether a reply without tool calls ends the
session; CompletionTriggerPolicy decides whether, after a tool batch, the
model should be asked for its final answer. Both are plain objects so the
loop can take a replacement.
"""

import logging
import time
from typing import Callable, List

from tools import ToolResult

from .models import Session, ToolCall, ToolCallHistoryEntry

logger = logging.getLogger(__name__)

CONCLUDING_KEYWORDS = (
    "analysis", "found", "based on", "i found", "the code",
    "after analyzing", "looking at", "examining",
)


class FinalAnswerPolicy:
    """Heuristic: long enough and concluding, or late enough in the session."""

    def __init__(self, min_length: int = 150, iteration_ceiling: int = 3):
        self.min_length = min_length
        self.iteration_ceiling = iteration_ceiling

    def is_final(self, reply: str, session: Session) -> bool:
        text = (reply or "").strip()
        if not text:
            return False
        substantial = len(text) > self.min_length
        lowered = text.lower()
        concluding = any(k in lowered for k in CONCLUDING_KEYWORDS)
        return (
            (concluding and substantial)
            or (session.has_tool_results() and substantial)
            or session.iterations >= self.iteration_ceiling
        )


class CompletionTriggerPolicy:
    """Decide when gathered tool output is enough to ask for the final answer."""

    def __init__(self, substantial_output: int = 100, meaningful_output: int = 50,
                 max_recent_reads: int = 3, read_window_seconds: float = 60,
                 max_iterations: int = 5, clock: Callable[[], float] = time.time):
        self.substantial_output = substantial_output
        self.meaningful_output = meaningful_output
        self.max_recent_reads = max_recent_reads
        self.read_window_seconds = read_window_seconds
        self.max_iterations = max_iterations
        self._clock = clock

    def should_trigger(self, session: Session, tool_calls: List[ToolCall], results: List[ToolResult],
                       history: List[ToolCallHistoryEntry]) -> bool:
        has_substantial = any(r.success and len(r.output or "") > self.substantial_output for r in results)
        explored = any(
            rec.result.success and "directory" in (rec.result.output or "")
            for m in session.messages for rec in m.tool_results
        )
        productive_messages = sum(
            1 for m in session.messages
            if any(rec.result.success and len(rec.result.output or "") > self.meaningful_output
                   for rec in m.tool_results)
        )
        now = self._clock()
        recent_reads = sum(
            1 for e in history if e.tool == "read_file" and now - e.timestamp < self.read_window_seconds
        )

        if has_substantial and "what" in session.goal.lower() and session.iterations >= 1:
            reason = "substantial information for a simple query"
        elif has_substantial and explored and session.iterations >= 2:
            reason = "substantial information after exploration"
        elif recent_reads >= self.max_recent_reads:
            reason = f"{recent_reads} file reads in the last minute"
        elif productive_messages >= 3:
            reason = f"{productive_messages} productive tool rounds"
        elif session.iterations >= self.max_iterations:
            reason = f"iteration {session.iterations}"
        else:
            return False
        logger.info(f"Soliciting final answer: {reason}")
        return True
