"""
Repetition detector: flags a proposed tool batch that repeats earlier calls
too often, before anything executes.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from config import LoopDetectionSettings, loop_detection_settings

from .errors import LoopDetected
from .models import ToolCall, ToolCallHistoryEntry, serialize_input

logger = logging.getLogger(__name__)

DEFAULT_READ_ONLY_TOOLS = frozenset({"read_file", "list_directory", "grep_search"})

SAME_TOOL_SUGGESTION = (
    "Try a different approach or use different parameters. "
    "For read_file, use limit/offset parameters if reading large files."
)
IDENTICAL_SUGGESTION = (
    "The previous calls already provided the information. "
    "Analyze the existing results instead of repeating the same call."
)
RAPID_SUGGESTION = "Stop repeating the same tool call. The information has already been retrieved."


@dataclass
class LoopCheck:
    is_loop: bool
    reason: str = ""
    suggestion: str = ""

    def to_error(self) -> LoopDetected:
        return LoopDetected(self.reason, self.suggestion)


def corrective_message(check: LoopCheck) -> str:
    """Text injected into history in place of executing a blocked batch."""
    return (
        f"STOP: Infinite loop detected. {check.reason}. {check.suggestion}\n\n"
        "Please provide a final answer based on the information you have already gathered "
        "from previous tool executions. Do not repeat the same tool calls."
    )


def _decode(raw: str) -> dict:
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


class RepetitionDetector:
    """Rolling-window tool-call history plus the rules that read it.

    Every checked call is recorded first, so a blocked batch still counts
    toward later checks.
    """

    def __init__(
        self,
        settings: Optional[LoopDetectionSettings] = None,
        read_only_tools: Iterable[str] = DEFAULT_READ_ONLY_TOOLS,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or loop_detection_settings
        self.read_only_tools = frozenset(read_only_tools)
        self._clock = clock
        self._history: List[ToolCallHistoryEntry] = []
        self._lock = threading.Lock()

    @property
    def history(self) -> List[ToolCallHistoryEntry]:
        with self._lock:
            return list(self._history)

    def clear(self) -> None:
        with self._lock:
            self._history = []

    def is_read_only(self, tool_name: str) -> bool:
        return tool_name in self.read_only_tools

    def check(self, tool_calls: List[ToolCall], iteration: int) -> LoopCheck:
        """Record the batch and return the first violated rule, if any."""
        if not tool_calls:
            return LoopCheck(False)

        s = self.settings
        now = self._clock()
        with self._lock:
            for call in tool_calls:
                serialized = serialize_input(call.input)
                self._history.append(ToolCallHistoryEntry(call.name, serialized, now, iteration))
                self._history = [e for e in self._history if now - e.timestamp < s.window_seconds]
                history = self._history

                if self._is_exploration_pattern(call, history, now):
                    if iteration <= s.exploration_max_iteration:
                        logger.debug(f"Allowing exploration pattern: {call.name} (iteration {iteration})")
                        continue
                    logger.debug(f"Exploration pattern not allowed late: {call.name} (iteration {iteration})")

                same_tool = [e for e in history if e.tool == call.name]
                max_allowed = s.max_same_tool_calls
                if self.is_read_only(call.name):
                    max_allowed *= s.read_only_multiplier
                if call.name == "write_file" and self._is_distinct_write_batch(history, iteration):
                    max_allowed = max(max_allowed, s.batch_write_ceiling)
                if len(same_tool) > max_allowed:
                    return self._flag(
                        f'Tool "{call.name}" called {len(same_tool)} times in recent iterations (max: {max_allowed})',
                        SAME_TOOL_SUGGESTION,
                    )

                identical = [e for e in same_tool if e.input == serialized]
                max_identical = s.max_identical_calls
                if call.name == "list_directory" and call.input.get("path") in (".", ""):
                    max_identical = s.benign_identical_calls
                if len(identical) > max_identical:
                    return self._flag(
                        f'Identical call to "{call.name}" with same parameters repeated '
                        f"{len(identical)} times (max: {max_identical})",
                        IDENTICAL_SUGGESTION,
                    )

                rapid = [e for e in identical if now - e.timestamp < s.rapid_window_seconds]
                if len(rapid) >= s.rapid_call_threshold:
                    return self._flag(
                        f'Rapid repeated calls to "{call.name}" within {s.rapid_window_seconds:g} seconds',
                        RAPID_SUGGESTION,
                    )
        return LoopCheck(False)

    def _flag(self, reason: str, suggestion: str) -> LoopCheck:
        logger.warning(f"Loop detected: {reason}")
        return LoopCheck(True, reason, suggestion)

    def _is_exploration_pattern(self, call: ToolCall, history: List[ToolCallHistoryEntry], now: float) -> bool:
        recent = [e for e in history if now - e.timestamp < self.settings.exploration_lookback_seconds]
        if call.name == "list_directory":
            return any(e.tool == "read_file" for e in recent)
        if call.name == "read_file":
            return any(e.tool == "grep_search" for e in recent)
        if call.name == "grep_search":
            patterns = {_decode(e.input).get("pattern") for e in recent if e.tool == "grep_search"}
            return len(patterns) > 1
        return False

    @staticmethod
    def _is_distinct_write_batch(history: List[ToolCallHistoryEntry], iteration: int) -> bool:
        writes = [e for e in history if e.tool == "write_file" and e.iteration == iteration]
        if not writes:
            return False
        paths = {_decode(e.input).get("file_path") for e in writes}
        return len(paths) == len(writes)
