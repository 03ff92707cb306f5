"""
Context window management for the coding agent.
Handles content optimization, proactive truncation and emergency truncation so
the history sent to the provider stays inside the model's budget.

Token counts come from agent.tokens and are heuristic; thresholds are the
only thing they drive.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from config import ContextWindowInfo, get_context_window_info

from .errors import ContextOverflow
from .models import Message, ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER
from .tokens import estimate_tokens, message_tokens, total_tokens

logger = logging.getLogger(__name__)

CONSERVATIVE = "conservative"
MODERATE = "moderate"
AGGRESSIVE = "aggressive"

# Trigger threshold multiplier relative to the recommended threshold
AGGRESSIVENESS_MULTIPLIERS: Dict[str, float] = {
    CONSERVATIVE: 0.7,
    MODERATE: 1.0,
    AGGRESSIVE: 1.2,
}

STRATEGY_NONE = "none"
STRATEGY_LAST_TWO = "lastTwo"
STRATEGY_HALF = "half"
STRATEGY_QUARTER = "quarter"

# Escalation order when one pass is not enough
_ESCALATION = {
    STRATEGY_NONE: STRATEGY_HALF,
    STRATEGY_HALF: STRATEGY_QUARTER,
    STRATEGY_QUARTER: STRATEGY_LAST_TWO,
    STRATEGY_LAST_TWO: STRATEGY_LAST_TWO,
}

MIN_CONTENT_LENGTH_TO_OPTIMIZE = 200
MAX_DUPLICATE_CONTENT_LENGTH = 1000

# Messages 0-1 (the first exchange) are never removed or rewritten
KEPT_PREFIX = 2

_FILE_READ_PATTERNS = (
    re.compile(r"(?:read_file|TOOL_CALL: read_file)[\s\S]*?(?:Result:|OUTPUT:)([\s\S]*?)(?=\n\n|\n[A-Z]|$)"),
    re.compile(r"\[✓\] read_file\b[^:]*:([\s\S]*)"),
    re.compile(r"Successfully read file: ([^\n]+)"),
)
_FILE_PATH = re.compile(r"""(?:file_path|path)["']?\s*:\s*["']?([^"',\s}]+)""")
_RANGED_READ = re.compile(r"""["'](?:offset|limit)["']\s*:\s*\d""")
_RESULT_LINE = re.compile(r"^\[[✓✗]\]", re.MULTILINE)
_TOOL_RESULT_HINTS = (re.compile(r"✓.*?:"), re.compile(r"✗.*?:"), re.compile(r"<function_results>"))

DeletedRange = Tuple[int, int]


@dataclass
class ContextStats:
    total_messages: int = 0
    total_tokens: int = 0
    truncated_messages: int = 0
    tokens_saved: int = 0


@dataclass
class ContextResult:
    """Managed view of the history. deleted_range indexes the input list."""
    messages: List[Message] = field(default_factory=list)
    stats: ContextStats = field(default_factory=ContextStats)
    was_modified: bool = False
    deleted_range: Optional[DeletedRange] = None
    strategy: str = STRATEGY_NONE


def hash_content(content: str) -> int:
    """32-bit rolling string hash (h * 31 + c), used only for duplicate detection."""
    h = 0
    for ch in content:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h


def compress_tool_result(content: str) -> str:
    """Reduce a long body to a one-line status or a head truncation."""
    if "✓" in content:
        match = re.search(r"✓\]?\s*(\w+)[^:\n]*:\s*(.{0,50})", content)
        if match:
            return f"✓ {match.group(1)}: {match.group(2)}{'...' if len(match.group(2)) >= 50 else ''}"
    if "✗" in content:
        match = re.search(r"✗\]?\s*(\w+)[^:\n]*:\s*(.{0,100})", content)
        if match:
            return f"✗ {match.group(1)}: {match.group(2)}{'...' if len(match.group(2)) >= 100 else ''}"
    if "<function_results>" in content:
        match = re.search(r"<function_results>\s*([\s\S]{0,100})", content)
        if match:
            body = match.group(1)
            return f"<function_results>\n{body}{'...' if len(body) >= 100 else ''}\n</function_results>"
    return content[:100] + "..." if len(content) > 100 else content


def is_tool_result(content: str) -> bool:
    return any(p.search(content) for p in _TOOL_RESULT_HINTS) or bool(_RESULT_LINE.search(content))


def file_read_reference(file_path: str, original_index: int) -> str:
    return (
        f"[FILE READ REFERENCE] {file_path}\n\n"
        f"This file was previously read in message {original_index}. "
        f"Content omitted to save context space; re-read the file if needed."
    )


def truncation_notice(removed: int) -> str:
    return f"[CONTEXT TRUNCATED] {removed} previous messages have been removed to manage context size."


EMERGENCY_NOTICE = (
    "[EMERGENCY CONTEXT TRUNCATION] Context size exceeded safe limits. "
    "Most conversation history has been removed."
)


def get_truncation_strategy(tokens: int, info: ContextWindowInfo) -> str:
    """Pick a strategy by how far the total is past the recommended threshold."""
    if tokens >= info.max_allowed_size:
        return STRATEGY_QUARTER
    if tokens >= info.recommended_threshold * 1.5:
        return STRATEGY_HALF
    if tokens >= info.recommended_threshold:
        return STRATEGY_LAST_TWO
    return STRATEGY_NONE


def get_next_truncation_range(
    messages: List[Message],
    current_deleted_range: Optional[DeletedRange],
    strategy: str,
) -> Optional[DeletedRange]:
    """Extend the deletion window that starts right after the first exchange.

    The returned range is inclusive, always starts at index 2 and never
    covers the last two messages, so successive calls compose.
    """
    length = len(messages)
    start_of_rest = current_deleted_range[1] + 1 if current_deleted_range else KEPT_PREFIX
    rest = length - start_of_rest

    if strategy == STRATEGY_HALF:
        to_remove = (rest // 4) * 2
    elif strategy == STRATEGY_QUARTER:
        to_remove = (rest * 3 // 4 // 2) * 2
    elif strategy == STRATEGY_LAST_TWO:
        to_remove = rest - 2
    else:
        return current_deleted_range

    range_end = min(start_of_rest + to_remove - 1, length - 3)
    if range_end < start_of_rest:
        return current_deleted_range
    return (KEPT_PREFIX, range_end)


def apply_truncation(messages: List[Message], deleted_range: Optional[DeletedRange]) -> List[Message]:
    """Drop the inclusive range. System messages inside it are kept."""
    if not deleted_range:
        return list(messages)
    start, end = deleted_range
    kept_system = [m for m in messages[start:end + 1] if m.role == ROLE_SYSTEM]
    return messages[:start] + kept_system + messages[end + 1:]


def calculate_similarity(first: str, second: str) -> float:
    """Word overlap ratio between two texts."""
    words1 = first.lower().split()
    words2 = set(second.lower().split())
    union = set(words1) | words2
    if not union:
        return 0.0
    return len([w for w in words1 if w in words2]) / len(union)


class ContextWindowManager:
    """Fits a message history to a model's context window."""

    def __init__(self, model: Union[str, int] = "", info: Optional[ContextWindowInfo] = None):
        self.model = model
        self.info = info or get_context_window_info(model)

    def trigger_threshold(self, aggressiveness: str = MODERATE) -> int:
        multiplier = AGGRESSIVENESS_MULTIPLIERS.get(aggressiveness, 1.0)
        return int(self.info.recommended_threshold * multiplier)

    def needs_management(self, messages: List[Message]) -> bool:
        return total_tokens(messages) >= self.trigger_threshold(CONSERVATIVE)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def manage_context(
        self,
        messages: List[Message],
        aggressiveness: str = MODERATE,
        current_deleted_range: Optional[DeletedRange] = None,
    ) -> ContextResult:
        """Return a view of messages that fits the budget.

        messages is the full history; current_deleted_range marks what an
        earlier call already hid and is extended, never shrunk.
        """
        if not messages:
            return ContextResult(deleted_range=current_deleted_range)

        for m in messages:
            message_tokens(m)
        original_tokens = total_tokens(messages)

        view = apply_truncation(messages, current_deleted_range)
        optimized = self.optimize_content(view)
        tokens = total_tokens(optimized)
        was_modified = current_deleted_range is not None or self._differs(view, optimized)

        deleted_range = current_deleted_range
        strategy = STRATEGY_NONE
        applied = STRATEGY_NONE
        threshold = self.trigger_threshold(aggressiveness)

        if tokens >= threshold:
            strategy = get_truncation_strategy(tokens, self.info)
            if strategy == STRATEGY_NONE:
                # Aggressiveness pulled the trigger below the recommended threshold
                strategy = STRATEGY_LAST_TWO if aggressiveness == CONSERVATIVE else STRATEGY_HALF
            while tokens >= threshold:
                next_range = get_next_truncation_range(messages, deleted_range, strategy)
                if next_range == deleted_range:
                    if strategy == _ESCALATION[strategy]:
                        break
                    strategy = _ESCALATION[strategy]
                    continue
                deleted_range = next_range
                applied = strategy
                optimized = self._annotate_truncation(
                    self.optimize_content(apply_truncation(messages, deleted_range)),
                    deleted_range[1] - deleted_range[0] + 1,
                )
                tokens = total_tokens(optimized)
                was_modified = True
                logger.info(f"Context truncated with strategy {strategy}: range {deleted_range}, "
                            f"~{tokens} tokens remain (threshold {threshold})")
                strategy = _ESCALATION[strategy]

        if tokens >= self.info.max_allowed_size:
            optimized = self.emergency_truncate(optimized)
            tokens = total_tokens(optimized)
            was_modified = True
            logger.warning(f"Emergency truncation applied, ~{tokens} tokens remain")

        stats = ContextStats(
            total_messages=len(messages),
            total_tokens=original_tokens,
            truncated_messages=len(messages) - len(optimized),
            tokens_saved=original_tokens - tokens,
        )
        return ContextResult(
            messages=optimized,
            stats=stats,
            was_modified=was_modified,
            deleted_range=deleted_range,
            strategy=applied,
        )

    @staticmethod
    def _differs(before: List[Message], after: List[Message]) -> bool:
        if len(before) != len(after):
            return True
        return any(a is not b for a, b in zip(before, after))

    # ------------------------------------------------------------------
    # Content optimization
    # ------------------------------------------------------------------

    def optimize_content(self, messages: List[Message]) -> List[Message]:
        """Back-reference duplicate file reads, drop repeated bodies, compress long ones.

        The first exchange, system messages and the newest message pass through untouched.
        """
        optimized: List[Message] = []
        seen_hashes = set()
        file_reads: Dict[str, int] = {}
        last_index = len(messages) - 1

        for i, msg in enumerate(messages):
            if msg.role == ROLE_SYSTEM or i < KEPT_PREFIX or i == last_index:
                optimized.append(msg)
                continue

            content = msg.content
            path = self._file_read_path(msg)
            if path:
                if path in file_reads:
                    content = file_read_reference(path, file_reads[path])
                else:
                    file_reads[path] = i

            if len(content) > MIN_CONTENT_LENGTH_TO_OPTIMIZE:
                digest = hash_content(content)
                if digest in seen_hashes:
                    continue
                seen_hashes.add(digest)

            if len(content) > MAX_DUPLICATE_CONTENT_LENGTH:
                content = compress_tool_result(content)

            optimized.append(msg if content == msg.content else msg.with_content(content))
        return optimized

    @staticmethod
    def _file_read_path(msg: Message) -> Optional[str]:
        """Path of a file read surfaced by this message, if it surfaces exactly one."""
        if len(msg.tool_results) > 1 or len(_RESULT_LINE.findall(msg.content)) > 1:
            return None
        if _RANGED_READ.search(msg.content):
            return None
        if not any(p.search(msg.content) for p in _FILE_READ_PATTERNS):
            return None
        match = _FILE_PATH.search(msg.content)
        return match.group(1) if match else None

    # ------------------------------------------------------------------
    # Truncation
    # ------------------------------------------------------------------

    @staticmethod
    def _annotate_truncation(messages: List[Message], removed: int) -> List[Message]:
        """Prefix the first assistant message after the kept exchange with a notice."""
        result = list(messages)
        for i in range(KEPT_PREFIX, len(result) - 1):
            if result[i].role == ROLE_ASSISTANT:
                result[i] = result[i].with_content(f"{truncation_notice(removed)}\n\n{result[i].content}")
                break
        return result

    def emergency_truncate(self, messages: List[Message]) -> List[Message]:
        """Keep system messages and the last two others, behind an explicit notice.

        The first exchange is kept too when it still fits. Bodies are cut
        further if even that exceeds the hard maximum.
        """
        limit = self.info.max_allowed_size
        system = [m for m in messages if m.role == ROLE_SYSTEM]
        others = [m for m in messages if m.role != ROLE_SYSTEM]
        tail = others[-2:]
        notice = Message(role=ROLE_USER, content=EMERGENCY_NOTICE)

        prefix = [m for m in messages[:KEPT_PREFIX] if m.role != ROLE_SYSTEM and m not in tail]
        result = system + prefix + [notice] + tail
        if total_tokens(result) >= limit:
            result = system + [notice] + tail
        if total_tokens(result) >= limit:
            result = self._fit_bodies(result, limit)
        return result

    @staticmethod
    def _fit_bodies(messages: List[Message], limit: int) -> List[Message]:
        """Head-truncate the largest non-system bodies until the total fits."""
        result = list(messages)
        system_tokens = sum(message_tokens(m) for m in result if m.role == ROLE_SYSTEM)
        if system_tokens >= limit:
            raise ContextOverflow(total_tokens(result), limit)

        order = sorted(
            (i for i, m in enumerate(result) if m.role != ROLE_SYSTEM),
            key=lambda i: message_tokens(result[i]),
            reverse=True,
        )
        for i in order:
            excess = total_tokens(result) - limit + 1
            if excess <= 0:
                break
            msg = result[i]
            keep_tokens = max(0, message_tokens(msg) - excess)
            # Dense text can be ~3 chars/token; cut by that ratio so the estimate lands under
            keep_chars = keep_tokens * 3
            result[i] = msg.with_content(msg.content[:keep_chars] + "\n...[truncated]")
        if total_tokens(result) >= limit:
            raise ContextOverflow(total_tokens(result), limit)
        return result

    # ------------------------------------------------------------------
    # Supplementary compression helpers
    # ------------------------------------------------------------------

    def compress_context(self, messages: List[Message], target_tokens: Optional[int] = None) -> List[Message]:
        """Compress tool results, drop redundant turns and summarize the middle."""
        compressed = [
            m.with_content(compress_tool_result(m.content))
            if m.role == ROLE_ASSISTANT and is_tool_result(m.content) and len(m.content) > 100 else m
            for m in messages
        ]
        compressed = self.remove_redundant_messages(compressed)
        if len(compressed) > 10:
            compressed = self.summarize_middle_messages(compressed)
        if target_tokens is not None and total_tokens(compressed) > target_tokens:
            system = [m for m in compressed if m.role == ROLE_SYSTEM]
            budget = target_tokens - total_tokens(system)
            kept: List[Message] = []
            for m in reversed([m for m in compressed if m.role != ROLE_SYSTEM]):
                if message_tokens(m) > budget:
                    break
                kept.insert(0, m)
                budget -= message_tokens(m)
            compressed = system + kept
        return compressed

    @staticmethod
    def remove_redundant_messages(messages: List[Message]) -> List[Message]:
        """Drop a message nearly identical to the previous one from the same role."""
        result: List[Message] = []
        for m in messages:
            if result and result[-1].role == m.role and calculate_similarity(result[-1].content, m.content) > 0.8:
                continue
            result.append(m)
        return result

    @staticmethod
    def summarize_middle_messages(messages: List[Message], keep_first: int = 2, keep_last: int = 2) -> List[Message]:
        if len(messages) <= keep_first + keep_last + 2:
            return list(messages)
        middle = messages[keep_first:-keep_last]
        users = sum(1 for m in middle if m.role == ROLE_USER)
        assistants = sum(1 for m in middle if m.role == ROLE_ASSISTANT)
        tools = sum(1 for m in middle if is_tool_result(m.content))

        summary = f"Previous conversation: {users} user messages, {assistants} assistant responses"
        if tools:
            summary += f", {tools} tool executions"
        text = " ".join(m.content for m in middle).lower()
        topics = []
        if any(w in text for w in ("file", "read", "write")):
            topics.append("file operations")
        if "search" in text or "grep" in text:
            topics.append("code search")
        if "error" in text or "fix" in text:
            topics.append("debugging")
        if topics:
            summary += f". Topics: {', '.join(topics)}"
        summary_message = Message(role=ROLE_SYSTEM, content=f"[CONVERSATION SUMMARY] {summary}.")
        summary_message.token_count = estimate_tokens(summary_message.content)
        return messages[:keep_first] + [summary_message] + messages[-keep_last:]
