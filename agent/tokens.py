"""
Heuristic token estimation.

Counts are approximations: the divisor (characters per token) is picked from
the apparent density of the text and is only used for trigger thresholds,
never for exact budget accounting.
"""

import math
import re
from typing import Iterable

_TOOL_MARKUP = re.compile(r"TOOL_CALL:|INPUT:|Result:")
_CODE = re.compile(r"```[\s\S]*?```|function\s+\w+|class\s+\w+|import\s+|export\s+")
_TECHNICAL = re.compile(r"/[\w\-./]+|\.js\b|\.ts\b|\.py\b|\.java\b|src/|node_modules")

# Characters per token by content type
TOOL_MARKUP_DIVISOR = 3.0
CODE_DIVISOR = 3.2
TECHNICAL_DIVISOR = 3.5
PROSE_DIVISOR = 4.2


def chars_per_token(text: str) -> float:
    """Pick a divisor for the text: tool markup and code pack more tokens per char."""
    if _TOOL_MARKUP.search(text):
        return TOOL_MARKUP_DIVISOR
    if _CODE.search(text):
        return CODE_DIVISOR
    if len(_TECHNICAL.findall(text)) > 3:
        return TECHNICAL_DIVISOR
    return PROSE_DIVISOR


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token(text))


def message_tokens(message) -> int:
    """Token count for a Message, computed lazily and cached on the message."""
    if message.token_count is None:
        message.token_count = estimate_tokens(message.content)
    return message.token_count


def total_tokens(messages: Iterable) -> int:
    return sum(message_tokens(m) for m in messages)
