"""
Reply parser for tool calls written as text.

Models without structured tool support (and some that have it) write tool
calls inline. Three forms are recognised, for registered tool names only:

    <read_file><file_path>src/app.py</file_path></read_file>
    <read_file>{"file_path": "src/app.py"}</read_file>
    <read_file file_path="src/app.py" />

    TOOL_CALL: read_file
    INPUT: {"file_path": "src/app.py"}

    <tool_use name="read_file">{"file_path": "src/app.py"}</tool_use>

parse() returns Parsed(tool_calls, text) or Unparsed(text).
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .models import ToolCall

logger = logging.getLogger(__name__)

_ATTRIBUTE = re.compile(r"""(\w+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_CHILD_TAG = re.compile(r"<(\w+)>([\s\S]*?)</\1>")
_TOOL_CALL_HEADER = re.compile(r"TOOL_CALL:\s*(\w+)\s*\n\s*INPUT:\s*")
_TOOL_USE = re.compile(r"""<tool_use\s+name\s*=\s*["'](\w+)["']\s*>([\s\S]*?)</tool_use>""")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_UNQUOTED_KEY = re.compile(r"([{,]\s*)([A-Za-z_][\w\-]*)\s*:")
_SINGLE_QUOTED = re.compile(r"'((?:[^'\\]|\\.)*)'")


@dataclass
class Parsed:
    tool_calls: List[ToolCall] = field(default_factory=list)
    text: str = ""


@dataclass
class Unparsed:
    text: str = ""


ParseResult = Union[Parsed, Unparsed]


def repair_json(raw: str) -> Optional[Any]:
    """Decode JSON, tolerating single quotes, unquoted keys, trailing commas and
    Python literals. Returns None when the text cannot be recovered."""
    text = (raw or "").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass

    start = min((i for i in (text.find("{"), text.find("[")) if i >= 0), default=-1)
    if start < 0:
        return None
    end = _matching_close(text, start)
    candidate = text[start:end + 1] if end is not None else text[start:]

    candidate = _TRAILING_COMMA.sub(r"\1", candidate)
    candidate = _UNQUOTED_KEY.sub(r'\1"\2":', candidate)
    for attempt in (candidate, _requote(candidate)):
        attempt = re.sub(r"\bTrue\b", "true", attempt)
        attempt = re.sub(r"\bFalse\b", "false", attempt)
        attempt = re.sub(r"\bNone\b", "null", attempt)
        try:
            return json.loads(attempt)
        except ValueError:
            continue
    return None


def _requote(text: str) -> str:
    return _SINGLE_QUOTED.sub(lambda m: json.dumps(m.group(1).replace("\\'", "'")), text)


def _matching_close(text: str, start: int) -> Optional[int]:
    """Index of the bracket closing text[start], skipping quoted strings."""
    opener = text[start]
    closer = "}" if opener == "{" else "]"
    depth = 0
    quote = None
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in ('"', "'"):
            quote = ch
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return i
    return None


def _param_value(raw: str) -> Any:
    stripped = raw.strip()
    if stripped[:1] in ("{", "["):
        decoded = repair_json(stripped)
        if decoded is not None:
            return decoded
    # Drop the newline that usually follows an opening tag, keep other whitespace
    if raw.startswith("\n"):
        raw = raw[1:]
    if raw.endswith("\n"):
        raw = raw[:-1]
    return raw


def looks_like_tool_text(text: str, tool_names: Iterable[str]) -> bool:
    """True if free text appears to contain a tool call the structured channel missed."""
    if not text:
        return False
    if "TOOL_CALL:" in text or "<tool_use" in text:
        return True
    return any(f"<{name}" in text or f"{name}(" in text for name in tool_names)


class ToolCallParser:
    """Extracts tool calls for a fixed set of tool names from reply text."""

    def __init__(self, tool_names: Iterable[str],
                 coerce: Optional[Callable[[str, Dict[str, Any]], Dict[str, Any]]] = None):
        self.tool_names = list(tool_names)
        self._coerce = coerce
        if self.tool_names:
            names = "|".join(re.escape(n) for n in sorted(self.tool_names, key=len, reverse=True))
            self._open_tag = re.compile(rf"<({names})(\s[^<>]*?)?\s*(/?)>")
        else:
            self._open_tag = None

    def looks_like_tool_text(self, text: str) -> bool:
        return looks_like_tool_text(text, self.tool_names)

    def parse(self, text: str) -> ParseResult:
        if not text:
            return Unparsed("")
        found: List[Tuple[int, int, ToolCall]] = []
        found.extend(self._parse_xml(text))
        found.extend(self._parse_tool_call_blocks(text))
        found.extend(self._parse_tool_use(text))
        if not found:
            return Unparsed(text)

        found.sort(key=lambda item: item[0])
        calls: List[ToolCall] = []
        remaining: List[str] = []
        cursor = 0
        for start, end, call in found:
            if start < cursor:
                continue  # nested inside an earlier match
            remaining.append(text[cursor:start])
            calls.append(call)
            cursor = end
        remaining.append(text[cursor:])
        logger.debug(f"Parsed {len(calls)} tool call(s) from text: {[c.name for c in calls]}")
        return Parsed(tool_calls=calls, text="".join(remaining).strip())

    def _make_call(self, name: str, payload: Dict[str, Any]) -> ToolCall:
        if self._coerce:
            payload = self._coerce(name, payload)
        return ToolCall(name=name, input=payload)

    def _parse_xml(self, text: str) -> List[Tuple[int, int, ToolCall]]:
        if self._open_tag is None:
            return []
        results = []
        pos = 0
        while True:
            match = self._open_tag.search(text, pos)
            if not match:
                break
            name, attrs, self_closing = match.group(1), match.group(2) or "", match.group(3)
            payload: Dict[str, Any] = {
                m.group(1): m.group(2) if m.group(2) is not None else m.group(3)
                for m in _ATTRIBUTE.finditer(attrs)
            }
            end = match.end()
            if not self_closing:
                close = text.find(f"</{name}>", match.end())
                if close >= 0:
                    payload.update(self._parse_body(text[match.end():close]))
                    end = close + len(f"</{name}>")
            results.append((match.start(), end, self._make_call(name, payload)))
            pos = end
        return results

    @staticmethod
    def _parse_body(body: str) -> Dict[str, Any]:
        stripped = body.strip()
        if stripped.startswith("{"):
            decoded = repair_json(stripped)
            if isinstance(decoded, dict):
                return decoded
        return {m.group(1): _param_value(m.group(2)) for m in _CHILD_TAG.finditer(body)}

    def _parse_tool_call_blocks(self, text: str) -> List[Tuple[int, int, ToolCall]]:
        results = []
        for match in _TOOL_CALL_HEADER.finditer(text):
            name = match.group(1)
            if name not in self.tool_names:
                continue
            brace = match.end()
            if brace >= len(text) or text[brace] != "{":
                continue
            close = _matching_close(text, brace)
            end = close + 1 if close is not None else len(text)
            decoded = repair_json(text[brace:end])
            if isinstance(decoded, dict):
                results.append((match.start(), end, self._make_call(name, decoded)))
        return results

    def _parse_tool_use(self, text: str) -> List[Tuple[int, int, ToolCall]]:
        results = []
        for match in _TOOL_USE.finditer(text):
            name = match.group(1)
            if name not in self.tool_names:
                continue
            decoded = repair_json(match.group(2))
            payload = decoded if isinstance(decoded, dict) else self._parse_body(match.group(2))
            results.append((match.start(), match.end(), self._make_call(name, payload)))
        return results
