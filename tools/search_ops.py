"""Search tools: list_directory, grep_search."""

import logging
import os
import re
from typing import Any, List, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult
from tools.gitignore import is_ignored, load_gitignore

logger = logging.getLogger(__name__)

_MAX_LIST_ENTRIES = 500
_MAX_DEPTH = 10


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.1f}MB"


def list_directory(path: str = ".", recursive: bool = False, max_depth: int = 3,
                   backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """List files and directories at a path, respecting .gitignore."""
    try:
        b = backend or LocalBackend(working_directory)
        target = path or "."
        if not b.is_dir(target):
            return ToolResult(success=False, error=f"Not a directory: {target}")

        gi = load_gitignore(b)
        depth_limit = min(int(max_depth or 1), _MAX_DEPTH) if recursive else 1
        lines: List[str] = []
        count = 0

        def walk(rel_dir: str, depth: int) -> None:
            nonlocal count
            for e in b.list_dir(rel_dir):
                name = e["name"]
                is_dir = e["type"] == "directory"
                rel = name if rel_dir == "." else f"{rel_dir}/{name}"
                if is_ignored(rel, name, is_dir, gi):
                    continue
                if count >= _MAX_LIST_ENTRIES:
                    return
                count += 1
                indent = "  " * depth
                if is_dir:
                    lines.append(f"{indent}{name}/")
                    if depth + 1 < depth_limit:
                        walk(rel, depth + 1)
                else:
                    lines.append(f"{indent}{name} ({_format_size(e.get('size', 0))})")

        root_rel = b.relative_path(target).replace(os.sep, "/")
        walk(root_rel, 0)
        header = f"Contents of directory {root_rel}:"
        if not lines:
            return ToolResult(success=True, output=f"{header} (empty)", metadata={"entries": 0})
        if count >= _MAX_LIST_ENTRIES:
            lines.append(f"... (truncated at {_MAX_LIST_ENTRIES} entries)")
        return ToolResult(success=True, output=header + "\n" + "\n".join(lines), metadata={"entries": count})
    except (OSError, ValueError) as e:
        return ToolResult(success=False, error=str(e))


def grep_search(pattern: str, path: str = ".", include: Optional[str] = None, max_results: int = 100,
                backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Regex search over file contents. Returns path:line: text lines."""
    if not pattern:
        return ToolResult(success=False, error="pattern is required")
    try:
        re.compile(pattern)
    except re.error as e:
        return ToolResult(success=False, error=f"Invalid regex pattern: {e}")
    try:
        b = backend or LocalBackend(working_directory)
        matches = b.search(pattern, path or ".", include=include, max_results=int(max_results or 100))
        if not matches:
            return ToolResult(success=True, output=f"No matches found for pattern: {pattern}",
                              metadata={"matches": 0})
        body = "\n".join(f"{f}:{n}: {text}" for f, n, text in matches)
        return ToolResult(success=True, output=f"Found {len(matches)} matches:\n{body}",
                          metadata={"matches": len(matches)})
    except (OSError, ValueError) as e:
        return ToolResult(success=False, error=str(e))
