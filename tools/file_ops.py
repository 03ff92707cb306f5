"""File operation tools: read, write, edit."""

import difflib
import logging
from typing import Any, List, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult

logger = logging.getLogger(__name__)

_MAX_FULL_READ_LINES = 500
_HEAD_LINES = 200


def _require_path(file_path: str) -> Optional[ToolResult]:
    """Return an error ToolResult if file_path is empty/whitespace; else None."""
    if not (file_path or "").strip():
        return ToolResult(success=False, error="file_path is required")
    return None


def _numbered(lines: List[str], first_line: int) -> str:
    return "\n".join(f"{first_line + i:6}|{line.rstrip()}" for i, line in enumerate(lines))


def read_file(file_path: str, offset: Optional[int] = None, limit: Optional[int] = None,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Read a file as line-numbered text. Large files are cut to their head unless
    offset/limit select a range."""
    err = _require_path(file_path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.file_exists(file_path) or b.is_dir(file_path):
            return ToolResult(success=False, error=f"File not found: {file_path}")

        lines = b.read_file(file_path).splitlines(keepends=True)
        total = len(lines)
        meta = {"file_path": file_path, "total_lines": total}

        if offset is not None or limit is not None:
            start = max(int(offset or 1) - 1, 0)
            end = start + int(limit or total)
            selected = lines[start:end]
            header = f"[{total} lines total] (showing lines {start + 1}-{start + len(selected)})"
            return ToolResult(success=True, output=header + "\n" + _numbered(selected, start + 1),
                              metadata=dict(meta, lines_shown=len(selected)))

        if total <= _MAX_FULL_READ_LINES:
            return ToolResult(success=True, output=f"[{total} lines total]\n" + _numbered(lines, 1),
                              metadata=dict(meta, lines_shown=total))

        header = (f"[{total} lines total, showing first {_HEAD_LINES}; "
                  f"use offset={_HEAD_LINES + 1} limit=N to read more]")
        return ToolResult(success=True, output=header + "\n" + _numbered(lines[:_HEAD_LINES], 1),
                          metadata=dict(meta, lines_shown=_HEAD_LINES, truncated=True))
    except (OSError, ValueError) as e:
        return ToolResult(success=False, error=str(e))


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 40) -> str:
    diff = list(difflib.unified_diff(
        old_content.splitlines(), new_content.splitlines(), fromfile=path, tofile=path, lineterm=""
    ))
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(diff)


def write_file(file_path: str, content: str,
               backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Create a new file or completely overwrite an existing file."""
    err = _require_path(file_path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        is_new = not b.file_exists(file_path)
        b.write_file(file_path, content)
        line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        logger.debug(f"write_file {file_path}: {line_count} lines")
        return ToolResult(
            success=True,
            output=f"{'Created' if is_new else 'Wrote'} {line_count} lines to {file_path}",
            metadata={"file_path": file_path, "created": is_new, "lines": line_count},
        )
    except (OSError, ValueError) as e:
        return ToolResult(success=False, error=str(e))


def edit_file(file_path: str, old_string: str, new_string: str,
              backend: Optional[Backend] = None, working_directory: str = ".",
              replace_all: bool = False, **kw: Any) -> ToolResult:
    """Replace an exact string in a file. By default it must match exactly one location."""
    err = _require_path(file_path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.file_exists(file_path):
            return ToolResult(success=False, error=f"File not found: {file_path}")
        content = b.read_file(file_path)
        count = content.count(old_string) if old_string else 0
        if count == 0:
            return ToolResult(success=False,
                error=f"old_string not found in {file_path}. Ensure it matches exactly, including "
                      f"whitespace and indentation, and re-read the file if it may have changed.")
        if count > 1 and not replace_all:
            return ToolResult(success=False,
                error=f"Found {count} occurrences of old_string in {file_path}. Add surrounding context "
                      f"to make it unique, or set replace_all=true.")
        new_content = content.replace(old_string, new_string, -1 if replace_all else 1)
        b.write_file(file_path, new_content)

        replaced = count if replace_all else 1
        summary = f"Applied edit to {file_path}" + (f" ({replaced} replacements)" if replaced > 1 else "")
        diff_text = _compact_diff(content, new_content, file_path)
        return ToolResult(
            success=True,
            output=f"{summary}\n{diff_text}" if diff_text else summary,
            metadata={"file_path": file_path, "replacements": replaced},
        )
    except (OSError, ValueError) as e:
        return ToolResult(success=False, error=str(e))
