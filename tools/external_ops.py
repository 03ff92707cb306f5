"""Shell and completion tools: bash_command, attempt_completion."""

import logging
import subprocess
from typing import Any, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult

logger = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 20000
_MAX_TIMEOUT = 300


def _clip(output: str) -> str:
    if len(output) <= _MAX_OUTPUT_CHARS:
        return output
    lines = output.split("\n")
    if len(lines) > 200:
        return "\n".join(lines[:100]) + f"\n\n... [{len(lines) - 150} lines truncated] ...\n\n" + "\n".join(lines[-50:])
    return output[:10000] + "\n\n... [truncated] ...\n\n" + output[-5000:]


def bash_command(command: str, timeout: int = 30,
                 backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Execute a shell command in the workspace root."""
    if not (command or "").strip():
        return ToolResult(success=False, error="command is required")
    timeout = max(1, min(int(timeout or 30), _MAX_TIMEOUT))
    try:
        b = backend or LocalBackend(working_directory)
        stdout, stderr, rc = b.run_command(command, cwd=".", timeout=timeout)
    except subprocess.SubprocessError as e:
        return ToolResult(success=False, error=f"Command failed: {e}")
    except (OSError, ValueError) as e:
        return ToolResult(success=False, error=str(e))

    parts = []
    if stdout:
        parts.append(stdout)
    if stderr:
        parts.append(f"[stderr]\n{stderr}")
    output = _clip("\n".join(parts) if parts else "(no output)")
    if rc != 0:
        output = f"[exit code: {rc}]\n{output}"
    return ToolResult(
        success=rc == 0,
        output=output,
        error=None if rc == 0 else f"Command exited with code {rc}",
        metadata={"command": command, "exit_code": rc},
    )


def attempt_completion(result: str, command: Optional[str] = None, **kw: Any) -> ToolResult:
    """Signal that the task is finished. The result becomes the session's final answer."""
    if not (result or "").strip():
        return ToolResult(success=False, error="result is required")
    output = result.strip()
    if command:
        output += f"\n\nTo verify: {command}"
    return ToolResult(success=True, output=output, metadata={"completion": True, "command": command})
