"""Approval policy for tool calls."""

import logging
from typing import Any, Dict, Iterable, Optional

from config import agent_config
from tools.schemas import BASIC_OPERATIONS, TOOL_CATEGORIES

logger = logging.getLogger(__name__)

SAFE_COMMAND_PREFIXES = (
    "ls", "dir", "pwd", "whoami", "date", "echo", "cat", "type", "head", "tail", "grep", "find",
    "git status", "git log", "git diff", "git branch",
    "npm --version", "node --version", "yarn --version",
    "npm run build", "npm run test", "npm run dev", "npm run start",
    "yarn build", "yarn test", "yarn dev", "yarn start",
)


def _starts_with_word(command: str, prefix: str) -> bool:
    return command == prefix or command.startswith(prefix + " ")


def is_dangerous_command(command: str, dangerous: Optional[Iterable[str]] = None) -> bool:
    fragments = agent_config.require_approval_for if dangerous is None else dangerous
    lowered = command.strip().lower()
    return any(f.lower() in lowered for f in fragments if f)


def is_safe_command(command: str, dangerous: Optional[Iterable[str]] = None) -> bool:
    """Safe prefix and no dangerous fragment anywhere in the command."""
    lowered = command.strip().lower()
    if is_dangerous_command(lowered, dangerous):
        return False
    return any(_starts_with_word(lowered, p) for p in SAFE_COMMAND_PREFIXES)


def needs_approval(tool_name: str, tool_input: Optional[Dict[str, Any]] = None,
                   auto_approve_basic: Optional[bool] = None,
                   dangerous: Optional[Iterable[str]] = None) -> bool:
    """Check if a tool call requires user approval before it runs."""
    auto_basic = agent_config.auto_approve_basic_operations if auto_approve_basic is None else auto_approve_basic
    if tool_name == "bash_command":
        return not is_safe_command(str((tool_input or {}).get("command", "")), dangerous)
    if tool_name in BASIC_OPERATIONS:
        return not auto_basic
    return True


def describe_tool_call(tool_name: str, tool_input: Optional[Dict[str, Any]] = None) -> str:
    """One-line human description used in approval prompts."""
    args = tool_input or {}
    if tool_name == "bash_command":
        return f"Run command: {args.get('command', '')}"
    if tool_name == "write_file":
        return f"Write {len(str(args.get('content', '')))} chars to {args.get('file_path', '')}"
    if tool_name == "edit_file":
        return f"Edit {args.get('file_path', '')}"
    if tool_name in TOOL_CATEGORIES:
        return f"{tool_name}({', '.join(f'{k}={v!r}' for k, v in args.items())})"
    return f"Unknown tool: {tool_name}"
