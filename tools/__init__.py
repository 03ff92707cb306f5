"""
Tool definitions and implementations for the coding agent.
Each tool has an Anthropic-compatible schema, a scheduling category and an
implementation function that works through a Backend.
"""

from tools._common import (  # noqa: F401
    ToolResult,
    ToolValidationError,
    READ_ONLY,
    MUTATING,
    OTHER,
    COMPLETION,
    CATEGORIES,
)
from tools.file_ops import read_file, write_file, edit_file  # noqa: F401
from tools.search_ops import list_directory, grep_search  # noqa: F401
from tools.external_ops import bash_command, attempt_completion  # noqa: F401
from tools.schemas import TOOL_DEFINITIONS, TOOL_CATEGORIES, BASIC_OPERATIONS  # noqa: F401
from tools.registry import ToolSpec, ToolRegistry, default_registry  # noqa: F401
from tools.dispatch import needs_approval, describe_tool_call, is_safe_command  # noqa: F401
