"""Shared types for the tools package."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

# Tool categories, used by the scheduler to decide ordering and parallelism
READ_ONLY = "read-only"
MUTATING = "mutating"
OTHER = "other"
COMPLETION = "completion"

CATEGORIES = (READ_ONLY, MUTATING, OTHER, COMPLETION)


@dataclass(frozen=True)
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str = ""
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_metadata(self, **extra: Any) -> "ToolResult":
        """Return a copy with extra metadata merged in."""
        return replace(self, metadata={**self.metadata, **extra})


class ToolValidationError(ValueError):
    """Tool input does not satisfy the tool's declared contract"""

    def __init__(self, tool_name: str, errors: List[str]):
        self.tool_name = tool_name
        self.errors = list(errors)
        super().__init__(f"Invalid input for {tool_name}: {', '.join(self.errors)}")
