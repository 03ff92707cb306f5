"""Tool registry: named tools with an input contract and a scheduling category."""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from backend import Backend, LocalBackend
from tools._common import CATEGORIES, OTHER, ToolResult, ToolValidationError
from tools.schemas import TOOL_CATEGORIES, TOOL_DEFINITIONS, TOOL_IMPLEMENTATIONS

logger = logging.getLogger(__name__)

_TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


@dataclass
class ToolSpec:
    name: str
    description: str
    input_schema: Dict[str, Any]
    category: str
    handler: Callable[..., ToolResult]

    @property
    def required(self) -> List[str]:
        return list(self.input_schema.get("required", []))

    @property
    def properties(self) -> Dict[str, Dict[str, Any]]:
        return dict(self.input_schema.get("properties", {}))

    def to_definition(self) -> Dict[str, Any]:
        """Provider-facing definition (Anthropic tool format)."""
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


class ToolRegistry:
    """Validates and executes tools against one workspace backend."""

    def __init__(self, working_directory: str = ".", backend: Optional[Backend] = None):
        self.backend = backend or LocalBackend(working_directory)
        self._tools: Dict[str, ToolSpec] = {}

    @property
    def working_directory(self) -> str:
        return self.backend.working_directory

    def register(self, spec: ToolSpec) -> None:
        if spec.category not in CATEGORIES:
            raise ValueError(f"Unknown tool category for {spec.name}: {spec.category}")
        self._tools[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def category(self, name: str) -> str:
        """Declared category; unknown tools are scheduled as "other"."""
        spec = self._tools.get(name)
        return spec.category if spec else OTHER

    def tools_in(self, category: str) -> List[str]:
        return [name for name, spec in self._tools.items() if spec.category == category]

    def definitions(self) -> List[Dict[str, Any]]:
        return [spec.to_definition() for spec in self._tools.values()]

    def validate(self, name: str, tool_input: Any) -> None:
        """Raise ToolValidationError unless tool_input satisfies the tool's contract.

        Required parameters must be present and non-null; optional ones may be null.
        """
        spec = self._tools.get(name)
        if spec is None:
            raise ToolValidationError(name, [f"Unknown tool: {name}"])
        if not isinstance(tool_input, dict):
            raise ToolValidationError(name, ["Input must be an object"])

        errors = []
        required = set(spec.required)
        for param in spec.required:
            if tool_input.get(param) is None:
                errors.append(f"Missing required parameter: {param}")
        for param, schema in spec.properties.items():
            value = tool_input.get(param)
            if value is None:
                continue
            expected = schema.get("type")
            check = _TYPE_CHECKS.get(expected)
            if check and not check(value):
                errors.append(f"Parameter {param} must be of type {expected}, got {type(value).__name__}")
        if errors:
            logger.debug(f"Validation failed for {name}: {errors} (required: {sorted(required)})")
            raise ToolValidationError(name, errors)

    def coerce(self, name: str, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        """Convert string values from text markup to the declared scalar types where unambiguous."""
        spec = self._tools.get(name)
        if spec is None:
            return dict(tool_input)
        result = dict(tool_input)
        for param, schema in spec.properties.items():
            value = result.get(param)
            if not isinstance(value, str):
                continue
            expected = schema.get("type")
            text = value.strip()
            if expected == "boolean" and text.lower() in ("true", "false"):
                result[param] = text.lower() == "true"
            elif expected in ("number", "integer"):
                try:
                    result[param] = int(text)
                except ValueError:
                    try:
                        result[param] = float(text)
                    except ValueError:
                        pass
        return result

    def execute(self, name: str, tool_input: Dict[str, Any]) -> ToolResult:
        """Validate then run a tool. Never raises for tool failures."""
        try:
            self.validate(name, tool_input)
        except ToolValidationError as e:
            return ToolResult(success=False, error=str(e))

        spec = self._tools[name]
        try:
            return spec.handler(**tool_input, backend=self.backend, working_directory=self.working_directory)
        except TypeError as e:
            return ToolResult(success=False, error=f"Invalid arguments for {name}: {e}")
        except Exception as e:
            logger.exception(f"Tool execution error: {name}")
            return ToolResult(success=False, error=f"Tool error: {e}")


def default_registry(working_directory: str = ".", backend: Optional[Backend] = None) -> ToolRegistry:
    """Registry with the built-in workspace tools."""
    registry = ToolRegistry(working_directory, backend)
    for definition in TOOL_DEFINITIONS:
        name = definition["name"]
        registry.register(ToolSpec(
            name=name,
            description=definition["description"],
            input_schema=definition["input_schema"],
            category=TOOL_CATEGORIES[name],
            handler=TOOL_IMPLEMENTATIONS[name],
        ))
    return registry
