"""
System prompt composition and the fixed messages the control loop injects.
"""

import json
import os
from typing import Any, Dict, List, Optional

from tools import ToolResult

from .models import ToolCall, serialize_input


# ============================================================
# System prompt modules
# ============================================================

_MOD_IDENTITY = """You are an autonomous software engineer working inside a real workspace on the user's machine. You have direct access to its files and a shell through the tools listed below.

You investigate before acting and verify after changing. You work in iterations: each reply either calls tools or, when the task is done, gives the final answer."""

_MOD_WORKFLOW = """<workflow>
1. Explore: list the workspace root once, then read only the files that matter.
2. Implement: make the requested changes with write_file or edit_file. Batch independent calls in one reply.
3. Finish: call attempt_completion with a complete summary of what you did or found.
</workflow>

<rules>
- Never read the same file twice. Earlier results stay in the conversation.
- Never repeat an identical tool call. Repeated calls are blocked.
- Read before editing. edit_file needs old_string to match the file exactly.
- Use bash_command only for things the file tools cannot do (running tests, builds, git).
- If the task is a question, answer it directly once you have the facts.
</rules>"""

_MOD_TEXT_TOOL_FORMAT = """<tool_format>
Call tools with XML tags named after the tool. Parameters are child tags:

<read_file>
<file_path>src/app.py</file_path>
</read_file>

Or a JSON body:

<list_directory>{"path": "."}</list_directory>

You may call several tools in one reply. Every reply that is not the final answer MUST contain at least one tool call.
</tool_format>"""

_MOD_STRUCTURED_TOOL_FORMAT = """<tool_format>
Call tools through the tool-use interface. You may call several tools in one reply.
</tool_format>"""

_MOD_LANG_PYTHON = """<language_conventions lang="python">
- PEP 8 naming; match the project's existing typing and docstring style.
- Keep imports ordered stdlib, third-party, local.
</language_conventions>"""

_MOD_LANG_JAVASCRIPT = """<language_conventions lang="javascript/typescript">
- Prefer const over let. Never use var.
- Match existing patterns: module system, component style, state management.
</language_conventions>"""

_MOD_LANG_JAVA = """<language_conventions lang="java">
- Follow the Maven/Gradle layout and the project's existing exception and logging patterns.
</language_conventions>"""

LANG_MODULES = {
    "python": _MOD_LANG_PYTHON,
    "java": _MOD_LANG_JAVA,
    "javascript": _MOD_LANG_JAVASCRIPT,
    "typescript": _MOD_LANG_JAVASCRIPT,
}


def detect_project_language(working_directory: str) -> Optional[str]:
    """Detect the primary language of a project from manifest files."""
    checks = [
        ("pyproject.toml", "python"),
        ("requirements.txt", "python"),
        ("setup.py", "python"),
        ("tsconfig.json", "typescript"),
        ("package.json", "javascript"),
        ("pom.xml", "java"),
        ("build.gradle", "java"),
    ]
    for filename, lang in checks:
        if os.path.exists(os.path.join(working_directory, filename)):
            return lang
    return None


def _describe_tools(definitions: List[Dict[str, Any]]) -> str:
    lines = []
    for d in definitions:
        schema = d.get("input_schema", {})
        required = set(schema.get("required", []))
        params = ", ".join(
            f"{name}{'' if name in required else '?'}: {spec.get('type', 'any')}"
            for name, spec in schema.get("properties", {}).items()
        )
        lines.append(f"- {d['name']}({params}): {d.get('description', '')}")
    return "\n".join(lines)


def compose_system_prompt(working_directory: str, tool_definitions: List[Dict[str, Any]],
                          structured_tools: bool = True, language: Optional[str] = None) -> str:
    """Assemble the system prompt. Text-mode models get the XML calling convention."""
    parts = [
        _MOD_IDENTITY,
        _MOD_WORKFLOW,
        _MOD_STRUCTURED_TOOL_FORMAT if structured_tools else _MOD_TEXT_TOOL_FORMAT,
    ]
    if language and language in LANG_MODULES:
        parts.append(LANG_MODULES[language])
    parts.append(f"<tools_available>\n{_describe_tools(tool_definitions)}\n</tools_available>")
    parts.append(f"<working_directory>{working_directory}</working_directory>")
    return "\n\n".join(parts)


# ============================================================
# Injected messages
# ============================================================

def goal_message(goal: str) -> str:
    return (
        f"{goal}\n\n"
        'Please start by exploring the workspace structure using list_directory with path="." '
        "to understand the project structure, then implement what I've requested by creating "
        "or modifying the necessary files."
    )


SOLICIT_FINAL_ANSWER = "Based on the information gathered, please provide your final comprehensive answer."
CONTINUE_ANALYSIS = "Continue with your analysis. Use additional tools if needed, or provide your final answer."
REQUEST_DETAILED_ANSWER = (
    "Please provide a more detailed final answer based on the files you analyzed. "
    "What specific information did you find that answers the user's question?"
)
REQUEST_CLEAR_RESPONSE = (
    "Please provide a clear response to complete the task. "
    "What have you found based on the tools you executed?"
)
MAX_ITERATIONS_SUMMARY = (
    "You have reached the maximum number of iterations. "
    "Please provide a final summary based on all the information you have gathered so far."
)


def validation_error_message(tool_names: List[str], errors: List[str]) -> str:
    detail = "\n".join(f"- {e}" for e in errors)
    return (
        "The tool calls you provided had validation errors. Please retry with proper format. "
        f"Available tools: {', '.join(tool_names)}. "
        "Make sure to provide all required parameters correctly."
        + (f"\n\nErrors:\n{detail}" if detail else "")
    )


# ============================================================
# History rendering
# ============================================================

def render_tool_calls(tool_calls: List[ToolCall]) -> str:
    """Text form of structured calls, stored with the assistant turn."""
    return "\n".join(f"<{c.name}>{json.dumps(c.input, ensure_ascii=False)}</{c.name}>" for c in tool_calls)


def format_tool_result_line(call: ToolCall, result: ToolResult, preview_chars: int) -> str:
    """
    One folded result: [✓] name {input}: output, or [✗] name {input}: error.

    A failed call that still produced output (a non-zero exit, say) carries
    that output on the following lines, cut the same way.
    """
    args = serialize_input(call.input)
    if len(args) > 120:
        args = args[:120] + "...}"
    output = result.output or ""
    if len(output) > preview_chars:
        output = output[:preview_chars] + "...[cut]"
    if not result.success:
        line = f"[✗] {call.name} {args}: {result.error or 'Failed'}"
        return f"{line}\n{output}" if output else line
    return f"[✓] {call.name} {args}: {output}"


def fold_tool_results(calls: List[ToolCall], results: List[ToolResult], preview_chars: int,
                      instruction: str) -> str:
    body = "\n\n".join(format_tool_result_line(c, r, preview_chars) for c, r in zip(calls, results))
    return f"{body}\n\n{instruction}"
