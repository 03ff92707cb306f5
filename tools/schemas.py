"""Tool schema definitions (Bedrock/Anthropic Messages API) and category maps."""

from typing import Any, Dict, List

from tools._common import READ_ONLY, MUTATING, OTHER, COMPLETION
from tools.file_ops import read_file, write_file, edit_file
from tools.search_ops import list_directory, grep_search
from tools.external_ops import bash_command, attempt_completion


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "read_file",
        "description": "Read a file from the workspace. Returns line-numbered content. Files over 500 lines are cut to their first 200 lines; use offset/limit to read other sections. Never read the same file twice: earlier results are still in the conversation.",
        "input_schema": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path of the file to read, relative to the workspace root"},
                "offset": {"type": "number", "description": "1-based line to start reading from (optional)"},
                "limit": {"type": "number", "description": "Maximum number of lines to read (optional)"},
            },
            "required": ["file_path"],
        },
    },
    {
        "name": "list_directory",
        "description": "List files and directories at a path. Honours .gitignore. Use '.' for the workspace root.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path relative to the workspace root"},
                "recursive": {"type": "boolean", "description": "List subdirectories too (default: false)"},
                "max_depth": {"type": "number", "description": "Maximum depth when recursive (default: 3, max: 10)"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "grep_search",
        "description": "Search file contents with a regular expression. Returns path:line: text for each match (max 100 by default).",
        "input_schema": {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regular expression to search for"},
                "path": {"type": "string", "description": "Directory or file to search in (default: '.')"},
                "include": {"type": "string", "description": "Filename glob filter, e.g. '*.py'"},
                "max_results": {"type": "number", "description": "Maximum number of matches (default: 100)"},
            },
            "required": ["pattern"],
        },
    },
    {
        "name": "write_file",
        "description": "Create a new file or completely overwrite an existing one. Parent directories are created as needed.",
        "input_schema": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path of the file to write, relative to the workspace root"},
                "content": {"type": "string", "description": "Full file content"},
            },
            "required": ["file_path", "content"],
        },
    },
    {
        "name": "edit_file",
        "description": "Replace an exact string in a file. old_string must match exactly one location (including whitespace) unless replace_all is true.",
        "input_schema": {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path of the file to modify"},
                "old_string": {"type": "string", "description": "Exact text to replace"},
                "new_string": {"type": "string", "description": "Replacement text"},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence (default: false)"},
            },
            "required": ["file_path", "old_string", "new_string"],
        },
    },
    {
        "name": "bash_command",
        "description": "Run a shell command in the workspace root. Output is truncated when very long. Commands that install packages, delete files or change system state need user approval.",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The command to execute"},
                "timeout": {"type": "number", "description": "Timeout in seconds (default: 30, max: 300)"},
            },
            "required": ["command"],
        },
    },
    {
        "name": "attempt_completion",
        "description": "Finish the task. Call this once the goal is met, with a complete summary of what was done or found. Do not call any other tool in the same response unless it must run first.",
        "input_schema": {
            "type": "object",
            "properties": {
                "result": {"type": "string", "description": "The final answer presented to the user"},
                "command": {"type": "string", "description": "Optional command that demonstrates the result"},
            },
            "required": ["result"],
        },
    },
]


TOOL_CATEGORIES: Dict[str, str] = {
    "read_file": READ_ONLY,
    "list_directory": READ_ONLY,
    "grep_search": READ_ONLY,
    "write_file": MUTATING,
    "edit_file": MUTATING,
    "bash_command": OTHER,
    "attempt_completion": COMPLETION,
}


TOOL_IMPLEMENTATIONS = {
    "read_file": read_file,
    "list_directory": list_directory,
    "grep_search": grep_search,
    "write_file": write_file,
    "edit_file": edit_file,
    "bash_command": bash_command,
    "attempt_completion": attempt_completion,
}

# Auto-approved when AUTO_APPROVE_BASIC_OPERATIONS is on
BASIC_OPERATIONS = frozenset({
    "read_file", "list_directory", "grep_search", "write_file", "edit_file", "attempt_completion",
})
