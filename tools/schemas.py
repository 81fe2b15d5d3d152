"""Tool schema definitions (Bedrock/Anthropic Messages API) and dispatch maps."""

from typing import Any, Dict, List

from tools.file_ops import read_file, write_file, get_diagnostics
from tools.search_ops import search_workspace, find_definition, list_files
from tools.terminal_ops import run_terminal_command


SUBAGENT_TOOL_NAME = "run_subagent"

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "type": "custom",
        "name": "read_file",
        "description": "Read a file from the workspace. Returns line-numbered content. Large files return a structural overview; use offset/limit to read specific sections.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the workspace root"},
                "offset": {"type": "integer", "description": "1-based line to start reading from"},
                "limit": {"type": "integer", "description": "Number of lines to read"},
            },
            "required": ["path"],
        },
    },
    {
        "type": "custom",
        "name": "write_file",
        "description": "Create a file or completely overwrite an existing one with the given content. Always read a file before overwriting it.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the workspace root"},
                "content": {"type": "string", "description": "Full new file content"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "type": "custom",
        "name": "list_files",
        "description": "List files and directories at a path, respecting .gitignore.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory relative to the workspace root (default: root)"},
                "recursive": {"type": "boolean", "description": "Include nested directories"},
            },
        },
    },
    {
        "type": "custom",
        "name": "search_workspace",
        "description": "Search file contents with a regular expression. Returns path:line:text matches.",
        "input_schema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Regex pattern to search for"},
                "path": {"type": "string", "description": "Directory to search in (default: workspace root)"},
                "include": {"type": "string", "description": "Glob filter, e.g. '*.py'"},
            },
            "required": ["query"],
        },
    },
    {
        "type": "custom",
        "name": "find_definition",
        "description": "Find where a function, class, type or constant is defined.",
        "input_schema": {
            "type": "object",
            "properties": {
                "symbolName": {"type": "string", "description": "Exact symbol name"},
                "path": {"type": "string", "description": "Limit the search to this directory"},
            },
            "required": ["symbolName"],
        },
    },
    {
        "type": "custom",
        "name": "get_diagnostics",
        "description": "Report current errors and warnings for a file.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path relative to the workspace root"},
            },
            "required": ["path"],
        },
    },
    {
        "type": "custom",
        "name": "run_terminal_command",
        "description": "Run a shell command in the workspace. Requires user approval unless auto-approved. Output ends with the exit code.",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Command line to execute"},
                "cwd": {"type": "string", "description": "Working directory relative to the workspace root"},
                "timeout": {"type": "integer", "description": "Timeout in seconds (default: 60)"},
            },
            "required": ["command"],
        },
    },
    {
        "type": "custom",
        "name": SUBAGENT_TOOL_NAME,
        "description": "Delegate a read-only investigation to an isolated sub-agent. It can read, list and search but never modify files. Returns its findings.",
        "input_schema": {
            "type": "object",
            "properties": {
                "task": {"type": "string", "description": "What the sub-agent should find out"},
                "mode": {"type": "string", "enum": ["explore", "research"], "description": "explore maps code, research answers a question (default: explore)"},
                "title": {"type": "string", "description": "Short label shown in progress output"},
            },
            "required": ["task"],
        },
    },
]

# Legacy / alternate names the model may emit
TOOL_NAME_NORMALIZE: Dict[str, str] = {
    "create_file": "write_file",
    "run_command": "run_terminal_command",
    "bash": "run_terminal_command",
    "search": "search_workspace",
    "list_directory": "list_files",
    "find_symbol": "find_definition",
}

TOOL_IMPLEMENTATIONS = {
    "read_file": read_file,
    "write_file": write_file,
    "list_files": list_files,
    "search_workspace": search_workspace,
    "find_definition": find_definition,
    "get_diagnostics": get_diagnostics,
    "run_terminal_command": run_terminal_command,
    # run_subagent is executed by the agent runtime, not here
}

WRITE_TOOLS = frozenset({"write_file"})
TERMINAL_TOOLS = frozenset({"run_terminal_command"})
# Side-effect-free within a run; results are memoized
CACHEABLE_TOOLS = frozenset({"search_workspace", "list_files", "find_definition"})
READ_ONLY_TOOLS = frozenset({"read_file", "get_diagnostics"}) | CACHEABLE_TOOLS

SUBAGENT_TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    t for t in TOOL_DEFINITIONS if t["name"] in READ_ONLY_TOOLS
]


def normalize_tool_name(name: str) -> str:
    return TOOL_NAME_NORMALIZE.get(name, name)
