"""
Tool definitions and implementations for the agent runtime.
Each tool has an Anthropic-compatible schema and an implementation function.
Tools use a Backend abstraction for workspace and command operations.
"""

from tools._common import ToolResult  # noqa: F401
from tools.gitignore import invalidate_gitignore_cache  # noqa: F401
from tools.file_ops import read_file, write_file, get_diagnostics, diff_line_counts  # noqa: F401
from tools.search_ops import search_workspace, find_definition, list_files  # noqa: F401
from tools.terminal_ops import run_terminal_command  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    SUBAGENT_TOOL_DEFINITIONS,
    SUBAGENT_TOOL_NAME,
    TOOL_NAME_NORMALIZE,
    TOOL_IMPLEMENTATIONS,
    WRITE_TOOLS,
    TERMINAL_TOOLS,
    CACHEABLE_TOOLS,
    READ_ONLY_TOOLS,
    normalize_tool_name,
)
from tools.dispatch import execute_tool  # noqa: F401
