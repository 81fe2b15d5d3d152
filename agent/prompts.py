"""
System prompt composition.
Assembles the identity, working rules and tool protocol fragments for a loop.
"""

import json
import os
from typing import List, Dict, Any, Optional

from agent.control import COMPLETION_MARKER


# ============================================================
# Prompt modules
# ============================================================

_MOD_IDENTITY = """You are an expert software engineer operating inside a real codebase on the user's machine. You have direct access to files, a terminal and the project's structure.

You investigate before acting, you verify after changing, and you never guess when you can check."""

_MOD_DOING_TASKS = """<doing_tasks>
- NEVER propose changes to code you haven't read. Read files first, then modify.
- Reading a file does not change it. To change a file you MUST call write_file with the full new content.
- Only make changes that are directly requested or clearly necessary. Keep solutions simple and focused.
- After each file edit, check the diagnostics reported in the tool result and fix any errors before moving on.
- If a tool result says an action was denied by the user, do not repeat it. Choose a different approach.
</doing_tasks>"""

_MOD_COMPLETION = f"""<completion>
When the task is fully done, reply with a short summary of what you changed and end with {COMPLETION_MARKER} on its own line.
Do not claim completion while errors remain in files you modified.
</completion>"""

_MOD_READ_ONLY = """<mission>
You are a read-only research sub-agent. You cannot modify files or run commands.
Explore the codebase with the available tools and report concrete findings: file paths, symbol names, line numbers and how the pieces connect.
</mission>"""

_MOD_TEXT_TOOLS = """<tool_protocol>
Call a tool by writing exactly one block per call:
<tool_call>{{"name": "<tool name>", "arguments": {{...}}}}</tool_call>
You may emit several blocks in one response. Tool results arrive in the next user message.

Available tools:
{catalog}
</tool_protocol>"""


def _format_catalog(tool_catalog: List[Dict[str, Any]]) -> str:
    lines = []
    for tool in tool_catalog:
        schema = tool.get("input_schema") or {}
        params = json.dumps(schema.get("properties") or {}, ensure_ascii=False)
        lines.append(f"- {tool['name']}: {tool.get('description', '')}\n  parameters: {params}")
    return "\n".join(lines)


def build_system_prompt(
    working_directory: str,
    tool_catalog: List[Dict[str, Any]],
    native_tools: bool = True,
    read_only: bool = False,
    extra: Optional[str] = None,
) -> str:
    """Compose the system prompt for one loop. Text-mode models get the tool
    catalog and call syntax inline; native-mode models receive it as tool specs."""
    parts = [_MOD_IDENTITY]
    parts.append(_MOD_READ_ONLY if read_only else _MOD_DOING_TASKS)
    if not native_tools:
        parts.append(_MOD_TEXT_TOOLS.format(catalog=_format_catalog(tool_catalog)))
    parts.append(_MOD_COMPLETION)
    parts.append(f"<environment>\nWorking directory: {os.path.abspath(working_directory)}\n</environment>")
    if extra:
        parts.append(extra)
    return "\n\n".join(parts)
