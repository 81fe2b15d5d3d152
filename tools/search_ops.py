"""Search, discovery, and navigation tools."""

import os
import re
import logging
from typing import Any, List, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult, _require_arg
from tools.gitignore import _load_gitignore, _is_ignored

logger = logging.getLogger(__name__)

_MAX_SEARCH_LINES = 100
_MAX_LIST_ENTRIES = 400


def search_workspace(query: str, path: Optional[str] = None, include: Optional[str] = None,
                     backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Search for a regex pattern using ripgrep (or grep fallback)."""
    err = _require_arg(query, "query")
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        result = b.search(query, path or ".", include=include)

        if not result:
            return ToolResult(success=True, output="No matches found.")

        lines = result.split("\n")
        if len(lines) > _MAX_SEARCH_LINES:
            result = "\n".join(lines[:_MAX_SEARCH_LINES]) + f"\n\n... [{len(lines) - _MAX_SEARCH_LINES} more matches truncated]"

        return ToolResult(success=True, output=result)
    except Exception as e:
        if "timed out" in str(e).lower():
            return ToolResult(success=False, output="", error="Search timed out")
        return ToolResult(success=False, output="", error=str(e))


def find_definition(symbolName: str, path: Optional[str] = None,
                    backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Find where a symbol is defined with language-aware regex heuristics."""
    err = _require_arg(symbolName, "symbolName")
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        sym = re.escape(symbolName.strip())
        definition_patterns = [
            rf"^\s*(async\s+)?def\s+{sym}\s*\(",
            rf"^\s*class\s+{sym}\b",
            rf"^\s*(export\s+)?(default\s+)?(async\s+)?function\s+{sym}\s*[(<]",
            rf"^\s*(export\s+)?(const|let|var)\s+{sym}\s*=",
            rf"^\s*(export\s+)?(interface|type|enum)\s+{sym}\b",
            rf"^\s*(pub\s+)?(fn|struct|trait)\s+{sym}\b",
            rf"^\s*func\s+(\([^)]*\)\s*)?{sym}\s*\(",
        ]
        hits: List[str] = []
        seen = set()
        for pat in definition_patterns:
            res = b.search(pat, path or ".")
            for line in (res or "").split("\n"):
                if line.strip() and line not in seen:
                    seen.add(line)
                    hits.append(line)
        if not hits:
            return ToolResult(success=True, output=f"No definition found for '{symbolName}'.")
        return ToolResult(success=True, output="\n".join(hits[:120]))
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def list_files(path: Optional[str] = None, recursive: bool = False,
               backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """List files and directories at a path, respecting .gitignore."""
    try:
        b = backend or LocalBackend(working_directory)
        target = path or "."

        if not b.is_dir(target):
            return ToolResult(success=False, output="", error=f"Not a directory: {target}")

        gi = _load_gitignore(b.working_directory)
        lines: List[str] = []

        def _walk(rel_dir: str, depth: int) -> None:
            for e in b.list_dir(rel_dir):
                if len(lines) >= _MAX_LIST_ENTRIES:
                    return
                name = e["name"]
                is_dir = e["type"] == "directory"
                rel = os.path.join(rel_dir, name) if rel_dir != "." else name
                if _is_ignored(rel.replace(os.sep, "/"), name, is_dir, gi):
                    continue
                indent = "  " * (depth + 1)
                if is_dir:
                    lines.append(f"{indent}{name}/")
                    if recursive:
                        _walk(rel, depth + 1)
                else:
                    lines.append(f"{indent}{name} ({_format_size(e.get('size', 0))})")

        _walk(target, 0)
        if not lines:
            return ToolResult(success=True, output=f"{target}/ (empty)")
        output = f"{target}/\n" + "\n".join(lines)
        if len(lines) >= _MAX_LIST_ENTRIES:
            output += f"\n... [listing truncated at {_MAX_LIST_ENTRIES} entries]"
        return ToolResult(success=True, output=output)
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}KB"
    return f"{size / (1024 * 1024):.1f}MB"
