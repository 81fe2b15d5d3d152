"""File operation tools: read, write, diagnostics."""

import difflib
import logging
from typing import Any, List, Optional, Tuple

from backend import Backend, LocalBackend
from tools._common import ToolResult, _require_arg

logger = logging.getLogger(__name__)


def _extract_structure(lines: List[str]) -> str:
    """Extract a structural summary from source code: imports, classes, functions."""
    structure = []
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith(("import ", "from ")) and i < 50:
            structure.append(f"{i+1:6}|{line.rstrip()}")
        elif stripped.startswith(("class ", "def ", "async def ", "function ", "export ")):
            structure.append(f"{i+1:6}|{line.rstrip()}")
    return "\n".join(structure)


_MAX_FULL_READ_LINES = 500


def read_file(path: str, offset: Optional[int] = None, limit: Optional[int] = None,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Read the contents of a file. Returns line-numbered content."""
    err = _require_arg(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.file_exists(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}")

        content = b.read_file(path)
        lines = content.splitlines(keepends=True)
        total_lines = len(lines)

        if offset is not None or limit is not None:
            start = max((offset or 1) - 1, 0)
            end = start + (limit or total_lines)
            selected = lines[start:end]
            line_start = start + 1
            numbered = [f"{line_start + i:6}|{line.rstrip()}" for i, line in enumerate(selected)]
            header = f"[{total_lines} lines total] (showing lines {line_start}-{line_start + len(selected) - 1})"
            return ToolResult(success=True, output=header + "\n" + "\n".join(numbered))

        if total_lines <= _MAX_FULL_READ_LINES:
            numbered = [f"{i+1:6}|{line.rstrip()}" for i, line in enumerate(lines)]
            return ToolResult(success=True, output=f"[{total_lines} lines total]\n" + "\n".join(numbered))

        # Large file: structural overview + head + tail
        structure = _extract_structure(lines)
        head_n, tail_n = 80, 40
        omitted = total_lines - head_n - tail_n
        head = [f"{i+1:6}|{lines[i].rstrip()}" for i in range(head_n)]
        tail = [f"{total_lines - tail_n + i + 1:6}|{lines[total_lines - tail_n + i].rstrip()}" for i in range(tail_n)]
        parts = [
            f"[{total_lines} lines total, file is large: showing overview + head + tail]",
            "[Use offset/limit to read specific sections]", "",
            "-- structure --", structure, "",
            f"-- first {head_n} lines --", "\n".join(head),
            f"\n  ... ({omitted} lines omitted, use offset={head_n + 1} limit=N to read more) ...\n",
            f"-- last {tail_n} lines --", "\n".join(tail),
        ]
        return ToolResult(success=True, output="\n".join(parts))
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def diff_line_counts(old_content: str, new_content: str) -> Tuple[int, int]:
    """(added, removed) line counts between two versions of a file."""
    added = removed = 0
    for line in difflib.unified_diff(old_content.splitlines(), new_content.splitlines(), lineterm="", n=0):
        if line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return added, removed


def write_file(path: str, content: str,
               backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Create a new file or completely overwrite an existing file."""
    err = _require_arg(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        old_content = ""
        is_new = not b.file_exists(path)
        if not is_new:
            old_content = b.read_file(path)
        b.write_file(path, content)
        line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        if is_new:
            return ToolResult(success=True, output=f"Created {path} ({line_count} lines) +{line_count}")
        added, removed = diff_line_counts(old_content, content)
        return ToolResult(success=True, output=f"Wrote {line_count} lines to {path} +{added} -{removed}")
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def get_diagnostics(path: str,
                    backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Report current diagnostics for a file."""
    err = _require_arg(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.file_exists(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}")
        diagnostics = b.get_diagnostics(path)
        if not diagnostics:
            return ToolResult(success=True, output=f"No problems found in {path}")
        lines = [f"[{d.severity}] {d.format()}" for d in diagnostics]
        return ToolResult(success=True, output=f"{len(lines)} problem(s) in {path}:\n" + "\n".join(lines))
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))
