"""Terminal tool: run a shell command inside the workspace."""

import logging
from typing import Any, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult, _require_arg

logger = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 20000


def _truncate_output(output: str) -> str:
    if len(output) <= _MAX_OUTPUT_CHARS:
        return output
    lines_out = output.split("\n")
    if len(lines_out) > 200:
        return "\n".join(lines_out[:100]) + f"\n\n... [{len(lines_out) - 150} lines truncated] ...\n\n" + "\n".join(lines_out[-50:])
    return output[:10000] + "\n\n... [truncated] ...\n\n" + output[-5000:]


def run_terminal_command(command: str, cwd: Optional[str] = None, timeout: int = 60,
                         backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Execute a shell command. The output always ends with its exit code."""
    err = _require_arg(command, "command")
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        stdout, stderr, rc = b.run_command(command, cwd=cwd or ".", timeout=timeout)

        parts = []
        if stdout:
            parts.append(stdout.rstrip("\n"))
        if stderr:
            parts.append(f"[stderr]\n{stderr.rstrip()}")
        output = "\n".join(parts) if parts else "(no output)"
        output = _truncate_output(output) + f"\n\nExit code: {rc}"

        return ToolResult(
            success=rc == 0, output=output,
            error=None if rc == 0 else f"Command exited with code {rc}",
        )
    except ValueError as e:
        return ToolResult(success=False, output="", error=str(e))
    except Exception as e:
        if "timed out" in str(e).lower() or "TimeoutExpired" in type(e).__name__:
            return ToolResult(success=False, output="", error=f"Command timed out after {timeout}s")
        return ToolResult(success=False, output="", error=str(e))
