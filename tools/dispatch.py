"""Tool execution dispatch."""

import logging
from typing import Any, Dict, Optional

from backend import Backend
from tools._common import ToolResult
from tools.schemas import TOOL_IMPLEMENTATIONS, normalize_tool_name

logger = logging.getLogger(__name__)


def execute_tool(
    name: str,
    inputs: Dict[str, Any],
    working_directory: str = ".",
    backend: Optional[Backend] = None,
) -> ToolResult:
    """Execute a tool by name with the given inputs. Never raises for tool-level failures."""
    name = normalize_tool_name(name)
    impl = TOOL_IMPLEMENTATIONS.get(name)
    if not impl:
        return ToolResult(success=False, output="", error=f"Unknown tool: {name}")
    kwargs = dict(inputs or {}, working_directory=working_directory, backend=backend)
    try:
        return impl(**kwargs)
    except TypeError as e:
        return ToolResult(success=False, output="", error=f"Invalid arguments for {name}: {e}")
    except Exception as e:
        logger.exception(f"Tool execution error: {name}")
        return ToolResult(success=False, output="", error=f"Tool error: {e}")
