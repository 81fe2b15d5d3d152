"""Shared types for the tools package."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None


def _require_arg(value: Optional[str], name: str = "path") -> Optional[ToolResult]:
    """Return an error ToolResult if a required string argument is empty/whitespace; else None."""
    if not (value or "").strip():
        return ToolResult(success=False, output="", error=f"{name} is required")
    return None
