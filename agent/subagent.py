"""
Read-only sub-agents spawned by the `run_subagent` tool.

A child loop shares the parent's cancel signal and workspace but nothing
else: it has its own conversation, memory, deduplicator and cache, no
checkpoint, no persistence, and an event sink that only lets coarse progress
and problems through to the parent timeline.
"""

import logging
from dataclasses import replace
from typing import Dict, Any, Optional

from model_client import ModelClient, ModelInfo
from tools import SUBAGENT_TOOL_DEFINITIONS

from agent.events import SubagentEventSink
from agent.execution import AgentLoop, StopReason
from agent.runner import SessionContext

logger = logging.getLogger(__name__)

_MODE_INSTRUCTIONS = {
    "explore": "Map the relevant parts of the codebase and report where things live and how they connect.",
    "research": "Answer the question precisely, citing file paths and line numbers as evidence.",
}


class SubagentRunner:
    """Callable installed as SessionContext.subagent_handler."""

    def __init__(self, client: ModelClient, model: ModelInfo, parent: SessionContext):
        self.client = client
        self.model = model
        self.parent = parent

    def _child_context(self, label: str) -> SessionContext:
        return replace(
            self.parent,
            events=SubagentEventSink(self.parent.events, label=label),
            checkpoints=None,
            store=None,
            session_id="",
            subagent_handler=None,
            write_times={},
            read_only=True,
        )

    async def __call__(self, args: Dict[str, Any]) -> str:
        task = str(args.get("task") or "").strip()
        mode = str(args.get("mode") or "explore")
        label = str(args.get("title") or "").strip() or "Sub-agent"

        instruction = _MODE_INSTRUCTIONS.get(mode, _MODE_INSTRUCTIONS["explore"])
        child = AgentLoop(self.client, self._child_context(label), self.model, enable_thinking=False)
        logger.info(f"{label} started ({mode}): {task[:120]}")
        outcome = await child.run(
            f"{task}\n\n{instruction}",
            tool_catalog=SUBAGENT_TOOL_DEFINITIONS,
            max_iterations=self.parent.config.subagent_max_iterations,
        )
        logger.info(f"{label} finished: {outcome.stop_reason} after {outcome.iterations} iteration(s)")
        return format_findings(label, outcome.summary, outcome.stop_reason, outcome.error)


def format_findings(label: str, summary: str, stop_reason: str, error: Optional[str] = None) -> str:
    if stop_reason == StopReason.ERROR:
        return f"Error: {label} failed: {error or summary}"
    if stop_reason == StopReason.CANCELLED:
        return f"{label} was cancelled before finishing.\n\n{summary}"
    header = f"{label} findings"
    if stop_reason == StopReason.MAX_ITERATIONS:
        header += " (iteration limit reached, may be incomplete)"
    return f"{header}:\n\n{summary}"
