"""
Tool batch execution for one loop iteration.

Read-only calls run concurrently; writes, terminal commands and sub-agent
calls run one at a time in the order they were issued. Results always come
back in call order, one per call, with failures converted to error results.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Callable, Awaitable

from backend import Backend
from config import AgentConfig, agent_config
from sessions import SessionStore
from tools import (
    ToolResult,
    execute_tool,
    CACHEABLE_TOOLS,
    READ_ONLY_TOOLS,
    WRITE_TOOLS,
    TERMINAL_TOOLS,
    SUBAGENT_TOOL_NAME,
    invalidate_gitignore_cache,
)
from agent.approval import (
    ApprovalCancelled,
    ApprovalGate,
    compute_command_decision,
    compute_file_edit_decision,
)
from agent.checkpoints import CheckpointStore
from agent.control import ToolCall, tool_signature
from agent.events import EventSink

logger = logging.getLogger(__name__)

DENIAL_HINT = (
    "\n\n[SYSTEM NOTE: This action was denied by the user. Do NOT re-attempt the same call. "
    "Adjust your approach or explain what you need and why.]"
)
CACHE_HINT = (
    "\n\n[Note: Identical call already made this task; this is the cached result. "
    "Do not repeat this call.]"
)
EMPTY_FILE_HINT = "\n\n[Note: This file exists but is empty.]"
WRITE_OK_HINT = "\n\n[Note: File modified successfully. Diagnostics check passed.]"
WRITE_ERRORS_HINT = "\n[Note: Fix these errors before continuing with other changes.]"
NONZERO_EXIT_HINT = (
    "\n\n[Note: Command exited with a non-zero status. Investigate the error output "
    "before retrying with the same command.]"
)
DIAGNOSTICS_ERRORS_HINT = "\n\n[Note: Errors detected. Review and fix these before continuing with other changes.]"

_EXIT_CODE_RE = re.compile(r"Exit code:\s*(-?\d+)")


# ============================================================
# Results and cache
# ============================================================

@dataclass
class ToolCallResult:
    """Model-ready outcome of one tool call."""
    tool_name: str
    output: str
    is_error: bool = False
    is_write: bool = False
    arguments: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None
    denied: bool = False
    cached: bool = False

    def to_history(self) -> Dict[str, Any]:
        return {"tool_name": self.tool_name, "content": self.output, "tool_call_id": self.call_id}

    def to_record(self) -> Dict[str, Any]:
        """Row for the persisted message log."""
        return {
            "role": "tool",
            "content": self.output,
            "tool_name": self.tool_name,
            "tool_call_id": self.call_id,
            "tool_input": self.arguments,
            "is_error": self.is_error,
            "is_write": self.is_write,
            "denied": self.denied,
        }


@dataclass
class BatchResult:
    results: List[ToolCallResult] = field(default_factory=list)
    wrote_files: bool = False
    files_written: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


def _scope_contains(scope: Optional[str], path: str) -> bool:
    if not scope or scope in (".", "./"):
        return True
    scope = scope.replace("\\", "/").strip("/")
    if scope.startswith("./"):
        scope = scope[2:]
    return path == scope or path.startswith(scope + "/")


class ToolResultCache:
    """Per-run memo of side-effect-free tool outputs keyed by tool signature."""

    def __init__(self):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self.hits = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name: str, arguments: Dict[str, Any]) -> Optional[str]:
        entry = self._entries.get(tool_signature(name, arguments))
        if entry is None:
            return None
        self.hits += 1
        return entry["output"]

    def put(self, name: str, arguments: Dict[str, Any], output: str) -> None:
        if name not in CACHEABLE_TOOLS:
            return
        self._entries[tool_signature(name, arguments)] = {"name": name, "arguments": dict(arguments), "output": output}

    def invalidate_path(self, path: str) -> int:
        """Drop every cached result whose scope covers `path` (the path itself,
        a parent directory, or the whole workspace)."""
        stale = [
            sig for sig, entry in self._entries.items()
            if _scope_contains(entry["arguments"].get("path"), path)
        ]
        for sig in stale:
            del self._entries[sig]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


# ============================================================
# Runner
# ============================================================

@dataclass
class SessionContext:
    """Per-session collaborators and policy handed to every batch."""
    session_id: str
    backend: Backend
    events: EventSink
    approvals: ApprovalGate
    cancel_event: asyncio.Event
    checkpoints: Optional[CheckpointStore] = None
    store: Optional[SessionStore] = None
    config: AgentConfig = field(default_factory=lambda: agent_config)
    model_id: str = ""
    auto_approve_commands: bool = False
    auto_approve_sensitive_edits: bool = False
    sensitive_file_patterns: Optional[Dict[str, bool]] = None
    subagent_handler: Optional[Callable[[Dict[str, Any]], Awaitable[str]]] = None
    # Relative path -> mtime (ms) recorded right after our own write
    write_times: Dict[str, float] = field(default_factory=dict)
    read_only: bool = False


class ToolBatchRunner:
    """Executes tool batches for one task execution. Owns its result cache."""

    def __init__(self, cache: Optional[ToolResultCache] = None):
        self.cache = cache if cache is not None else ToolResultCache()

    async def execute_batch(self, calls: List[ToolCall], ctx: SessionContext) -> BatchResult:
        batch = BatchResult()
        cfg = ctx.config

        if len(calls) > cfg.hard_tool_batch_limit:
            dropped = len(calls) - cfg.hard_tool_batch_limit
            batch.notes.append(
                f"You requested {len(calls)} tools in one batch; only the first {cfg.hard_tool_batch_limit} "
                f"were executed and {dropped} were dropped. Execute a few tools, review results, then continue."
            )
            calls = calls[:cfg.hard_tool_batch_limit]
        elif len(calls) > cfg.soft_tool_batch_warning:
            batch.notes.append(
                f"You requested {len(calls)} tools in one batch. Use fewer, more targeted tool calls per iteration."
            )
            ctx.events.post("warning", f"Large tool batch ({len(calls)} calls)")

        results: List[Optional[ToolCallResult]] = [None] * len(calls)
        pending_reads: List[int] = []

        async def _flush_reads() -> None:
            if not pending_reads:
                return
            outcomes = await asyncio.gather(*[self._execute_one(calls[i], ctx) for i in pending_reads])
            for i, outcome in zip(pending_reads, outcomes):
                results[i] = outcome
            pending_reads.clear()

        for index, call in enumerate(calls):
            if call.name in READ_ONLY_TOOLS:
                pending_reads.append(index)
                continue
            await _flush_reads()
            results[index] = await self._execute_one(call, ctx)
        await _flush_reads()

        for result in results:
            batch.results.append(result)
            if result.is_write and not result.is_error:
                batch.wrote_files = True
                path = result.arguments.get("path", "")
                if path and path not in batch.files_written:
                    batch.files_written.append(path)
        return batch

    # ------------------------------------------------------------------
    # Single call
    # ------------------------------------------------------------------

    async def _execute_one(self, call: ToolCall, ctx: SessionContext) -> ToolCallResult:
        name = call.name
        args = dict(call.arguments or {})
        is_write = name in WRITE_TOOLS

        if ctx.cancel_event.is_set():
            return self._finish(ctx, ToolCallResult(
                tool_name=name, output="Error: Task cancelled before this call ran.",
                is_error=True, is_write=is_write, arguments=args, call_id=call.id,
            ))

        if ctx.read_only and name not in READ_ONLY_TOOLS:
            return self._finish(ctx, ToolCallResult(
                tool_name=name, output=f"Error: {name} is not available in read-only mode.",
                is_error=True, arguments=args, call_id=call.id,
            ))

        if name in CACHEABLE_TOOLS:
            cached = self.cache.get(name, args)
            if cached is not None:
                ctx.events.post("tool_action", f"{name} (cached)", status="success", tool_name=name, cached=True)
                return self._finish(ctx, ToolCallResult(
                    tool_name=name, output=cached + CACHE_HINT,
                    arguments=args, call_id=call.id, cached=True,
                ))

        ctx.events.post("tool_action", name, status="running", tool_name=name, arguments=_display_args(args))
        try:
            if name in TERMINAL_TOOLS:
                result = await self._run_terminal(args, ctx)
            elif is_write:
                result = await self._run_write(args, ctx)
            elif name == SUBAGENT_TOOL_NAME:
                result = await self._run_subagent(args, ctx)
            else:
                result = await self._run_tool(name, args, ctx)
        except (asyncio.CancelledError, ApprovalCancelled):
            raise
        except Exception as e:
            logger.exception(f"Tool {name} failed")
            result = ToolCallResult(tool_name=name, output=f"Error: {e}", is_error=True)

        result.tool_name = name
        result.arguments = args
        result.call_id = call.id
        result.is_write = is_write and not result.denied

        if name in CACHEABLE_TOOLS and not result.is_error:
            self.cache.put(name, args, result.output)

        ctx.events.emit(
            "tool_action", name,
            status="denied" if result.denied else ("error" if result.is_error else "success"),
            tool_name=name,
        )
        return self._finish(ctx, result)

    def _finish(self, ctx: SessionContext, result: ToolCallResult) -> ToolCallResult:
        if ctx.store is not None and ctx.session_id:
            try:
                ctx.store.append_message(ctx.session_id, result.to_record())
            except OSError as e:
                logger.warning(f"Failed to persist tool result for {result.tool_name}: {e}")
        return result

    # ------------------------------------------------------------------
    # Tool kinds
    # ------------------------------------------------------------------

    async def _invoke(self, name: str, args: Dict[str, Any], ctx: SessionContext) -> ToolResult:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, lambda: execute_tool(name, args, ctx.backend.working_directory, backend=ctx.backend)
        )

    async def _run_tool(self, name: str, args: Dict[str, Any], ctx: SessionContext) -> ToolCallResult:
        result = await self._invoke(name, args, ctx)
        if not result.success:
            return ToolCallResult(tool_name=name, output=f"Error: {result.error}", is_error=True)
        output = result.output
        if name == "read_file" and output.strip() in ("", "[0 lines total]"):
            output += EMPTY_FILE_HINT
        elif name == "get_diagnostics" and re.search(r"\berror\b", output, re.IGNORECASE):
            output += DIAGNOSTICS_ERRORS_HINT
        return ToolCallResult(tool_name=name, output=output)

    async def _run_terminal(self, args: Dict[str, Any], ctx: SessionContext) -> ToolCallResult:
        name = "run_terminal_command"
        command = str(args.get("command") or "").strip()
        if not command:
            return ToolCallResult(tool_name=name, output="Error: No command provided for terminal execution.", is_error=True)

        cwd = args.get("cwd") or "."
        decision = compute_command_decision(
            command, ctx.auto_approve_commands, ctx.config.auto_approve_max_severity,
        )
        if decision["requires_approval"]:
            request = ctx.approvals.new_request("command", {
                "command": command,
                "cwd": cwd,
                "severity": decision["severity"],
                "reason": decision["reason"],
            })
            ctx.events.emit("approval_request", command, **request.payload, kind="command")
            await ctx.approvals.wait(request, ctx.cancel_event)
            if request.status != "approved":
                ctx.events.emit("approval_result", "Command skipped by user.", id=request.id, status="skipped")
                return ToolCallResult(tool_name=name, output="Command skipped by user." + DENIAL_HINT, denied=True)
            edited = (request.resolved_payload or {}).get("command")
            if edited and edited.strip() and edited.strip() != command:
                logger.info(f"Approver edited command: {command!r} -> {edited.strip()!r}")
                args["command"] = edited.strip()
            ctx.events.emit("approval_result", args["command"], id=request.id, status="running")
        else:
            ctx.events.emit(
                "approval_result", command, status="running", auto_approved=True,
                severity=decision["severity"], reason=decision["reason"],
            )

        result = await self._invoke(name, args, ctx)
        if not result.output:
            return ToolCallResult(tool_name=name, output=f"Error: {result.error}", is_error=True)
        output = result.output
        match = _EXIT_CODE_RE.search(output)
        if match and match.group(1) != "0":
            output += NONZERO_EXIT_HINT
        return ToolCallResult(tool_name=name, output=output, is_error=not result.success)

    async def _run_write(self, args: Dict[str, Any], ctx: SessionContext) -> ToolCallResult:
        name = "write_file"
        path = str(args.get("path") or "").strip()
        if not path:
            return ToolCallResult(tool_name=name, output="Error: path is required", is_error=True)
        rel = ctx.backend.relative_path(path)

        patterns = ctx.sensitive_file_patterns or ctx.config.sensitive_file_patterns
        sensitivity = compute_file_edit_decision(
            rel, patterns, ctx.auto_approve_sensitive_edits, ctx.config.auto_approve_max_severity,
        )
        if sensitivity["requires_approval"]:
            request = ctx.approvals.new_request("file-edit", {
                "path": rel,
                "severity": sensitivity["severity"],
                "reason": f"Matches sensitive pattern {sensitivity['pattern']}",
            })
            ctx.events.emit("approval_request", rel, **request.payload, kind="file-edit")
            await ctx.approvals.wait(request, ctx.cancel_event)
            if request.status != "approved":
                ctx.events.emit("approval_result", "File edit skipped by user.", id=request.id, status="skipped")
                return ToolCallResult(tool_name=name, output="File edit skipped by user." + DENIAL_HINT, denied=True)
            ctx.events.emit("approval_result", rel, id=request.id, status="approved")

        if ctx.checkpoints is not None and ctx.checkpoints.active_id:
            async with ctx.checkpoints.lock_for(rel):
                ctx.checkpoints.snapshot_before_edit(rel)
                result = await self._invoke(name, args, ctx)
        else:
            result = await self._invoke(name, args, ctx)

        if not result.success:
            return ToolCallResult(tool_name=name, output=f"Error: {result.error}", is_error=True)

        mtime = ctx.backend.stat_mtime(rel)
        if mtime is not None:
            ctx.write_times[rel] = mtime
        self.cache.invalidate_path(rel)
        if os.path.basename(rel) == ".gitignore":
            invalidate_gitignore_cache(ctx.backend.working_directory)
            self.cache.clear()
        ctx.events.post("files_changed", rel, path=rel, checkpoint_id=ctx.checkpoints.active_id if ctx.checkpoints else None)

        errors = await self.await_diagnostics(rel, ctx)
        if errors:
            block = f"\n\n[AUTO-DIAGNOSTICS] {len(errors)} error(s) detected after writing:\n" + "\n".join(
                d.format() for d in errors
            )
            return ToolCallResult(tool_name=name, output=result.output + block + WRITE_ERRORS_HINT)
        return ToolCallResult(tool_name=name, output=result.output + WRITE_OK_HINT)

    async def _run_subagent(self, args: Dict[str, Any], ctx: SessionContext) -> ToolCallResult:
        if ctx.subagent_handler is None:
            return ToolCallResult(tool_name=SUBAGENT_TOOL_NAME, output="Error: Sub-agents are not available here.", is_error=True)
        if not str(args.get("task") or "").strip():
            return ToolCallResult(tool_name=SUBAGENT_TOOL_NAME, output="Error: task is required", is_error=True)
        output = await ctx.subagent_handler(args)
        output = output or "(sub-agent returned no findings)"
        return ToolCallResult(tool_name=SUBAGENT_TOOL_NAME, output=output, is_error=output.startswith("Error:"))

    async def await_diagnostics(self, path: str, ctx: SessionContext) -> list:
        """Error-severity diagnostics for a file, bounded by the configured
        timeout. A timeout or checker failure counts as no errors."""
        loop = asyncio.get_event_loop()
        timeout = ctx.config.diagnostics_timeout_ms / 1000.0
        try:
            diagnostics = await asyncio.wait_for(
                loop.run_in_executor(None, ctx.backend.get_diagnostics, path), timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Diagnostics for {path} timed out after {timeout}s")
            return []
        except (OSError, ValueError) as e:
            logger.warning(f"Diagnostics for {path} failed: {e}")
            return []
        return [d for d in diagnostics if d.severity == "error"]


def _display_args(args: Dict[str, Any]) -> Dict[str, Any]:
    """Arguments for UI events, without bulky file content."""
    return {k: (f"<{len(v)} chars>" if k == "content" and isinstance(v, str) else v) for k, v in args.items()}

