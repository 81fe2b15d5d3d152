"""
Agent loop: the per-task state machine tying the control plane, tool runner,
compactor, session memory and checkpoints together.

One AgentLoop instance runs one task. Iterations are strictly sequential;
concurrency only appears inside the model stream, approval waits and the
tool batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Set

from config import model_config, compute_effective_context_window
from model_client import ModelClient, ModelInfo, ChatRequest, CapabilityUnsupportedError
from tools import TOOL_DEFINITIONS, SUBAGENT_TOOL_DEFINITIONS, TERMINAL_TOOLS

from agent.approval import ApprovalCancelled
from agent.compactor import ContextCompactor, estimate_messages_tokens
from agent.control import (
    COMPLETION_MARKER,
    REPETITION_WARNING,
    NoToolDecision,
    ToolCallDeduplicator,
    build_continuation_message,
    build_tool_call_summary,
    check_no_tool_completion,
    is_completion_signaled,
    parse_tool_calls,
    remove_tool_calls,
    resolve_control_state,
    strip_control_packets,
    task_requires_terminal,
    task_requires_write,
)
from agent.conversation import ConversationHistory, Message
from agent.memory import SessionMemory, build_iteration_record
from agent.prompts import build_system_prompt
from agent.runner import ToolBatchRunner, SessionContext, ToolCallResult

logger = logging.getLogger(__name__)


TRUNCATION_DIRECTIVE = (
    "Your response was truncated due to the output length limit. Break your work into smaller pieces. "
    "Continue EXACTLY where you left off and do not repeat what you already said. "
    "If you were in the middle of a tool call, re-emit the complete tool call."
)
WRITE_REQUIRED_MESSAGE = (
    "You indicated the task is complete, but NO files have been modified. Reading a file does NOT change it. "
    "You MUST call write_file with the modified content to actually make changes. "
    "If no changes are truly needed, explain why explicitly."
)
TERMINAL_NUDGE_MESSAGE = (
    "You indicated the task is complete, but no terminal command was executed. If the task requires running "
    "a command (test, build, install, etc.), use run_terminal_command. If no command is needed, explain why "
    f"and respond with {COMPLETION_MARKER}."
)
REMAINING_ERRORS_MESSAGE = (
    f"You declared {COMPLETION_MARKER} but errors remain in modified files:\n\n{{errors}}\n\n"
    "Fix these errors before completing the task."
)
DONE_CHECK_MESSAGE = f"If you are done, respond with {COMPLETION_MARKER}. Otherwise, continue using tools."
EXTERNAL_CHANGE_NOTE = (
    "The following file(s) were modified externally (e.g. by a formatter, linter, or user edit) since you "
    "last wrote them: {files}. Re-read them if you need the latest content before making further changes. "
    "Do NOT revert external formatting changes."
)
ACTIVE_FILE_NOTE = "The user opened {path} in the editor. This may or may not be related to the current task."
TOKEN_USAGE_NOTE = (
    "Context usage: ~{pct}% ({remaining}% remaining). Be concise to preserve remaining context. "
    "Focus on completing the task efficiently."
)


class StopReason:
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class LoopOutcome:
    """Result of one task execution."""
    summary: str
    files_changed: List[str] = field(default_factory=list)
    stop_reason: str = StopReason.COMPLETED
    error: Optional[str] = None
    iterations: int = 0
    checkpoint_id: Optional[str] = None


@dataclass
class _StreamResult:
    content: str = ""
    reasoning: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    stop_reason: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    cancelled: bool = False


@dataclass
class _RunState:
    """Mutable per-run bookkeeping. Never outlives one run()."""
    task: str
    max_iterations: int
    iteration: int = 0
    phase: str = "starting"
    thinking_enabled: bool = False
    has_written_files: bool = False
    files_changed: List[str] = field(default_factory=list)
    consecutive_no_tool: int = 0
    terminal_run: bool = False
    terminal_nudge_sent: bool = False
    verification_done: bool = False
    last_prompt_tokens: Optional[int] = None
    token_notes_sent: Set[int] = field(default_factory=set)
    last_active_file: Optional[str] = None
    explanations: List[str] = field(default_factory=list)


def _result_digest(results: List[ToolCallResult]) -> str:
    """`name: status` per call, in issue order."""
    parts = []
    for r in results:
        status = "denied" if r.denied else ("cached" if r.cached else ("error" if r.is_error else "ok"))
        parts.append(f"{r.tool_name}: {status}")
    return "; ".join(parts)


class AgentLoop:
    """Runs one task to completion, cancellation, error or budget exhaustion.

    The loop owns its conversation, deduplicator and run state. Session-scoped
    collaborators (memory, checkpoints, approvals, event sink, persistence)
    arrive through the SessionContext and constructor so concurrent sessions
    never share state.
    """

    def __init__(
        self,
        client: ModelClient,
        ctx: SessionContext,
        model: ModelInfo,
        memory: Optional[SessionMemory] = None,
        runner: Optional[ToolBatchRunner] = None,
        compactor: Optional[ContextCompactor] = None,
        system_prompt: Optional[str] = None,
        prior_messages: Optional[List[Message]] = None,
        enable_thinking: Optional[bool] = None,
        max_tokens: Optional[int] = None,
    ):
        self.client = client
        self.ctx = ctx
        self.model = model
        cfg = ctx.config
        self.memory = memory if memory is not None else SessionMemory()
        self.runner = runner if runner is not None else ToolBatchRunner()
        self.compactor = compactor if compactor is not None else ContextCompactor(
            summarize=self._summarize,
            threshold=cfg.compaction_threshold,
            preserve_recent=cfg.compaction_preserve_recent,
            min_messages=cfg.compaction_min_messages,
            message_char_cap=cfg.summary_message_char_cap,
        )
        self.deduplicator = ToolCallDeduplicator(
            window=cfg.dedup_window, expiry=cfg.dedup_expiry, max_batch=cfg.max_tools_per_batch,
        )
        self.system_prompt = system_prompt
        self.prior_messages = prior_messages
        if enable_thinking is None:
            enable_thinking = model_config.enable_thinking
        self.enable_thinking = enable_thinking and model.supports_thinking
        self.max_tokens = max_tokens or model_config.max_tokens
        self.native_tools = model.supports_native_tools
        self.window = compute_effective_context_window(model.context_window, cfg)
        self.history: Optional[ConversationHistory] = None
        self.checkpoint_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        task: str,
        tool_catalog: Optional[List[Dict[str, Any]]] = None,
        max_iterations: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> LoopOutcome:
        ctx = self.ctx
        if cancel_event is not None:
            ctx.cancel_event = cancel_event
        if tool_catalog is None:
            tool_catalog = SUBAGENT_TOOL_DEFINITIONS if ctx.read_only else TOOL_DEFINITIONS
        max_iterations = max_iterations or ctx.config.max_iterations

        system_prompt = self.system_prompt or build_system_prompt(
            ctx.backend.working_directory, tool_catalog, self.native_tools, ctx.read_only,
        )
        history = ConversationHistory(system_prompt, task, self.native_tools, prior=self.prior_messages)
        self.history = history
        self.memory.task = task

        state = _RunState(task=task, max_iterations=max_iterations, thinking_enabled=self.enable_thinking)
        state.last_active_file = ctx.backend.active_file()

        checkpoint_id = None
        if ctx.checkpoints is not None:
            checkpoint_id = ctx.checkpoints.create_checkpoint().id
        self.checkpoint_id = checkpoint_id
        self._persist({"role": "user", "content": task})

        logger.info(
            f"Task started (model: {self.model.model_id}, native tools: {self.native_tools}, "
            f"window: {self.window}, max iterations: {max_iterations})"
        )

        stop_reason = StopReason.MAX_ITERATIONS
        error_text = None
        try:
            while state.iteration < max_iterations:
                if ctx.cancel_event.is_set():
                    stop_reason = StopReason.CANCELLED
                    break
                state.iteration += 1
                try:
                    stop = await self._iterate(history, state, tool_catalog)
                except ApprovalCancelled:
                    stop = StopReason.CANCELLED
                except Exception as e:
                    error_text = self._format_fatal(e, state)
                    logger.error(error_text)
                    ctx.events.emit("error", error_text, phase=state.phase, iteration=state.iteration)
                    stop = StopReason.ERROR
                if stop is not None:
                    stop_reason = stop
                    break
            else:
                ctx.events.emit("warning", f"Reached maximum iterations ({max_iterations}). Stopping.")
        finally:
            self._save_memory()

        summary = self._build_summary(state, stop_reason, error_text)
        logger.info(f"Task finished: {stop_reason} after {state.iteration} iteration(s), {len(state.files_changed)} file(s) changed")
        ctx.events.emit(
            "done", summary, stop_reason=stop_reason, files_changed=list(state.files_changed),
            checkpoint_id=checkpoint_id, iterations=state.iteration,
        )
        return LoopOutcome(
            summary=summary,
            files_changed=list(state.files_changed),
            stop_reason=stop_reason,
            error=error_text,
            iterations=state.iteration,
            checkpoint_id=checkpoint_id,
        )

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    async def _iterate(
        self, history: ConversationHistory, state: _RunState, tool_catalog: List[Dict[str, Any]],
    ) -> Optional[str]:
        """Run one iteration. Returns a stop reason, or None to keep looping."""
        ctx = self.ctx
        cfg = ctx.config
        iteration = state.iteration

        if iteration > 1:
            state.phase = "preparing context"
            await self._prepare_iteration(history, state)

        state.phase = "streaming response"
        streamed = await self._stream_with_retry(history, state, tool_catalog)
        if streamed.prompt_tokens:
            state.last_prompt_tokens = streamed.prompt_tokens

        if streamed.cancelled or ctx.cancel_event.is_set():
            self._persist_reasoning(streamed.reasoning, strip_marker=True)
            return StopReason.CANCELLED
        self._persist_reasoning(streamed.reasoning)

        response, reasoning = streamed.content, streamed.reasoning
        display = strip_control_packets(remove_tool_calls(response))
        visible = display.replace(COMPLETION_MARKER, "").strip()

        if streamed.stop_reason == "max_tokens":
            logger.info(f"Iteration {iteration}: response truncated at the output limit, continuing")
            history.add_assistant(display, reasoning)
            history.add_continuation(TRUNCATION_DIRECTIVE)
            return None

        if is_completion_signaled(response, reasoning):
            state.phase = "verifying completion"
            if await self._completion_blocked(history, state, display, reasoning):
                return None
            history.add_assistant(display, reasoning)
            self._record_text(state, visible)
            return StopReason.COMPLETED

        state.phase = "parsing tool calls"
        calls = parse_tool_calls(response, streamed.tool_calls, self.native_tools)
        dedup = self.deduplicator.filter(calls, iteration)
        if dedup.dropped:
            logger.info(f"Iteration {iteration}: dropped duplicate tool calls: {', '.join(dedup.dropped)}")
            ctx.events.post("warning", f"Skipped {len(dedup.dropped)} repeated tool call(s)", dropped=dedup.dropped)
        if dedup.all_duplicates:
            history.add_assistant(display or build_tool_call_summary(calls) or "", reasoning)
            history.add_continuation(REPETITION_WARNING)
            state.consecutive_no_tool += 1
            return None
        calls = dedup.calls

        if not calls:
            state.consecutive_no_tool += 1
            history.add_assistant(display, reasoning)
            self._record_text(state, visible)
            decision = check_no_tool_completion(
                display, reasoning, state.has_written_files, state.consecutive_no_tool,
                cfg.consecutive_no_tool_limit,
            )
            if decision != NoToolDecision.CONTINUE:
                logger.info(f"Iteration {iteration}: stopping without tool calls ({decision})")
                return StopReason.COMPLETED
            if iteration < state.max_iterations - 1:
                if state.has_written_files:
                    history.add_continuation(DONE_CHECK_MESSAGE)
                else:
                    history.add_continuation(build_continuation_message(
                        iteration, state.max_iterations, resolve_control_state("no_tools"),
                        state.files_changed, strategy=cfg.continuation_strategy,
                    ))
            return None

        state.consecutive_no_tool = 0
        for index, call in enumerate(calls):
            if not call.id:
                call.id = f"toolu_{iteration}_{index}"
        summary = build_tool_call_summary(calls)
        tool_calls = [{"id": c.id, "name": c.name, "arguments": c.arguments} for c in calls]

        ctx.events.emit("progress_start", summary or "", title=summary, iteration=iteration)
        history.add_assistant(display, reasoning, tool_calls, summary)
        if visible:
            state.explanations.append(visible)
        self._persist({"role": "assistant", "content": display or summary or "", "tool_calls": tool_calls})

        state.phase = f"executing tools ({', '.join(c.name for c in calls)})"
        batch = await self.runner.execute_batch(calls, ctx)
        if dedup.was_capped:
            batch.notes.insert(0, f"Only the first {cfg.max_tools_per_batch} tool calls of that batch were executed.")

        if batch.wrote_files:
            state.has_written_files = True
        for path in batch.files_written:
            rel = ctx.backend.relative_path(path)
            if rel not in state.files_changed:
                state.files_changed.append(rel)
        if any(r.tool_name in TERMINAL_TOOLS and not r.denied for r in batch.results):
            state.terminal_run = True

        # Memory outlives the task, so its numbering continues across tasks
        self.memory.add_iteration_record(build_iteration_record(self.memory.iteration_count + 1, [
            {"name": r.tool_name, "args": r.arguments, "output": r.output, "success": not r.is_error}
            for r in batch.results
        ]))
        ctx.events.emit("progress_end", summary or "", iteration=iteration, tools=len(batch.results))

        diagnostics_failed = any("[AUTO-DIAGNOSTICS]" in r.output for r in batch.results)
        note = " ".join(n for n in batch.notes + [self.memory.compact_summary()] if n) or None
        continuation = build_continuation_message(
            iteration,
            state.max_iterations,
            resolve_control_state("diagnostics_errors" if diagnostics_failed else "tool_results"),
            state.files_changed,
            _result_digest(batch.results),
            note,
            cfg.continuation_strategy,
        )
        history.add_tool_results([r.to_history() for r in batch.results], continuation)
        return None

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def _prepare_iteration(self, history: ConversationHistory, state: _RunState) -> None:
        ctx = self.ctx
        block = self.memory.to_reminder_block()
        if block:
            history.update_memory_block(block)

        stats = await self.compactor.compact_if_needed(history.messages, self.window, state.last_prompt_tokens)
        if stats is not None:
            state.last_prompt_tokens = None
            ctx.events.emit(
                "context_compacted",
                f"Compacted {stats.messages_summarized} messages (~{stats.tokens_saved} tokens saved)",
                messages_summarized=stats.messages_summarized,
                tokens_before=stats.tokens_before,
                tokens_after=stats.tokens_after,
            )

        history.clean_stale_system_notes()

        modified = self._detect_external_changes()
        if modified:
            history.add_system_note(EXTERNAL_CHANGE_NOTE.format(files=", ".join(modified)))

        usage_note = self._token_usage_note(history, state)
        if usage_note:
            history.add_system_note(usage_note)

        current = ctx.backend.active_file()
        if current and current != state.last_active_file:
            if state.last_active_file is not None:
                history.add_system_note(ACTIVE_FILE_NOTE.format(path=ctx.backend.relative_path(current)))
            state.last_active_file = current

    def _detect_external_changes(self) -> List[str]:
        """Paths written this session whose mtime moved past our last write."""
        ctx = self.ctx
        tolerance = ctx.config.external_change_tolerance_ms
        modified = []
        for rel, written_at in list(ctx.write_times.items()):
            mtime = ctx.backend.stat_mtime(rel)
            if mtime is not None and mtime > written_at + tolerance:
                modified.append(rel)
                ctx.write_times[rel] = mtime
        if modified:
            logger.info(f"Externally modified since last write: {', '.join(modified)}")
        return modified

    def _token_usage_note(self, history: ConversationHistory, state: _RunState) -> Optional[str]:
        tokens = state.last_prompt_tokens or estimate_messages_tokens(history.messages)
        pct = round(tokens / self.window * 100) if self.window else 0
        for threshold in sorted(self.ctx.config.token_warning_thresholds, reverse=True):
            mark = int(round(threshold * 100))
            if pct >= mark and mark not in state.token_notes_sent:
                state.token_notes_sent.add(mark)
                return TOKEN_USAGE_NOTE.format(pct=pct, remaining=max(100 - pct, 0))
        return None

    # ------------------------------------------------------------------
    # Completion gates
    # ------------------------------------------------------------------

    async def _completion_blocked(
        self, history: ConversationHistory, state: _RunState, display: str, reasoning: str,
    ) -> bool:
        """True when a declared completion is premature and a corrective
        message was added. Read-only loops accept completion as declared."""
        if self.ctx.read_only:
            return False

        if task_requires_write(state.task) and not state.has_written_files:
            logger.info(f"Iteration {state.iteration}: completion without writes, pushing back")
            history.add_assistant(display, reasoning)
            history.add_continuation(WRITE_REQUIRED_MESSAGE)
            return True

        if (task_requires_terminal(state.task) and not state.has_written_files
                and not state.terminal_run and not state.terminal_nudge_sent):
            state.terminal_nudge_sent = True
            history.add_assistant(display, reasoning)
            history.add_continuation(TERMINAL_NUDGE_MESSAGE)
            return True

        if state.has_written_files and not state.verification_done:
            state.verification_done = True
            blocks = []
            for rel in state.files_changed:
                errors = await self.runner.await_diagnostics(rel, self.ctx)
                if errors:
                    blocks.append(f"{rel}:\n" + "\n".join(d.format() for d in errors))
            if blocks:
                logger.info(f"Iteration {state.iteration}: completion blocked by diagnostics in {len(blocks)} file(s)")
                history.add_assistant(display, reasoning)
                history.add_continuation(REMAINING_ERRORS_MESSAGE.format(errors="\n\n".join(blocks)))
                return True
        return False

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _stream_with_retry(
        self, history: ConversationHistory, state: _RunState, tool_catalog: List[Dict[str, Any]],
    ) -> _StreamResult:
        """Stream once; if the model rejects thinking mode, disable it for the
        rest of the run and retry exactly once."""
        try:
            return await self._stream_once(history, state, tool_catalog)
        except CapabilityUnsupportedError as e:
            if e.capability != "thinking" or not state.thinking_enabled:
                raise
            logger.warning(f"Model {self.model.model_id} rejected thinking mode, retrying without it: {e}")
            state.thinking_enabled = False
            self.ctx.events.post("warning", "Thinking mode not supported here; continuing without it")
            return await self._stream_once(history, state, tool_catalog)

    async def _stream_once(
        self, history: ConversationHistory, state: _RunState, tool_catalog: List[Dict[str, Any]],
    ) -> _StreamResult:
        request = ChatRequest(
            model_id=self.model.model_id,
            messages=history.prepare_for_request(),
            system_prompt=history.system_prompt,
            tools=tool_catalog if self.native_tools else None,
            enable_thinking=state.thinking_enabled,
            max_tokens=self.max_tokens,
        )
        events = self.ctx.events
        cancel = self.ctx.cancel_event
        result = _StreamResult()
        content: List[str] = []
        reasoning: List[str] = []

        async for chunk in self.client.stream_chat(request, cancel):
            if chunk.reasoning_delta:
                reasoning.append(chunk.reasoning_delta)
                events.post("thinking_delta", chunk.reasoning_delta)
            if chunk.content_delta:
                content.append(chunk.content_delta)
                events.post("text_delta", chunk.content_delta)
            if chunk.tool_calls:
                result.tool_calls.extend(chunk.tool_calls)
            if chunk.prompt_tokens is not None:
                result.prompt_tokens = chunk.prompt_tokens
            if chunk.completion_tokens is not None:
                result.completion_tokens = chunk.completion_tokens
            if chunk.done:
                result.stop_reason = chunk.stop_reason
            if cancel.is_set():
                result.cancelled = True
                break

        result.content = "".join(content)
        result.reasoning = "".join(reasoning)
        if result.prompt_tokens is not None or result.completion_tokens is not None:
            events.post(
                "token_usage", "",
                input_tokens=result.prompt_tokens or 0, output_tokens=result.completion_tokens or 0,
            )
        return result

    async def _summarize(self, prompt: str) -> str:
        request = ChatRequest(
            model_id=self.model.model_id,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=min(self.max_tokens, 4096),
        )
        return await self.client.complete(request, self.ctx.cancel_event)

    # ------------------------------------------------------------------
    # Persistence and reporting
    # ------------------------------------------------------------------

    def _persist(self, record: Dict[str, Any]) -> None:
        ctx = self.ctx
        if ctx.store is None or not ctx.session_id:
            return
        try:
            ctx.store.append_message(ctx.session_id, record)
        except OSError as e:
            logger.warning(f"Failed to persist {record.get('role')} message: {e}")

    def _persist_reasoning(self, reasoning: str, strip_marker: bool = False) -> None:
        """Reasoning goes to the display log only, never into history."""
        if strip_marker:
            reasoning = reasoning.replace(COMPLETION_MARKER, "")
        reasoning = reasoning.strip()
        if reasoning:
            self.ctx.events.emit("thinking", reasoning)

    def _record_text(self, state: _RunState, text: str) -> None:
        if not text:
            return
        state.explanations.append(text)
        self._persist({"role": "assistant", "content": text})

    def _save_memory(self) -> None:
        ctx = self.ctx
        if ctx.store is None or not ctx.session_id or self.memory.iteration_count == 0:
            return
        try:
            ctx.store.save_memory(ctx.session_id, self.memory.to_dict())
        except OSError as e:
            logger.warning(f"Failed to save session memory: {e}")

    def _format_fatal(self, error: Exception, state: _RunState) -> str:
        return (
            f"{type(error).__name__}: {error} (model: {self.model.model_id}, "
            f"phase: {state.phase}, iteration {state.iteration}/{state.max_iterations})"
        )

    def _build_summary(self, state: _RunState, stop_reason: str, error_text: Optional[str]) -> str:
        if stop_reason == StopReason.ERROR and error_text:
            return error_text
        if state.explanations:
            return "\n\n".join(state.explanations)
        if stop_reason == StopReason.CANCELLED:
            text = f"Cancelled after {state.iteration} iteration(s)."
        elif stop_reason == StopReason.MAX_ITERATIONS:
            text = f"Stopped after reaching the iteration limit ({state.max_iterations})."
        else:
            text = f"Finished in {state.iteration} iteration(s)."
        if state.files_changed:
            text += f" Files changed: {', '.join(state.files_changed)}."
        return text
