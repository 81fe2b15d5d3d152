"""
CodingAgent: the caller-facing surface of the runtime.

One CodingAgent serves one session. It wires the session-scoped collaborators
(approval gate, checkpoint store, memory, event sink, persistence) into an
AgentLoop per task and exposes approval resolution, cancellation and the
checkpoint keep/undo operations.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from backend import Backend
from config import agent_config, model_config, AgentConfig
from model_client import ModelClient, ModelInfo
from sessions import SessionStore, Session

from agent.approval import ApprovalGate
from agent.checkpoints import CheckpointStore
from agent.conversation import ConversationHistory
from agent.events import AgentEvent, EventSink
from agent.execution import AgentLoop, LoopOutcome
from agent.memory import SessionMemory
from agent.runner import SessionContext, ToolBatchRunner
from agent.subagent import SubagentRunner

logger = logging.getLogger(__name__)


@dataclass
class TaskHandle:
    """A running task. `events` is the outbound event queue for the UI."""
    task: str
    session_id: str
    cancel_event: asyncio.Event
    events: asyncio.Queue
    loop: Optional[AgentLoop] = None
    future: Optional[asyncio.Future] = field(default=None, repr=False)

    @property
    def checkpoint_id(self) -> Optional[str]:
        return self.loop.checkpoint_id if self.loop else None

    def done(self) -> bool:
        return self.future is not None and self.future.done()

    async def result(self) -> LoopOutcome:
        return await self.future


class CodingAgent:
    """
    Session-level orchestrator.

    Flow:
    1. start_task() builds a SessionContext and an AgentLoop and schedules it
    2. The loop streams events into the handle's queue
    3. Approval requests surface as `approval_request` events and are answered
       with resolve_approval()
    4. After the task, keep/undo operate on the task's checkpoint
    """

    def __init__(
        self,
        client: ModelClient,
        backend: Backend,
        store: Optional[SessionStore] = None,
        session: Optional[Session] = None,
        config: Optional[AgentConfig] = None,
    ):
        self.client = client
        self.backend = backend
        self.store = store
        self.config = config or agent_config
        if session is None and store is not None:
            session = store.create_session(backend.working_directory, model_config.model_id)
        self.session = session
        self.session_id = session.session_id if session else ""
        self.approvals = ApprovalGate()
        self.checkpoints = CheckpointStore(backend, store, self.session_id)
        self.memory = SessionMemory.from_dict(store.load_memory(self.session_id) if store and self.session_id else None)
        self._current: Optional[TaskHandle] = None

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def start_task(
        self,
        task: str,
        model: Optional[str] = None,
        capabilities: Optional[ModelInfo] = None,
        history: Optional[List[Dict[str, Any]]] = None,
    ) -> TaskHandle:
        """Schedule a task and return its handle. `history` is a list of
        persisted message records; by default the session's own log is used
        so a resumed session continues its conversation."""
        if self._current is not None and not self._current.done():
            raise RuntimeError("A task is already running in this session")

        model_id = model or model_config.model_id
        if capabilities is None:
            capabilities = await self.client.show_model_info(model_id)
        self._prepare_session(task, model_id)

        if history is None and self.store is not None and self.session_id:
            history = self.store.get_messages(self.session_id)
        prior = ConversationHistory.from_records(history) if history else None

        cancel_event = asyncio.Event()
        events = EventSink(persist=self._persist_event)
        ctx = SessionContext(
            session_id=self.session_id,
            backend=self.backend,
            events=events,
            approvals=self.approvals,
            cancel_event=cancel_event,
            checkpoints=self.checkpoints,
            store=self.store,
            config=self.config,
            model_id=model_id,
            auto_approve_commands=self.session.auto_approve_commands if self.session else self.config.auto_approve_commands,
            auto_approve_sensitive_edits=(
                self.session.auto_approve_sensitive_edits if self.session else self.config.auto_approve_sensitive_edits
            ),
            sensitive_file_patterns=self.session.sensitive_file_patterns if self.session else None,
        )
        ctx.subagent_handler = SubagentRunner(self.client, capabilities, ctx)

        loop = AgentLoop(
            self.client, ctx, capabilities,
            memory=self.memory, runner=ToolBatchRunner(), prior_messages=prior,
        )
        handle = TaskHandle(task=task, session_id=self.session_id, cancel_event=cancel_event, events=events.queue, loop=loop)
        handle.future = asyncio.ensure_future(loop.run(task, cancel_event=cancel_event))
        self._current = handle
        logger.info(f"Task scheduled in session {self.session_id or '(ephemeral)'}: {task[:120]}")
        return handle

    def _prepare_session(self, task: str, model_id: str) -> None:
        if self.store is None or self.session is None:
            return
        # Memory and approval flags are written on disk during a task; reload before saving
        stored = self.store.load(self.session_id)
        if stored is not None:
            self.session = stored
        self.session.model_id = model_id
        self.store.auto_name_session(self.session, task)
        self.store.save(self.session)

    def _persist_event(self, event: AgentEvent) -> None:
        if self.store is None or not self.session_id:
            return
        self.store.append_message(self.session_id, {
            "role": "event",
            "type": event.type,
            "content": event.content,
            "data": event.data,
        })

    def resolve_approval(
        self, request_id: str, approved: bool, edited_payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Answer a pending approval. Late or duplicate answers return False."""
        return self.approvals.resolve(request_id, approved, edited_payload)

    def cancel(self, handle: Optional[TaskHandle] = None) -> None:
        """Cancel a task: the model stream, any approval wait and any running
        sub-agent all observe the same event."""
        handle = handle or self._current
        if handle is None:
            return
        handle.cancel_event.set()
        self.backend.cancel_running_command()
        logger.info(f"Cancellation requested for session {handle.session_id or '(ephemeral)'}")

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def keep_file(self, path: str, checkpoint_id: Optional[str] = None) -> bool:
        return self.checkpoints.keep(path, checkpoint_id)

    def undo_file(self, path: str, checkpoint_id: Optional[str] = None) -> bool:
        return self.checkpoints.undo(path, checkpoint_id)

    def keep_all_changes(self, checkpoint_id: Optional[str] = None) -> Dict[str, Any]:
        return self.checkpoints.keep_all(checkpoint_id)

    def undo_all_changes(self, checkpoint_id: Optional[str] = None) -> Dict[str, Any]:
        result = self.checkpoints.undo_all(checkpoint_id)
        if result["errors"]:
            logger.warning(f"Undo finished with {len(result['errors'])} failure(s)")
        return result

    def diff_stats(self, checkpoint_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.checkpoints.diff_stats(checkpoint_id)
