"""
Agent event data type and the outbound event sink.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Dict, Any, Optional, Callable

logger = logging.getLogger(__name__)


@dataclass
class AgentEvent:
    """Event emitted during agent execution"""
    type: str  # progress_start, tool_action, text, thinking, warning, error, approval_request, done, etc.
    content: str = ""
    data: Optional[Dict[str, Any]] = None


class EventSink:
    """Fire-and-forget outbound event stream.

    The loop writes to it and never reads from it, so a missing or slow UI can
    not stall a task. `emit` also hands the event to the persistence hook so the
    timeline can be replayed; `post` is for transient events (stream deltas).
    """

    def __init__(
        self,
        queue: Optional[asyncio.Queue] = None,
        persist: Optional[Callable[[AgentEvent], None]] = None,
    ):
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()
        self._persist = persist

    def post(self, type: str, content: str = "", **data: Any) -> AgentEvent:
        event = AgentEvent(type=type, content=content, data=data or None)
        self._put(event)
        return event

    def emit(self, type: str, content: str = "", **data: Any) -> AgentEvent:
        event = AgentEvent(type=type, content=content, data=data or None)
        if self._persist is not None:
            try:
                self._persist(event)
            except OSError as e:
                logger.warning(f"Failed to persist event {type}: {e}")
        self._put(event)
        return event

    def _put(self, event: AgentEvent) -> None:
        self.queue.put_nowait(event)


# Only coarse progress and problems cross the sub-agent boundary
SUBAGENT_ALLOWED_EVENTS = frozenset({
    "progress_start", "tool_action", "progress_end", "error", "warning",
})


class SubagentEventSink(EventSink):
    """Event sink for a child loop: drops everything except coarse progress and
    errors, and labels progress groups so they nest under the parent's timeline."""

    def __init__(self, parent: EventSink, label: str = "Sub-agent"):
        super().__init__(queue=parent.queue)
        self.parent = parent
        self.label = label

    def _put(self, event: AgentEvent) -> None:
        if event.type not in SUBAGENT_ALLOWED_EVENTS:
            return
        if event.type == "progress_start" and event.data and event.data.get("title"):
            event = replace(event, data={**event.data, "title": f"{self.label}: {event.data['title']}"})
        self.parent._put(event)

    def emit(self, type: str, content: str = "", **data: Any) -> AgentEvent:
        # Child events are never persisted on their own
        return self.post(type, content, **data)
