"""
Shared test fixtures: a scripted model client, a temporary workspace and a
session store. Nothing here touches the network.
"""

import asyncio
import itertools
from typing import List, Dict, Any, Optional

import pytest

from agent.approval import ApprovalGate
from agent.events import EventSink
from agent.runner import SessionContext
from backend import LocalBackend
from config import AgentConfig
from model_client import ModelClient, ModelInfo, ChatRequest, StreamChunk
from sessions import SessionStore

_call_ids = itertools.count(1)


def tool_call(name: str, **arguments: Any) -> Dict[str, Any]:
    """Structured tool call as a native-tools model streams it."""
    return {"id": f"toolu_{next(_call_ids)}", "name": name, "input": arguments}


class ScriptedModelClient(ModelClient):
    """Replays one scripted turn per stream_chat call.

    A turn is a dict with optional keys: content, reasoning, tool_calls,
    stop_reason, prompt_tokens, error (raised before anything streams) and
    before (callable run with the request before streaming). Once the script
    runs out every turn declares completion.
    """

    def __init__(self, turns: List[Dict[str, Any]], info: Optional[ModelInfo] = None):
        self.turns = list(turns)
        self.requests: List[ChatRequest] = []
        self.summaries: List[str] = []
        self.info = info or ModelInfo(
            model_id="test-model", context_window=16000,
            supports_thinking=False, supports_native_tools=True,
        )

    async def stream_chat(self, request: ChatRequest, cancel_event: Optional[asyncio.Event] = None):
        self.requests.append(request)
        turn = self.turns.pop(0) if self.turns else {"content": "Done. [TASK_COMPLETE]"}
        if turn.get("before"):
            turn["before"](request)
        if turn.get("error") is not None:
            raise turn["error"]
        if turn.get("reasoning"):
            yield StreamChunk(reasoning_delta=turn["reasoning"])
        if turn.get("content"):
            yield StreamChunk(content_delta=turn["content"])
        calls = turn.get("tool_calls") or []
        if calls:
            yield StreamChunk(tool_calls=list(calls))
        stop_reason = turn.get("stop_reason") or ("tool_use" if calls else "end_turn")
        yield StreamChunk(done=True, stop_reason=stop_reason, prompt_tokens=turn.get("prompt_tokens"))

    async def show_model_info(self, model_id: str) -> ModelInfo:
        return self.info

    async def complete(self, request: ChatRequest, cancel_event: Optional[asyncio.Event] = None) -> str:
        self.summaries.append(request.messages[-1]["content"])
        return "Earlier work summarized."


def drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "workspace"
    root.mkdir()
    return LocalBackend(str(root))


@pytest.fixture
def store(tmp_path):
    return SessionStore(str(tmp_path / "sessions"))


@pytest.fixture
def agent_config():
    return AgentConfig(diagnostics_timeout_ms=2000, continuation_strategy="full")


@pytest.fixture
def make_context(workspace, agent_config):
    """Factory for a SessionContext over the temporary workspace."""

    def _make(**overrides: Any) -> SessionContext:
        fields = dict(
            session_id="",
            backend=workspace,
            events=EventSink(),
            approvals=ApprovalGate(),
            cancel_event=asyncio.Event(),
            config=agent_config,
            model_id="test-model",
        )
        fields.update(overrides)
        return SessionContext(**fields)

    return _make
