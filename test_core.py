"""Tests for the CodingAgent facade: tasks, approvals, checkpoints, resume."""

import pytest

from agent import CodingAgent, StopReason
from conftest import ScriptedModelClient, tool_call


async def _next_event(handle, event_type):
    while True:
        event = await handle.events.get()
        if event.type == event_type:
            return event


@pytest.mark.asyncio
async def test_task_with_checkpoint_and_undo(workspace, store, agent_config):
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("write_file", path="hello.py", content="print('hello')\nprint('bye')\n")]},
        {"content": "Added the greeting. [TASK_COMPLETE]"},
    ])
    agent = CodingAgent(client, workspace, store, config=agent_config)
    handle = await agent.start_task("Add a greeting to hello.py")
    outcome = await handle.result()

    assert outcome.stop_reason == StopReason.COMPLETED
    assert outcome.files_changed == ["hello.py"]
    assert handle.checkpoint_id == outcome.checkpoint_id

    stats = agent.diff_stats(handle.checkpoint_id)
    assert [(s["path"], s["action"], s["additions"]) for s in stats] == [("hello.py", "created", 2)]

    result = agent.undo_all_changes(handle.checkpoint_id)
    assert result["success"] and result["status"] == "undone"
    assert not workspace.file_exists("hello.py")


@pytest.mark.asyncio
async def test_session_is_named_and_logged(workspace, store, agent_config):
    client = ScriptedModelClient([{"content": "It prints a greeting. [TASK_COMPLETE]"}])
    agent = CodingAgent(client, workspace, store, config=agent_config)
    handle = await agent.start_task("Explain what hello.py does")
    await handle.result()

    session = store.load(agent.session_id)
    assert session.name == "Explain what hello.py does"
    roles = [m["role"] for m in session.messages]
    assert roles[0] == "user"
    assert "event" in roles
    done = [m for m in session.messages if m["role"] == "event" and m["type"] == "done"]
    assert done[0]["data"]["stop_reason"] == "completed"


@pytest.mark.asyncio
async def test_command_approval_round_trip(workspace, store, agent_config):
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("run_terminal_command", command="echo ran")]},
        {"content": "Ran it. [TASK_COMPLETE]"},
    ])
    agent = CodingAgent(client, workspace, store, config=agent_config)
    handle = await agent.start_task("Run the smoke script")

    request = await _next_event(handle, "approval_request")
    assert request.data["command"] == "echo ran"
    assert agent.resolve_approval(request.data["id"], True)
    assert not agent.resolve_approval(request.data["id"], False)

    outcome = await handle.result()
    assert outcome.stop_reason == StopReason.COMPLETED
    tool_records = [m for m in store.get_messages(agent.session_id) if m["role"] == "tool"]
    assert tool_records[0]["content"] == "ran\n\nExit code: 0"


@pytest.mark.asyncio
async def test_one_task_at_a_time_and_cancel(workspace, store, agent_config):
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("run_terminal_command", command="sleep 1")]},
    ])
    agent = CodingAgent(client, workspace, store, config=agent_config)
    handle = await agent.start_task("Run the long job")
    await _next_event(handle, "approval_request")

    with pytest.raises(RuntimeError):
        await agent.start_task("Something else")

    agent.cancel(handle)
    outcome = await handle.result()
    assert outcome.stop_reason == StopReason.CANCELLED
    assert agent.approvals.pending == []


@pytest.mark.asyncio
async def test_resumed_session_sees_prior_turns(workspace, store, agent_config):
    first = ScriptedModelClient([
        {"tool_calls": [tool_call("write_file", path="notes.md", content="# Notes\n")]},
        {"content": "Created the notes file. [TASK_COMPLETE]"},
    ])
    agent = CodingAgent(first, workspace, store, config=agent_config)
    await (await agent.start_task("Create notes.md")).result()

    second = ScriptedModelClient([{"content": "It has a single heading. [TASK_COMPLETE]"}])
    resumed = CodingAgent(second, workspace, store, session=store.load(agent.session_id), config=agent_config)
    assert resumed.memory.iteration_count == 1
    await (await resumed.start_task("What is in notes.md?")).result()

    contents = [m["content"] for m in second.requests[0].messages]
    assert contents[0] == "Create notes.md"
    assert any(c.startswith("[write_file result]\nCreated notes.md") for c in contents)
    assert contents[-1] == "What is in notes.md?"
    assert all(m["role"] in ("user", "assistant") for m in second.requests[0].messages)
    assert store.load(agent.session_id).name == "Create notes.md"
