"""End-to-end tests of the agent loop against a scripted model."""

import asyncio
import os
import time

import pytest

from agent.control import REPETITION_WARNING, LoopState, parse_control_state
from agent.events import SUBAGENT_ALLOWED_EVENTS
from agent.execution import (
    TERMINAL_NUDGE_MESSAGE,
    TRUNCATION_DIRECTIVE,
    WRITE_REQUIRED_MESSAGE,
    AgentLoop,
    StopReason,
)
from agent.memory import SessionMemory
from agent.subagent import SubagentRunner
from conftest import ScriptedModelClient, drain, tool_call
from model_client import CapabilityUnsupportedError, ModelInfo


def _loop(client, ctx, **kw):
    return AgentLoop(client, ctx, client.info, **kw)


def _contents(request):
    return [m["content"] for m in request.messages]


# ---------------------------------------------------------------------------
# Completion paths
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_read_fix_complete(workspace, make_context):
    workspace.write_file("src/validate.ts", "export function validate(x) { return x.length; }\n")
    fixed = "export function validate(x) { return x ? x.length : 0; }\n"
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("read_file", path="src/validate.ts")]},
        {"tool_calls": [tool_call("write_file", path="src/validate.ts", content=fixed)]},
        {"content": "Added the null check. [TASK_COMPLETE]"},
    ])
    ctx = make_context()
    outcome = await _loop(client, ctx).run("Fix the null check in src/validate.ts")

    assert outcome.stop_reason == StopReason.COMPLETED
    assert outcome.iterations == 3
    assert outcome.files_changed == ["src/validate.ts"]
    assert outcome.summary == "Added the null check."
    assert workspace.read_file("src/validate.ts") == fixed
    assert len(client.requests) == 3
    assert TERMINAL_NUDGE_MESSAGE not in _contents(client.requests[-1])

    events = drain(ctx.events.queue)
    assert events[-1].type == "done"
    assert events[-1].data["stop_reason"] == "completed"


@pytest.mark.asyncio
async def test_repeated_search_is_dropped(workspace, make_context):
    workspace.write_file("a.py", "foo = 1\n")
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("search_workspace", query="foo")]},
        {"tool_calls": [tool_call("search_workspace", query="foo")]},
        {"tool_calls": [tool_call("search_workspace", query="foo")]},
        {"content": "foo is defined in a.py. [TASK_COMPLETE]"},
    ])
    loop = _loop(client, make_context())
    outcome = await loop.run("Where is foo used?")

    assert outcome.stop_reason == StopReason.COMPLETED
    assert outcome.iterations == 4
    assert [m.role for m in loop.history.messages].count("tool") == 1
    assert _contents(client.requests[-1]).count(REPETITION_WARNING) == 2


@pytest.mark.asyncio
async def test_completion_without_write_is_pushed_back(workspace, make_context):
    client = ScriptedModelClient([
        {"content": "The title already looks fine. [TASK_COMPLETE]"},
        {"tool_calls": [tool_call("write_file", path="README.md", content="# New title\n")]},
        {"content": "[TASK_COMPLETE]"},
    ])
    outcome = await _loop(client, make_context()).run("Update the README title")

    assert _contents(client.requests[1])[-1] == WRITE_REQUIRED_MESSAGE
    assert outcome.stop_reason == StopReason.COMPLETED
    assert outcome.files_changed == ["README.md"]
    assert workspace.read_file("README.md") == "# New title\n"


@pytest.mark.asyncio
async def test_terminal_nudge_sent_once(make_context):
    client = ScriptedModelClient([
        {"content": "All tests pass. [TASK_COMPLETE]"},
        {"content": "No command is needed, the suite was run in CI. [TASK_COMPLETE]"},
    ])
    outcome = await _loop(client, make_context()).run("Run the test suite")

    assert outcome.stop_reason == StopReason.COMPLETED
    assert outcome.iterations == 2
    assert _contents(client.requests[1]).count(TERMINAL_NUDGE_MESSAGE) == 1


@pytest.mark.asyncio
async def test_remaining_errors_block_completion(workspace, make_context):
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("write_file", path="util.py", content="def broken(:\n    pass\n")]},
        {"content": "[TASK_COMPLETE]"},
        {"tool_calls": [tool_call("write_file", path="util.py", content="def fixed():\n    pass\n")]},
        {"content": "Fixed the helper. [TASK_COMPLETE]"},
    ])
    outcome = await _loop(client, make_context()).run("Create a helper module util.py")

    assert parse_control_state(_contents(client.requests[1])[-1]) == LoopState.NEED_FIXES
    blocked = _contents(client.requests[2])[-1]
    assert blocked.startswith("You declared [TASK_COMPLETE] but errors remain in modified files")
    assert "util.py:\nLine 1: SyntaxError" in blocked
    assert outcome.stop_reason == StopReason.COMPLETED
    assert outcome.iterations == 4
    assert workspace.read_file("util.py") == "def fixed():\n    pass\n"


@pytest.mark.asyncio
async def test_truncated_response_continues(make_context):
    client = ScriptedModelClient([
        {"content": "The project has three layers:", "stop_reason": "max_tokens"},
        {"content": "api, core and storage. [TASK_COMPLETE]"},
    ])
    outcome = await _loop(client, make_context()).run("Explain the layout")

    contents = _contents(client.requests[1])
    assert contents[-1] == TRUNCATION_DIRECTIVE
    assert contents[-2] == "The project has three layers:"
    assert outcome.stop_reason == StopReason.COMPLETED
    assert outcome.iterations == 2


@pytest.mark.asyncio
async def test_empty_turn_after_write_completes(workspace, make_context):
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("write_file", path="app.py", content='"""App."""\n')]},
        {"content": ""},
    ])
    outcome = await _loop(client, make_context()).run("Add a docstring to app.py")

    assert outcome.stop_reason == StopReason.COMPLETED
    assert outcome.iterations == 2
    assert outcome.files_changed == ["app.py"]


@pytest.mark.asyncio
async def test_consecutive_text_turns_stop(make_context):
    client = ScriptedModelClient([
        {"content": "Thinking about it."},
        {"content": "Still thinking."},
    ])
    outcome = await _loop(client, make_context()).run("Explain the layout")

    assert parse_control_state(_contents(client.requests[1])[-1]) == LoopState.NEED_TOOLS
    assert outcome.stop_reason == StopReason.COMPLETED
    assert outcome.iterations == 2
    assert outcome.summary == "Thinking about it.\n\nStill thinking."


@pytest.mark.asyncio
async def test_max_iterations(make_context):
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("read_file", path=f"missing{i}.py")]} for i in range(3)
    ])
    ctx = make_context()
    outcome = await _loop(client, ctx).run("Explain the layout", max_iterations=3)

    assert outcome.stop_reason == StopReason.MAX_ITERATIONS
    assert outcome.iterations == 3
    assert outcome.summary == "Stopped after reaching the iteration limit (3)."
    warnings = [e.content for e in drain(ctx.events.queue) if e.type == "warning"]
    assert "Reached maximum iterations (3). Stopping." in warnings


# ---------------------------------------------------------------------------
# Cancellation and errors
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_while_waiting_for_approval(workspace, make_context):
    ctx = make_context()
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("run_terminal_command", command="make deploy")]},
    ])

    async def cancel_when_asked():
        while not ctx.approvals.pending:
            await asyncio.sleep(0.01)
        ctx.cancel_event.set()

    outcome, _ = await asyncio.gather(_loop(client, ctx).run("Run the deploy script"), cancel_when_asked())

    assert outcome.stop_reason == StopReason.CANCELLED
    assert outcome.iterations == 1
    assert outcome.summary == "Cancelled after 1 iteration(s)."
    assert ctx.approvals.pending == []
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_cancel_before_start(make_context):
    ctx = make_context()
    ctx.cancel_event.set()
    client = ScriptedModelClient([])
    outcome = await _loop(client, ctx).run("Explain the layout")
    assert outcome.stop_reason == StopReason.CANCELLED
    assert client.requests == []


@pytest.mark.asyncio
async def test_thinking_rejected_is_retried_without_it(make_context):
    info = ModelInfo(model_id="thinker", context_window=16000, supports_thinking=True, supports_native_tools=True)
    client = ScriptedModelClient([
        {"error": CapabilityUnsupportedError("thinking", "extended thinking is not enabled for this model")},
        {"content": "The layout is flat. [TASK_COMPLETE]"},
    ], info=info)
    ctx = make_context()
    outcome = await _loop(client, ctx, enable_thinking=True).run("Explain the layout")

    assert outcome.stop_reason == StopReason.COMPLETED
    assert outcome.iterations == 1
    assert [r.enable_thinking for r in client.requests] == [True, False]
    assert any(e.type == "warning" for e in drain(ctx.events.queue))


@pytest.mark.asyncio
async def test_fatal_error_is_reported(make_context):
    client = ScriptedModelClient([{"error": RuntimeError("connection reset")}])
    ctx = make_context()
    outcome = await _loop(client, ctx).run("Explain the layout", max_iterations=5)

    expected = "RuntimeError: connection reset (model: test-model, phase: streaming response, iteration 1/5)"
    assert outcome.stop_reason == StopReason.ERROR
    assert outcome.error == expected
    assert outcome.summary == expected
    errors = [e for e in drain(ctx.events.queue) if e.type == "error"]
    assert errors[0].content == expected


# ---------------------------------------------------------------------------
# Context housekeeping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_external_edit_is_noted(workspace, make_context):
    path = os.path.join(workspace.working_directory, "config.json")

    def edit_externally(request):
        with open(path, "w", encoding="utf-8") as f:
            f.write('{"a": 2}\n')
        later = time.time() + 10
        os.utime(path, (later, later))

    client = ScriptedModelClient([
        {"tool_calls": [tool_call("write_file", path="config.json", content='{"a": 1}\n')]},
        {"tool_calls": [tool_call("read_file", path="config.json")], "before": edit_externally},
        {"content": "[TASK_COMPLETE]"},
    ])
    outcome = await _loop(client, make_context()).run("Update config.json")

    assert not any("modified externally" in c for c in _contents(client.requests[1]))
    notes = [c for c in _contents(client.requests[2]) if "modified externally" in c]
    assert len(notes) == 1
    assert notes[0].startswith("[SYSTEM NOTE: The following file(s) were modified externally")
    assert "config.json" in notes[0]
    assert outcome.stop_reason == StopReason.COMPLETED


@pytest.mark.asyncio
async def test_token_usage_note(workspace, make_context):
    workspace.write_file("a.py", "x = 1\n")
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("read_file", path="a.py")], "prompt_tokens": 14400},
        {"content": "Done. [TASK_COMPLETE]"},
    ])
    await _loop(client, make_context()).run("Explain a.py")
    assert _contents(client.requests[1])[-1].startswith("[SYSTEM NOTE: Context usage: ~90% (10% remaining).")


@pytest.mark.asyncio
async def test_memory_block_reaches_system_prompt(workspace, make_context):
    workspace.write_file("pyproject.toml", "[project]\n")
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("read_file", path="pyproject.toml")]},
        {"content": "It is a Python project. [TASK_COMPLETE]"},
    ])
    await _loop(client, make_context()).run("Explain the build setup")
    assert "<session_memory>" not in client.requests[0].system_prompt
    assert "project_config_files**: pyproject.toml" in client.requests[1].system_prompt


@pytest.mark.asyncio
async def test_messages_and_memory_persisted(workspace, store, make_context):
    workspace.write_file("a.py", "x = 1\n")
    ctx = make_context(store=store, session_id="sess-loop")
    client = ScriptedModelClient([
        {"tool_calls": [tool_call("read_file", path="a.py")]},
        {"content": "Done. [TASK_COMPLETE]"},
    ])
    await _loop(client, ctx).run("Explain a.py")

    records = store.get_messages("sess-loop")
    assert [r["role"] for r in records] == ["user", "assistant", "tool", "assistant"]
    assert records[0]["content"] == "Explain a.py"
    assert records[-1]["content"] == "Done."
    memory = store.load_memory("sess-loop")
    assert memory["history"][0]["tools_called"] == ["read_file"]


@pytest.mark.asyncio
async def test_memory_numbering_continues_across_tasks(workspace, make_context):
    workspace.write_file("a.py", "x = 1\n")
    memory = SessionMemory()
    for task in ("Explain a.py", "Explain a.py again"):
        client = ScriptedModelClient([
            {"tool_calls": [tool_call("read_file", path="a.py")]},
            {"content": "Done. [TASK_COMPLETE]"},
        ])
        await _loop(client, make_context(), memory=memory).run(task)

    assert [r.index for r in memory.history] == [1, 2]
    assert memory.task == "Explain a.py again"


@pytest.mark.asyncio
async def test_reasoning_never_enters_history(workspace, make_context):
    client = ScriptedModelClient([
        {"reasoning": "I should list the files.", "tool_calls": [tool_call("list_files", path=".")]},
        {"content": "Empty workspace. [TASK_COMPLETE]"},
    ])
    ctx = make_context()
    loop = _loop(client, ctx)
    await loop.run("Explain the layout")

    assert all("I should list the files." not in m.content for m in loop.history.messages)
    thinking = [e.content for e in drain(ctx.events.queue) if e.type == "thinking"]
    assert thinking == ["I should list the files."]


# ---------------------------------------------------------------------------
# Sub-agents
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_subagent_reports_findings_with_filtered_events(workspace, make_context):
    workspace.write_file("src/parse.py", "def parse():\n    pass\n")
    client = ScriptedModelClient([
        {"content": "Looking.", "tool_calls": [tool_call("read_file", path="src/parse.py")]},
        {"content": "The parser lives in src/parse.py. [TASK_COMPLETE]"},
    ])
    parent = make_context()
    findings = await SubagentRunner(client, client.info, parent)({"task": "find the parser", "title": "Explore"})

    assert findings == "Explore findings:\n\nLooking.\n\nThe parser lives in src/parse.py."
    events = drain(parent.events.queue)
    assert events
    assert {e.type for e in events} <= SUBAGENT_ALLOWED_EVENTS
    starts = [e for e in events if e.type == "progress_start"]
    assert starts[0].data["title"].startswith("Explore: ")
    assert "write_file" not in {t["name"] for t in client.requests[0].tools}
