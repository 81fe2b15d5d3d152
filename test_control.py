"""Tests for the loop control plane: parsing, dedup, completion, continuation."""

import json

from agent.control import (
    COMPLETION_MARKER,
    LoopState,
    NoToolDecision,
    ToolCall,
    ToolCallDeduplicator,
    build_continuation_message,
    build_tool_call_summary,
    check_no_tool_completion,
    is_completion_signaled,
    parse_control_state,
    parse_tool_calls,
    recover_tool_call_from_error,
    remove_tool_calls,
    resolve_control_state,
    strip_control_packets,
    task_requires_terminal,
    task_requires_write,
    tool_signature,
)


def _packet(message: str) -> dict:
    start = message.index("<agent_control>") + len("<agent_control>")
    end = message.index("</agent_control>")
    return json.loads(message[start:end])


# ---------------------------------------------------------------------------
# Signatures and parsing
# ---------------------------------------------------------------------------

def test_signature_ignores_key_order():
    a = tool_signature("search_workspace", {"query": "foo", "path": "src", "opts": {"x": 1, "y": 2}})
    b = tool_signature("search_workspace", {"opts": {"y": 2, "x": 1}, "path": "src", "query": "foo"})
    assert a == b


def test_signature_differs_by_value():
    assert tool_signature("read_file", {"path": "a.py"}) != tool_signature("read_file", {"path": "b.py"})


def test_structured_calls_win_in_native_mode():
    structured = [{"id": "toolu_1", "name": "read_file", "input": {"path": "a.py"}}]
    text = '<tool_call>{"name": "list_files", "arguments": {}}</tool_call>'
    calls = parse_tool_calls(text, structured, native_mode=True)
    assert [(c.name, c.arguments, c.id, c.source) for c in calls] == [("read_file", {"path": "a.py"}, "toolu_1", "native")]


def test_native_mode_falls_back_to_text():
    text = 'Let me look.\n<tool_call>{"name": "read_file", "arguments": {"path": "a.py"}}</tool_call>'
    calls = parse_tool_calls(text, [], native_mode=True)
    assert len(calls) == 1
    assert calls[0].source == "text"


def test_text_mode_ignores_structured_calls():
    structured = [{"id": "toolu_1", "name": "read_file", "input": {"path": "a.py"}}]
    assert parse_tool_calls("no calls here", structured, native_mode=False) == []


def test_structured_arguments_given_as_json_string():
    calls = parse_tool_calls("", [{"id": "t", "name": "read_file", "input": '{"path": "x.py"}'}])
    assert calls[0].arguments == {"path": "x.py"}


def test_tool_names_are_normalized():
    text = '<tool_call>{"name": "search", "arguments": {"query": "foo"}}</tool_call>'
    calls = parse_tool_calls(text, None, native_mode=False)
    assert calls[0].name == "search_workspace"


def test_multiple_text_calls_keep_order():
    text = (
        '<tool_call>{"name": "read_file", "arguments": {"path": "a.py"}}</tool_call>\n'
        "[TOOL_CALLS] list_files [ARGS] {\"path\": \"src\"}\n"
        '<tool_call>{"name": "read_file", "arguments": {"path": "b.py"}}</tool_call>'
    )
    calls = parse_tool_calls(text, None, native_mode=False)
    assert [(c.name, c.arguments.get("path")) for c in calls] == [
        ("read_file", "a.py"), ("list_files", "src"), ("read_file", "b.py"),
    ]


def test_curly_quotes_are_recovered():
    text = "<tool_call>{“name”: “read_file”, “arguments”: {“path”: “a.py”}}</tool_call>"
    calls = parse_tool_calls(text, None, native_mode=False)
    assert [(c.name, c.arguments) for c in calls] == [("read_file", {"path": "a.py"})]


def test_name_inferred_from_argument_shape():
    text = '<tool_call>{"arguments": {"path": "a.py", "content": "x = 1\\n"}}</tool_call>'
    calls = parse_tool_calls(text, None, native_mode=False)
    assert calls[0].name == "write_file"


def test_unparseable_call_is_dropped():
    assert parse_tool_calls("<tool_call>not json at all</tool_call>", None, native_mode=False) == []


def test_recover_from_error_message():
    call = recover_tool_call_from_error("Invalid tool call: raw='{\"command\": \"ls -la\"}'")
    assert call.name == "run_terminal_command"
    assert call.arguments == {"command": "ls -la"}
    assert recover_tool_call_from_error("something unrelated") is None


def test_remove_tool_calls():
    text = (
        'Reading now.\n<tool_call>{"name": "read_file", "arguments": {"path": "a.py"}}</tool_call>\n'
        '[TOOL_CALLS] list_files [ARGS] {"path": "."}'
    )
    assert remove_tool_calls(text) == "Reading now."


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------

def _search(query: str) -> ToolCall:
    return ToolCall(name="search_workspace", arguments={"query": query})


def test_intra_batch_duplicates_dropped():
    dedup = ToolCallDeduplicator()
    result = dedup.filter([_search("foo"), _search("foo"), _search("bar")], iteration=1)
    assert [c.arguments["query"] for c in result.calls] == ["foo", "bar"]
    assert len(result.dropped) == 1
    assert not result.all_duplicates


def test_repeats_within_window_dropped_then_allowed():
    dedup = ToolCallDeduplicator(window=2, expiry=3)
    assert dedup.filter([_search("foo")], 1).calls
    second = dedup.filter([_search("foo")], 2)
    third = dedup.filter([_search("foo")], 3)
    assert second.all_duplicates and third.all_duplicates
    assert dedup.filter([_search("foo")], 4).calls


def test_key_order_does_not_defeat_dedup():
    dedup = ToolCallDeduplicator()
    dedup.filter([ToolCall("read_file", {"path": "a.py", "offset": 1})], 1)
    result = dedup.filter([ToolCall("read_file", {"offset": 1, "path": "a.py"})], 2)
    assert result.all_duplicates


def test_old_signatures_expire():
    dedup = ToolCallDeduplicator(window=2, expiry=3)
    dedup.filter([_search("foo")], 1)
    dedup.filter([_search("bar")], 5)
    assert _search("foo").signature not in dedup.recent
    assert _search("bar").signature in dedup.recent


def test_batch_is_capped():
    dedup = ToolCallDeduplicator(max_batch=10)
    result = dedup.filter([_search(str(i)) for i in range(12)], 1)
    assert len(result.calls) == 10
    assert result.was_capped


def test_empty_batch_is_not_all_duplicates():
    assert not ToolCallDeduplicator().filter([], 1).all_duplicates


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------

def test_completion_marker_in_either_channel():
    assert is_completion_signaled(f"All done. {COMPLETION_MARKER}")
    assert is_completion_signaled("", f"I should say {COMPLETION_MARKER}")


def test_completion_phrase_must_be_whole_line():
    assert is_completion_signaled("Updated the parser.\nThe task is complete.")
    assert not is_completion_signaled("Once the task is complete I will run the tests.")


def test_completion_via_control_state():
    assert is_completion_signaled('<agent_control>{"state": "complete"}</agent_control>')


def test_no_completion_for_plain_text():
    assert not is_completion_signaled("Let me read the file first.")


def test_implicit_completion_wins():
    assert check_no_tool_completion("", "", True, 1) == NoToolDecision.BREAK_IMPLICIT
    assert check_no_tool_completion("  ", "\n", True, 2) == NoToolDecision.BREAK_IMPLICIT


def test_consecutive_break_regardless_of_writes():
    assert check_no_tool_completion("Still thinking.", "", False, 2) == NoToolDecision.BREAK_CONSECUTIVE
    assert check_no_tool_completion("Still thinking.", "", True, 3) == NoToolDecision.BREAK_CONSECUTIVE


def test_no_tool_continue():
    assert check_no_tool_completion("Thinking about it.", "", False, 1) == NoToolDecision.CONTINUE
    assert check_no_tool_completion("", "", False, 1) == NoToolDecision.CONTINUE


def test_task_wording():
    assert task_requires_write("fix the null check in validate.ts")
    assert not task_requires_terminal("fix the null check in validate.ts")
    assert task_requires_terminal("run the test suite")
    assert not task_requires_write("explain how the parser works")


# ---------------------------------------------------------------------------
# Continuation directive
# ---------------------------------------------------------------------------

def test_continuation_is_deterministic():
    args = (3, 25, LoopState.NEED_TOOLS, ["a.py", "b.py", "a.py"], "read_file: ok", "2 files read")
    first = build_continuation_message(*args)
    assert first == build_continuation_message(*args)
    assert first.endswith(f"Proceed with tool calls or {COMPLETION_MARKER}.")


def test_continuation_packet_contents():
    packet = _packet(build_continuation_message(3, 25, LoopState.NEED_FIXES, ["a.py", "a.py"], None, "note"))
    assert packet == {
        "state": "need_fixes",
        "iteration": 4,
        "maxIterations": 25,
        "remainingIterations": 21,
        "filesChanged": ["a.py"],
        "note": "note",
    }


def test_continuation_strategies_trim():
    files = [f"f{i}.py" for i in range(8)]
    standard = _packet(build_continuation_message(1, 10, files_changed=files, note="n" * 300, strategy="standard"))
    assert len(standard["filesChanged"]) == 5
    assert len(standard["note"]) == 161
    minimal = _packet(build_continuation_message(1, 10, files_changed=files, tool_results="x", strategy="minimal"))
    assert "filesChanged" not in minimal and "toolResults" not in minimal


def test_control_state_roundtrip():
    message = build_continuation_message(1, 10, LoopState.NEED_SUMMARY)
    assert parse_control_state(message) == LoopState.NEED_SUMMARY
    assert strip_control_packets("before <agent_control>{}</agent_control> after") == "before  after"
    assert parse_control_state('<agent_control>{"state": "bogus"}</agent_control>') is None


def test_event_to_state():
    assert resolve_control_state("no_tools") == LoopState.NEED_TOOLS
    assert resolve_control_state("tool_results") == LoopState.NEED_TOOLS
    assert resolve_control_state("diagnostics_errors") == LoopState.NEED_FIXES
    assert resolve_control_state("need_summary") == LoopState.NEED_SUMMARY


def test_tool_call_summary():
    calls = [
        ToolCall("read_file", {"path": "src/pkg/mod.py"}),
        ToolCall("search_workspace", {"query": "foo"}),
        ToolCall("run_terminal_command", {"command": "pytest -q"}),
    ]
    assert build_tool_call_summary(calls) == 'I read pkg/mod.py, then searched for "foo", then ran `pytest -q`.'
    assert build_tool_call_summary([]) is None
