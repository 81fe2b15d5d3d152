"""Tests for the Bedrock client's request formatting and stream decoding.
The boto3 client is replaced by a fake; nothing reaches AWS."""

import asyncio
import json
import threading
import time

import pytest
from botocore.exceptions import ClientError

from bedrock_service import BedrockService
from model_client import CapabilityUnsupportedError, ChatRequest, ModelError

SONNET = "us.anthropic.claude-sonnet-4-5-20250929-v1:0"


def _event(payload):
    return {"chunk": {"bytes": json.dumps(payload).encode("utf-8")}}


class FakeRuntime:
    def __init__(self, events=None, error=None):
        self.events = events or []
        self.error = error
        self.bodies = []

    def invoke_model_with_response_stream(self, modelId, body, contentType, accept):
        self.bodies.append(json.loads(body))
        if self.error is not None:
            raise self.error
        return {"body": list(self.events)}


def _service(runtime):
    service = object.__new__(BedrockService)
    service.region = "us-east-1"
    service.client = runtime
    return service


def test_format_messages_maps_tool_traffic():
    formatted = BedrockService._format_messages([
        {"role": "system", "content": "ignored"},
        {"role": "user", "content": "Fix a.py"},
        {"role": "assistant", "content": "", "tool_calls": [{"id": "t1", "name": "read_file", "arguments": {"path": "a.py"}}]},
        {"role": "tool", "content": "x = 1", "tool_name": "read_file", "tool_call_id": "t1"},
        {"role": "user", "content": "continue"},
    ])
    assert [m["role"] for m in formatted] == ["user", "assistant", "user"]
    assert formatted[1]["content"] == [{"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "a.py"}}]
    assert formatted[2]["content"][0] == {"type": "tool_result", "tool_use_id": "t1", "content": "x = 1"}
    assert formatted[2]["content"][1] == {"type": "text", "text": "continue"}


def test_request_body_with_thinking():
    body = _service(FakeRuntime())._format_request_body(ChatRequest(
        model_id=SONNET, messages=[{"role": "user", "content": "hi"}],
        system_prompt="sys", tools=[{"name": "read_file"}], enable_thinking=True, max_tokens=16000,
    ))
    assert body["system"] == "sys"
    assert body["tools"] == [{"name": "read_file"}]
    assert body["thinking"]["type"] == "enabled"
    assert 1024 <= body["thinking"]["budget_tokens"] <= 12000
    assert "temperature" not in body


def test_map_client_error():
    thinking = ClientError({"Error": {"Code": "ValidationException", "Message": "thinking is not supported"}}, "Invoke")
    assert isinstance(BedrockService._map_client_error(thinking), CapabilityUnsupportedError)
    throttled = ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "Invoke")
    error = BedrockService._map_client_error(throttled)
    assert type(error) is ModelError
    assert "ThrottlingException" in str(error)


@pytest.mark.asyncio
async def test_stream_decodes_text_thinking_and_tools():
    runtime = FakeRuntime([
        _event({"type": "message_start", "message": {"usage": {"input_tokens": 120}}}),
        _event({"type": "content_block_start", "content_block": {"type": "thinking"}}),
        _event({"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "Need the file."}}),
        _event({"type": "content_block_stop"}),
        _event({"type": "content_block_start", "content_block": {"type": "text"}}),
        _event({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Reading."}}),
        _event({"type": "content_block_stop"}),
        _event({"type": "content_block_start", "content_block": {"type": "tool_use", "id": "toolu_9", "name": "read_file"}}),
        _event({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": '{"path": '}}),
        _event({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": '"a.py"}'}}),
        _event({"type": "content_block_stop"}),
        _event({"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 42}}),
    ])
    chunks = [c async for c in _service(runtime).stream_chat(ChatRequest(model_id=SONNET))]

    assert "".join(c.reasoning_delta for c in chunks) == "Need the file."
    assert "".join(c.content_delta for c in chunks) == "Reading."
    calls = [tc for c in chunks for tc in c.tool_calls]
    assert calls == [{"id": "toolu_9", "name": "read_file", "input": {"path": "a.py"}}]
    done = chunks[-1]
    assert done.done and done.stop_reason == "tool_use"
    assert (done.prompt_tokens, done.completion_tokens) == (120, 42)


@pytest.mark.asyncio
async def test_stream_surfaces_thinking_rejection():
    error = ClientError({"Error": {"Code": "ValidationException", "Message": "thinking budget invalid"}}, "Invoke")
    with pytest.raises(CapabilityUnsupportedError) as excinfo:
        async for _ in _service(FakeRuntime(error=error)).stream_chat(ChatRequest(model_id=SONNET)):
            pass
    assert excinfo.value.capability == "thinking"


class StallingRuntime(FakeRuntime):
    """Sends one text delta, then stalls as if the model were thinking."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def invoke_model_with_response_stream(self, modelId, body, contentType, accept):
        def _body():
            yield _event({"type": "content_block_start", "content_block": {"type": "text"}})
            yield _event({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Looking."}})
            self.release.wait(10)
            yield _event({"type": "content_block_delta", "delta": {"type": "text_delta", "text": " Too late."}})
        return {"body": _body()}


@pytest.mark.asyncio
async def test_cancel_interrupts_stalled_stream():
    runtime = StallingRuntime()
    cancel = asyncio.Event()
    received = []
    started = time.monotonic()
    try:
        async for chunk in _service(runtime).stream_chat(ChatRequest(model_id=SONNET), cancel):
            received.append(chunk.content_delta)
            asyncio.get_running_loop().call_later(0.05, cancel.set)
    finally:
        runtime.release.set()

    assert received == ["Looking."]
    assert time.monotonic() - started < 5
