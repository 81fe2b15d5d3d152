"""
Amazon Bedrock model client.
Streams Anthropic Claude responses (text, thinking, tool_use) into StreamChunks.
"""

import asyncio
import json
import logging
import queue
import threading
from typing import AsyncIterator, Iterator, List, Dict, Optional, Any

import boto3
from botocore.exceptions import ClientError, NoCredentialsError

from config import (
    aws_config,
    model_config,
    get_max_output_tokens,
    supports_thinking,
)
from model_client import ModelClient, ModelError, CapabilityUnsupportedError, ChatRequest, StreamChunk

logger = logging.getLogger(__name__)

_SENTINEL = object()


class BedrockService(ModelClient):
    """
    Model client for Amazon Bedrock.
    The boto3 stream is synchronous, so it runs on a producer thread and the
    event loop drains a queue between cancellation checks.
    """

    def __init__(self, region: Optional[str] = None):
        self.region = region or aws_config.region
        self.client = self._create_client()
        logger.info(f"BedrockService initialized in region: {self.region}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs: Dict[str, Any] = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise ModelError("AWS credentials not configured.")
        except Exception as e:
            raise ModelError(f"Failed to initialize Bedrock client: {e}")

    # ------------------------------------------------------------------
    # Request formatting
    # ------------------------------------------------------------------

    @staticmethod
    def _format_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Map runtime messages onto Anthropic blocks. Tool results become
        tool_result blocks in a user turn; consecutive same-role turns are merged."""
        formatted: List[Dict[str, Any]] = []

        def _append(role: str, blocks: List[Dict[str, Any]]) -> None:
            if formatted and formatted[-1]["role"] == role:
                formatted[-1]["content"].extend(blocks)
            else:
                formatted.append({"role": role, "content": list(blocks)})

        for msg in messages:
            role = msg.get("role")
            content = msg.get("content") or ""
            if role == "system":
                continue
            if role == "tool":
                call_id = msg.get("tool_call_id")
                if call_id:
                    _append("user", [{
                        "type": "tool_result",
                        "tool_use_id": call_id,
                        "content": content or "(no output)",
                    }])
                else:
                    _append("user", [{"type": "text", "text": f"[{msg.get('tool_name', 'tool')} result]\n{content}"}])
                continue
            blocks: List[Dict[str, Any]] = []
            if content.strip():
                blocks.append({"type": "text", "text": content})
            for tc in msg.get("tool_calls") or []:
                blocks.append({
                    "type": "tool_use",
                    "id": tc.get("id", ""),
                    "name": tc.get("name", ""),
                    "input": tc.get("arguments", {}),
                })
            if not blocks:
                blocks.append({"type": "text", "text": "(no content)"})
            _append(role, blocks)
        return formatted

    def _format_request_body(self, request: ChatRequest) -> Dict[str, Any]:
        effective_max_tokens = min(request.max_tokens, get_max_output_tokens(request.model_id))
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": effective_max_tokens,
            "messages": self._format_messages(request.messages),
        }
        if request.system_prompt:
            body["system"] = request.system_prompt
        if request.tools:
            body["tools"] = request.tools

        if request.enable_thinking and supports_thinking(request.model_id):
            # budget must stay below max_tokens with room for the answer
            budget = min(model_config.thinking_budget, effective_max_tokens - 4000)
            body["thinking"] = {"type": "enabled", "budget_tokens": max(budget, 1024)}
            logger.info(f"Extended thinking enabled with budget: {body['thinking']['budget_tokens']} tokens")
        elif model_config.temperature is not None:
            body["temperature"] = model_config.temperature
        return body

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _iter_stream(self, request: ChatRequest) -> Iterator[StreamChunk]:
        """Synchronous generator over the Bedrock event stream."""
        body = self._format_request_body(request)
        logger.info(f"Streaming from model: {request.model_id}")
        try:
            response = self.client.invoke_model_with_response_stream(
                modelId=request.model_id,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
        except ClientError as e:
            raise self._map_client_error(e)

        current_block_type = "text"
        current_tool: Optional[Dict[str, Any]] = None
        tool_json_parts: List[str] = []
        prompt_tokens: Optional[int] = None

        for event in response["body"]:
            chunk = json.loads(event["chunk"]["bytes"])
            event_type = chunk.get("type", "")

            if event_type == "message_start":
                usage = chunk.get("message", {}).get("usage", {})
                prompt_tokens = usage.get("input_tokens")

            elif event_type == "content_block_start":
                block = chunk.get("content_block", {})
                current_block_type = block.get("type", "text")
                if current_block_type == "tool_use":
                    current_tool = {"id": block.get("id", ""), "name": block.get("name", "")}
                    tool_json_parts = []

            elif event_type == "content_block_delta":
                delta = chunk.get("delta", {})
                delta_type = delta.get("type", "")
                if delta_type == "thinking_delta" and delta.get("thinking"):
                    yield StreamChunk(reasoning_delta=delta["thinking"])
                elif delta_type == "text_delta" and delta.get("text"):
                    yield StreamChunk(content_delta=delta["text"])
                elif delta_type == "input_json_delta":
                    tool_json_parts.append(delta.get("partial_json", ""))

            elif event_type == "content_block_stop":
                if current_block_type == "tool_use" and current_tool:
                    raw = "".join(tool_json_parts)
                    try:
                        current_tool["input"] = json.loads(raw) if raw else {}
                    except json.JSONDecodeError:
                        current_tool["input"] = {}
                        current_tool["raw"] = raw
                    yield StreamChunk(tool_calls=[current_tool])
                    current_tool = None

            elif event_type == "message_delta":
                usage = chunk.get("usage", {})
                yield StreamChunk(
                    done=True,
                    stop_reason=chunk.get("delta", {}).get("stop_reason"),
                    prompt_tokens=prompt_tokens,
                    completion_tokens=usage.get("output_tokens"),
                )

    @staticmethod
    def _map_client_error(e: ClientError) -> ModelError:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        error_message = e.response.get("Error", {}).get("Message", str(e))
        logger.error(f"Bedrock API error: {error_code} - {error_message}")
        if error_code in ("ExpiredTokenException", "InvalidSignatureException"):
            return ModelError(f"AWS credentials expired: {error_message}")
        if "thinking" in error_message.lower():
            return CapabilityUnsupportedError("thinking", f"Thinking configuration error: {error_message}")
        return ModelError(f"Bedrock API error ({error_code}): {error_message}")

    async def stream_chat(self, request: ChatRequest, cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[StreamChunk]:
        chunk_queue: queue.Queue = queue.Queue()
        stop = threading.Event()

        def _stream_producer():
            """Run the sync generator in a background thread, forwarding chunks to the queue."""
            try:
                for c in self._iter_stream(request):
                    if stop.is_set():
                        break
                    chunk_queue.put(c)
                chunk_queue.put(_SENTINEL)
            except ClientError as exc:
                chunk_queue.put(self._map_client_error(exc))
            except Exception as exc:
                chunk_queue.put(exc)

        producer_thread = threading.Thread(target=_stream_producer, daemon=True)
        producer_thread.start()

        loop = asyncio.get_running_loop()
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    break
                getter = loop.run_in_executor(None, chunk_queue.get)
                if cancel_event is not None:
                    # A long thinking pause must not hold up cancellation
                    canceller = asyncio.ensure_future(cancel_event.wait())
                    try:
                        await asyncio.wait({getter, canceller}, return_when=asyncio.FIRST_COMPLETED)
                    finally:
                        canceller.cancel()
                    if not getter.done():
                        break
                item = await getter
                if item is _SENTINEL:
                    break
                if isinstance(item, ModelError):
                    raise item
                if isinstance(item, Exception):
                    raise ModelError(f"Streaming error: {item}") from item
                yield item
        finally:
            stop.set()
            # Releases a reader still blocked on the queue after cancellation
            chunk_queue.put(_SENTINEL)
