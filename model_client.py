"""
Model client interface consumed by the agent loop.
Concrete transports (Bedrock, test fakes) implement ModelClient.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Dict, Any, Optional

from config import get_model_config

logger = logging.getLogger(__name__)


class ModelError(Exception):
    """Transport or API failure while talking to the model."""
    pass


class CapabilityUnsupportedError(ModelError):
    """The model rejected an optional capability (e.g. thinking mode)."""

    def __init__(self, capability: str, message: str):
        super().__init__(message)
        self.capability = capability


@dataclass
class ModelInfo:
    """Capabilities the loop branches on."""
    model_id: str
    context_window: int = 0
    supports_thinking: bool = False
    supports_native_tools: bool = False


@dataclass
class ChatRequest:
    """One model call: messages are plain {role, content, ...} dicts."""
    model_id: str
    messages: List[Dict[str, Any]] = field(default_factory=list)
    system_prompt: str = ""
    tools: Optional[List[Dict[str, Any]]] = None
    enable_thinking: bool = False
    max_tokens: int = 4096


@dataclass
class StreamChunk:
    """One increment of a streamed response."""
    content_delta: str = ""
    reasoning_delta: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)  # finalized {id, name, input}
    done: bool = False
    stop_reason: Optional[str] = None  # end_turn | tool_use | max_tokens
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class ModelClient(ABC):
    """Abstract streaming chat client."""

    @abstractmethod
    def stream_chat(self, request: ChatRequest, cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[StreamChunk]:
        """Stream a response. Implementations stop early once cancel_event is set."""

    async def show_model_info(self, model_id: str) -> ModelInfo:
        cfg = get_model_config(model_id)
        return ModelInfo(
            model_id=model_id,
            context_window=cfg.get("context_window", 0),
            supports_thinking=cfg.get("supports_thinking", False),
            supports_native_tools=cfg.get("supports_native_tools", False),
        )

    async def complete(self, request: ChatRequest, cancel_event: Optional[asyncio.Event] = None) -> str:
        """Drain a stream into its text content (reasoning discarded)."""
        parts: List[str] = []
        async for chunk in self.stream_chat(request, cancel_event):
            if chunk.content_delta:
                parts.append(chunk.content_delta)
        return "".join(parts)
