"""
Conversation history for one task execution.

Owns the message list the loop mutates and the compactor rewrites. Reasoning
is never stored here: only response text, tool calls and tool results reach
the next model request.
"""

import json
import re
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

SYSTEM_NOTE_PREFIX = "[SYSTEM NOTE:"
REASONING_PLACEHOLDER = "[Reasoning completed]"

_MEMORY_BLOCK_RE = re.compile(r"\n*<session_memory>[\s\S]*?</session_memory>")


@dataclass
class Message:
    role: str  # system | user | assistant | tool
    content: str = ""
    tool_calls: Optional[List[Dict[str, Any]]] = None  # [{id, name, arguments}]
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    pinned: bool = False  # never compacted (system prompt, task)
    is_summary: bool = False

    def to_request(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = self.tool_calls
        if self.tool_name:
            data["tool_name"] = self.tool_name
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data


def describe_calls(tool_calls: List[Dict[str, Any]]) -> str:
    """`name(k="v", ...)` annotation for text-mode history. File content is omitted."""
    descs = []
    for tc in tool_calls:
        args = tc.get("arguments") or {}
        parts = []
        for k, v in args.items():
            if k == "content":
                continue
            parts.append(f'{k}="{v[:100]}"' if isinstance(v, str) else f"{k}={json.dumps(v)}")
        descs.append(f"{tc.get('name', 'unknown')}({', '.join(parts)})")
    return f"[Called: {', '.join(descs)}]"


class ConversationHistory:
    """Typed wrapper over the message list sent to the model."""

    def __init__(
        self,
        system_prompt: str,
        task: str,
        native_tools: bool = True,
        prior: Optional[List[Message]] = None,
    ):
        self.native_tools = native_tools
        self.messages: List[Message] = [Message(role="system", content=system_prompt, pinned=True)]
        self.messages.extend(prior or [])
        self.messages.append(Message(role="user", content=task, pinned=True))

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def system_prompt(self) -> str:
        return self.messages[0].content

    # ------------------------------------------------------------------
    # Additions
    # ------------------------------------------------------------------

    def add_assistant(
        self,
        response: str,
        reasoning: str = "",
        tool_calls: Optional[List[Dict[str, Any]]] = None,
        tool_summary: Optional[str] = None,
    ) -> Message:
        """Assistant turn. Content never ends up blank: a tool summary or a
        reasoning placeholder stands in when the model produced no text."""
        if tool_calls:
            content = response or tool_summary or (REASONING_PLACEHOLDER if reasoning else "")
            if not self.native_tools:
                annotation = describe_calls(tool_calls)
                content = f"{content}\n\n{annotation}" if content else annotation
                message = Message(role="assistant", content=content)
            else:
                message = Message(role="assistant", content=content, tool_calls=tool_calls)
        else:
            message = Message(role="assistant", content=response or (REASONING_PLACEHOLDER if reasoning else ""))
        self.messages.append(message)
        return message

    def add_tool_results(self, results: List[Dict[str, Any]], continuation: str) -> None:
        """Native mode: one tool message per result, then the continuation.
        Text mode: every result and the continuation in one user message."""
        if self.native_tools:
            for r in results:
                self.messages.append(Message(
                    role="tool", content=r["content"],
                    tool_name=r["tool_name"], tool_call_id=r.get("tool_call_id"),
                ))
            self.add_continuation(continuation)
        else:
            blocks = [f"[{r['tool_name']} result]\n{r['content']}" for r in results]
            self.messages.append(Message(role="user", content="\n\n".join(blocks + [continuation])))

    def add_continuation(self, content: str) -> None:
        self.messages.append(Message(role="user", content=content))

    def add_system_note(self, note: str) -> None:
        """Ephemeral one-iteration notice, removed by clean_stale_system_notes."""
        self.messages.append(Message(role="user", content=f"{SYSTEM_NOTE_PREFIX} {note}]"))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def clean_stale_system_notes(self) -> int:
        before = len(self.messages)
        self.messages[:] = [
            m for m in self.messages
            if not (m.role == "user" and not m.pinned and m.content.startswith(SYSTEM_NOTE_PREFIX))
        ]
        return before - len(self.messages)

    def update_memory_block(self, block: str) -> None:
        """Replace the `<session_memory>` block at the end of the system prompt."""
        system = self.messages[0]
        base = _MEMORY_BLOCK_RE.sub("", system.content).rstrip()
        system.content = f"{base}\n\n{block}" if block else base

    def prepare_for_request(self) -> List[Dict[str, Any]]:
        """Request payload without the system prompt (sent separately)."""
        return [m.to_request() for m in self.messages[1:]]

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    @staticmethod
    def from_records(records: List[Dict[str, Any]]) -> List[Message]:
        """Rebuild prior turns from the persisted message log.

        Tool traffic is flattened into text (results as `[name result]` user
        turns, calls as a `[Called: ...]` annotation) so the rebuilt history
        is valid for any model regardless of its tool-call protocol.
        """
        rebuilt: List[Message] = []
        for rec in records:
            role = rec.get("role")
            content = rec.get("content") or ""
            if role == "tool":
                if content.strip():
                    rebuilt.append(Message(role="user", content=f"[{rec.get('tool_name') or 'unknown'} result]\n{content}"))
            elif role in ("user", "assistant"):
                tool_calls = rec.get("tool_calls")
                if not content.strip() and not tool_calls:
                    continue
                if role == "assistant" and tool_calls:
                    annotation = describe_calls(tool_calls)
                    content = f"{content}\n\n{annotation}" if content else annotation
                rebuilt.append(Message(role=role, content=content))
        return rebuilt
