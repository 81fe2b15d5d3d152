"""
Context compaction: when the conversation nears the context window, replace
the oldest unpinned span with one summary message. The system prompt, the
task message and the most recent turns are kept verbatim.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Callable, Awaitable, Tuple

from agent.conversation import Message

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = """You are summarizing a coding agent conversation so the task can continue after older messages are dropped.

CONVERSATION SEGMENT TO SUMMARIZE:
{transcript}

Write a structured continuation summary with these sections:
1. TASK OVERVIEW: the user's request and constraints.
2. CURRENT STATE: files created, modified or analyzed (with paths) and what is done.
3. IMPORTANT DISCOVERIES: constraints found, decisions made, errors and their fixes.
4. APPROACHES THAT FAILED: what was tried and why it failed, with error messages.
5. NEXT STEPS: remaining actions in priority order.
6. KEY CODE CONTEXT: file paths, function and variable names needed later.

Be concise but keep exact paths, names and error messages. Nothing in the summarized span can be looked up later."""

SUMMARY_WRAPPER = (
    "<context_summary>\n{summary}\n</context_summary>\n\n"
    "The above is a summary of our earlier conversation. Continue from where we left off."
)


def estimate_tokens(text: str) -> int:
    """Rough estimate from character length: ~4 characters per token."""
    return math.ceil(len(text or "") / 4)


def estimate_messages_tokens(messages: List[Message]) -> int:
    return sum(estimate_tokens(m.content) for m in messages)


@dataclass
class CompactionStats:
    messages_summarized: int
    tokens_before: int
    tokens_after: int

    @property
    def tokens_saved(self) -> int:
        return self.tokens_before - self.tokens_after


class ContextCompactor:
    """Summarizes old turns once estimated usage crosses `threshold` of the window.

    `summarize` is an async callable taking the summary prompt and returning
    text (normally ModelClient.complete). Without one, or when it fails or
    returns nothing, an extractive digest of the span is used instead.
    """

    def __init__(
        self,
        summarize: Optional[Callable[[str], Awaitable[str]]] = None,
        threshold: float = 0.70,
        preserve_recent: int = 6,
        min_messages: int = 4,
        message_char_cap: int = 1500,
    ):
        self.summarize = summarize
        self.threshold = threshold
        self.preserve_recent = preserve_recent
        self.min_messages = min_messages
        self.message_char_cap = message_char_cap
        # Last message when we last compacted; nothing new since means no-op
        self._last_tail: Optional[Message] = None

    @staticmethod
    def _oldest_run(messages: List[Message], stop: int) -> Optional[Tuple[int, int]]:
        """[start, end) of the oldest contiguous unpinned run before `stop`
        with at least two messages. Pinned messages (system prompt, task)
        split runs, so a resumed history can have one on each side of the task."""
        start = None
        for i in range(stop + 1):
            if i < stop and not messages[i].pinned:
                if start is None:
                    start = i
                continue
            if start is not None and i - start >= 2:
                return start, i
            start = None
        return None

    def _transcript(self, span: List[Message]) -> str:
        lines = []
        for m in span:
            role = {"assistant": "Assistant", "tool": "Tool"}.get(m.role, "User")
            tag = f" ({m.tool_name})" if m.tool_name else ""
            lines.append(f"[{role}{tag}]: {(m.content or '')[:self.message_char_cap]}")
        return "\n\n".join(lines)

    def _extractive_summary(self, span: List[Message]) -> str:
        lines = []
        for m in span:
            first_line = (m.content or "").strip().splitlines()[0] if (m.content or "").strip() else ""
            if not first_line:
                continue
            tag = f" ({m.tool_name})" if m.tool_name else ""
            lines.append(f"- {m.role}{tag}: {first_line[:200]}")
        return "Earlier conversation (condensed):\n" + "\n".join(lines)

    async def _generate_summary(self, span: List[Message]) -> str:
        if self.summarize is not None:
            try:
                summary = await self.summarize(SUMMARY_PROMPT.format(transcript=self._transcript(span)))
                if summary and summary.strip():
                    return summary.strip()
                logger.warning("Summarizer returned nothing; using extractive summary")
            except Exception as e:
                logger.warning(f"Summarizer failed ({e}); using extractive summary")
        return self._extractive_summary(span)

    async def compact_if_needed(
        self,
        messages: List[Message],
        window_budget: int,
        known_prompt_tokens: Optional[int] = None,
    ) -> Optional[CompactionStats]:
        """Compact `messages` in place. Returns stats, or None when nothing
        was done (below threshold, too few messages, nothing left to fold)."""
        if messages and messages[-1] is self._last_tail:
            return None
        tokens_before = known_prompt_tokens if known_prompt_tokens else estimate_messages_tokens(messages)
        if tokens_before < math.floor(window_budget * self.threshold):
            return None
        if len(messages) <= self.min_messages:
            return None

        preserve_start = max(len(messages) - self.preserve_recent, 0)
        # Tool results must stay with the assistant turn that requested them
        while 0 < preserve_start < len(messages) and messages[preserve_start].role == "tool":
            preserve_start -= 1

        run = self._oldest_run(messages, preserve_start)
        if run is None:
            return None
        start, end = run
        span = messages[start:end]

        summary = await self._generate_summary(span)
        summary_message = Message(role="user", content=SUMMARY_WRAPPER.format(summary=summary), is_summary=True)
        messages[start:end] = [summary_message]
        self._last_tail = messages[-1]

        stats = CompactionStats(
            messages_summarized=len(span),
            tokens_before=tokens_before,
            tokens_after=estimate_messages_tokens(messages),
        )
        logger.info(
            f"Compacted {stats.messages_summarized} messages: "
            f"~{stats.tokens_before} -> ~{stats.tokens_after} tokens"
        )
        return stats
