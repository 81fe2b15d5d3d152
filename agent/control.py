"""
Loop control plane: pure decision logic for the agent loop.

Tool-call parsing and recovery, signature-based deduplication, completion
detection, and the deterministic continuation directive appended after each
iteration. Nothing here performs I/O; per-session state lives in
ToolCallDeduplicator instances owned by the loop.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Iterable

from tools.schemas import normalize_tool_name

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "[TASK_COMPLETE]"
CONTROL_OPEN = "<agent_control>"
CONTROL_CLOSE = "</agent_control>"


class LoopState:
    NEED_TOOLS = "need_tools"
    NEED_FIXES = "need_fixes"
    NEED_SUMMARY = "need_summary"
    COMPLETE = "complete"

    ALL = frozenset({NEED_TOOLS, NEED_FIXES, NEED_SUMMARY, COMPLETE})


class NoToolDecision:
    CONTINUE = "continue"
    BREAK_IMPLICIT = "break_implicit"
    BREAK_CONSECUTIVE = "break_consecutive"


_EVENT_TO_STATE = {
    "no_tools": LoopState.NEED_TOOLS,
    "tool_results": LoopState.NEED_TOOLS,
    "diagnostics_errors": LoopState.NEED_FIXES,
    "need_summary": LoopState.NEED_SUMMARY,
}

REPETITION_WARNING = (
    "You are repeating the same tool calls you already made. The results have not changed. "
    f"Please use different tools or arguments, or if you have enough information, respond with {COMPLETION_MARKER}."
)


def resolve_control_state(event: str) -> str:
    """Map a loop event (no_tools, tool_results, diagnostics_errors, need_summary) to a LoopState."""
    return _EVENT_TO_STATE.get(event, LoopState.NEED_TOOLS)


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    """Canonical tool call. `source` records where it came from: a structured
    tool_use block ("native") or a call embedded in response text ("text")."""
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    source: str = "native"

    @property
    def signature(self) -> str:
        return tool_signature(self.name, self.arguments)


def tool_signature(name: str, arguments: Optional[Dict[str, Any]]) -> str:
    """`name|k1=<json>&k2=<json>` with keys sorted at every level, so argument
    order never changes the signature."""
    args = arguments or {}
    parts = [
        f"{k}={json.dumps(args[k], sort_keys=True, ensure_ascii=False)}"
        for k in sorted(args)
    ]
    return f"{name}|{'&'.join(parts)}"


_TOOL_CALL_TAG_RE = re.compile(r"<tool_call>\s*(.*?)\s*</tool_call>", re.DOTALL | re.IGNORECASE)
_BRACKET_CALL_RE = re.compile(r"\[TOOL_CALLS\]\s*([A-Za-z_][\w.-]*)\s*\[ARGS\]\s*")
_RAW_ARGS_RE = re.compile(r"raw='(\{.*\})'", re.DOTALL)

_QUOTE_TRANSLATION = str.maketrans({
    "“": '"', "”": '"', "„": '"', "‟": '"',
    "‘": "'", "’": "'",
})


def _normalize_quotes(text: str) -> str:
    return text.translate(_QUOTE_TRANSLATION)


def _loads_lenient(raw: str) -> Optional[Any]:
    """json.loads, retrying once with curly quotes normalized."""
    for candidate in (raw, _normalize_quotes(raw)):
        try:
            return json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
    return None


def infer_tool_name(arguments: Dict[str, Any]) -> Optional[str]:
    """Guess which tool a bare argument object belongs to from its shape."""
    if "query" in arguments:
        return "search_workspace"
    if "path" in arguments and "content" in arguments:
        return "write_file"
    if "command" in arguments:
        return "run_terminal_command"
    if "symbolName" in arguments:
        return "find_definition"
    if "path" in arguments:
        return "read_file"
    return None


def _coerce_arguments(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        parsed = _loads_lenient(value)
        if isinstance(parsed, dict):
            return parsed
    return {}


def _call_from_payload(payload: Any, source: str) -> Optional[ToolCall]:
    if not isinstance(payload, dict):
        return None
    name = payload.get("name") or payload.get("tool")
    if "arguments" in payload or "parameters" in payload or "args" in payload:
        raw_args = payload.get("arguments", payload.get("parameters", payload.get("args")))
        arguments = _coerce_arguments(raw_args)
    else:
        arguments = {k: v for k, v in payload.items() if k not in ("name", "tool")}
    if not name:
        name = infer_tool_name(arguments)
    if not name:
        return None
    return ToolCall(name=normalize_tool_name(str(name)), arguments=arguments, source=source)


class ToolCallParseError(ValueError):
    """A text-embedded tool call payload could not be decoded."""
    pass


def parse_tool_call_payload(raw: str) -> ToolCall:
    """Strictly decode one `<tool_call>` body."""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ToolCallParseError(f"Invalid tool call JSON ({e.msg}): raw='{raw}'") from e
    call = _call_from_payload(payload, source="text")
    if call is None:
        raise ToolCallParseError(f"Tool call has no recognizable name: raw='{raw}'")
    return call


def recover_tool_call_from_error(message: str) -> Optional[ToolCall]:
    """Best-effort recovery of a tool call from a parse error that quotes the
    raw payload as raw='{...}'."""
    match = _RAW_ARGS_RE.search(message or "")
    if not match:
        return None
    payload = _loads_lenient(match.group(1))
    call = _call_from_payload(payload, source="text")
    if call:
        logger.info(f"Recovered tool call '{call.name}' from malformed payload")
    return call


def extract_text_tool_calls(text: str) -> List[ToolCall]:
    """Tool calls embedded in free text, in order of appearance."""
    found: List[tuple] = []
    for m in _TOOL_CALL_TAG_RE.finditer(text or ""):
        try:
            call = parse_tool_call_payload(m.group(1))
        except ToolCallParseError as e:
            call = recover_tool_call_from_error(str(e))
            if call is None:
                logger.warning(f"Dropping unparseable tool call: {str(e)[:200]}")
                continue
        found.append((m.start(), call))

    decoder = json.JSONDecoder()
    for m in _BRACKET_CALL_RE.finditer(text or ""):
        try:
            args, _ = decoder.raw_decode(_normalize_quotes(text), m.end())
        except json.JSONDecodeError:
            logger.warning(f"Unparseable [ARGS] payload for tool {m.group(1)}")
            continue
        found.append((m.start(), ToolCall(
            name=normalize_tool_name(m.group(1)), arguments=_coerce_arguments(args), source="text",
        )))
    found.sort(key=lambda pair: pair[0])
    return [call for _, call in found]


def parse_tool_calls(
    response: str,
    structured_calls: Optional[Iterable[Dict[str, Any]]] = None,
    native_mode: bool = True,
) -> List[ToolCall]:
    """Structured calls win when present; otherwise fall back to calls
    embedded in the response text."""
    calls: List[ToolCall] = []
    if native_mode:
        for raw in structured_calls or []:
            arguments = raw.get("input", raw.get("arguments"))
            arguments = _coerce_arguments(arguments)
            if not arguments and raw.get("raw"):
                arguments = _coerce_arguments(raw["raw"])
            name = raw.get("name") or infer_tool_name(arguments)
            if not name:
                continue
            calls.append(ToolCall(
                name=normalize_tool_name(name), arguments=arguments,
                id=raw.get("id") or None, source="native",
            ))
    if calls:
        return calls
    return extract_text_tool_calls(response)


def remove_tool_calls(text: str) -> str:
    """Strip embedded tool-call syntax from display text."""
    cleaned = _TOOL_CALL_TAG_RE.sub("", text or "")
    decoder = json.JSONDecoder()
    while True:
        m = _BRACKET_CALL_RE.search(cleaned)
        if not m:
            break
        try:
            _, end = decoder.raw_decode(cleaned, m.end())
        except json.JSONDecodeError:
            end = m.end()
        cleaned = cleaned[:m.start()] + cleaned[end:]
    return cleaned.strip()


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------

@dataclass
class DedupResult:
    calls: List[ToolCall]
    dropped: List[str] = field(default_factory=list)
    all_duplicates: bool = False
    was_capped: bool = False


class ToolCallDeduplicator:
    """Per-session repetition filter.

    Drops repeats within one batch and calls whose signature was executed in
    the last `window` iterations, forgets signatures older than `expiry`
    iterations, and caps the batch at `max_batch` calls.
    """

    def __init__(self, window: int = 2, expiry: int = 3, max_batch: int = 10):
        self.window = window
        self.expiry = expiry
        self.max_batch = max_batch
        self.recent: Dict[str, int] = {}

    def filter(self, calls: List[ToolCall], iteration: int) -> DedupResult:
        seen_in_batch = set()
        kept: List[ToolCall] = []
        dropped: List[str] = []

        for call in calls:
            sig = call.signature
            if sig in seen_in_batch:
                dropped.append(f"{call.name} (intra-batch duplicate)")
                continue
            seen_in_batch.add(sig)
            last_seen = self.recent.get(sig)
            if last_seen is not None and iteration - last_seen <= self.window:
                dropped.append(f"{call.name} (repeated from iteration {last_seen})")
                continue
            kept.append(call)

        was_capped = len(kept) > self.max_batch
        if was_capped:
            kept = kept[:self.max_batch]

        for call in kept:
            self.recent[call.signature] = iteration
        for sig, seen_at in list(self.recent.items()):
            if iteration - seen_at > self.expiry:
                del self.recent[sig]

        return DedupResult(
            calls=kept,
            dropped=dropped,
            all_duplicates=not kept and bool(calls),
            was_capped=was_capped,
        )


# ---------------------------------------------------------------------------
# Completion detection
# ---------------------------------------------------------------------------

# A whole line declaring the task finished, e.g. "The task is complete."
_COMPLETION_PHRASE_RE = re.compile(
    r"^\W*(?:the\s+)?task\s+(?:is|has\s+been)\s+(?:now\s+)?(?:fully\s+|successfully\s+)?"
    r"(?:complete|completed|done|finished)\W*$",
    re.IGNORECASE | re.MULTILINE,
)


def is_completion_signaled(response: str, reasoning: str = "") -> bool:
    combined = f"{response or ''}\n{reasoning or ''}"
    if COMPLETION_MARKER.lower() in combined.lower():
        return True
    if parse_control_state(combined) == LoopState.COMPLETE:
        return True
    return bool(_COMPLETION_PHRASE_RE.search(combined))


def check_no_tool_completion(
    response: str,
    reasoning: str,
    has_written_files: bool,
    consecutive_no_tool_count: int,
    limit: int = 2,
) -> str:
    """Decide what a tool-less iteration means. Implicit completion (nothing
    said, files written) takes priority over the consecutive-iteration cap."""
    truly_empty = not (response or "").strip() and not (reasoning or "").strip()
    if truly_empty and has_written_files:
        return NoToolDecision.BREAK_IMPLICIT
    if consecutive_no_tool_count >= limit:
        return NoToolDecision.BREAK_CONSECUTIVE
    return NoToolDecision.CONTINUE


_WRITE_VERBS_RE = re.compile(
    r"\b(rename|change|modify|edit|update|add|create|write|fix|refactor|remove|delete|"
    r"implement|move|replace|insert|append|prepend)\b",
    re.IGNORECASE,
)
_TERMINAL_VERBS_RE = re.compile(
    r"\b(run|test|install|build|compile|execute|start|serve|deploy|lint|format|"
    r"npm|yarn|pip|cargo|make|docker)\b",
    re.IGNORECASE,
)


def task_requires_write(task: str) -> bool:
    return bool(_WRITE_VERBS_RE.search(task or ""))


def task_requires_terminal(task: str) -> bool:
    return bool(_TERMINAL_VERBS_RE.search(task or ""))


# ---------------------------------------------------------------------------
# Continuation directive
# ---------------------------------------------------------------------------

def _trim(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[:limit] + "…"


def _unique_files(files: Optional[Iterable[Any]]) -> Optional[List[str]]:
    if not files:
        return None
    unique: List[str] = []
    for f in files:
        if isinstance(f, str) and f not in unique:
            unique.append(f)
    return unique or None


def build_control_packet(
    iteration: int,
    max_iterations: int,
    state: str = LoopState.NEED_TOOLS,
    files_changed: Optional[Iterable[str]] = None,
    tool_results: Optional[str] = None,
    note: Optional[str] = None,
    strategy: str = "full",
) -> str:
    """Structured `<agent_control>{...}</agent_control>` packet. `iteration`
    is the index of the iteration just finished; the packet names the next one.
    The task is never repeated here; it already sits in the conversation."""
    files = _unique_files(files_changed)
    head = {
        "state": state,
        "iteration": iteration + 1,
        "maxIterations": max_iterations,
        "remainingIterations": max_iterations - iteration - 1,
    }
    if strategy == "full":
        payload = dict(head, filesChanged=files, toolResults=tool_results, note=note)
    elif strategy == "standard":
        payload = dict(
            head,
            note=_trim(note, 160) if note else None,
            toolResults=_trim(tool_results, 320) if tool_results else None,
            filesChanged=files[:5] if files else None,
        )
    else:
        payload = dict(head, note=_trim(note, 120) if note else None)
    payload = {k: v for k, v in payload.items() if v is not None}
    return f"{CONTROL_OPEN}{json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}{CONTROL_CLOSE}"


def build_continuation_message(
    iteration: int,
    max_iterations: int,
    state: str = LoopState.NEED_TOOLS,
    files_changed: Optional[Iterable[str]] = None,
    tool_results: Optional[str] = None,
    note: Optional[str] = None,
    strategy: str = "full",
) -> str:
    packet = build_control_packet(iteration, max_iterations, state, files_changed, tool_results, note, strategy)
    return f"{packet}\nProceed with tool calls or {COMPLETION_MARKER}."


def _extract_control_payload(text: str) -> Optional[Dict[str, Any]]:
    start = (text or "").rfind(CONTROL_OPEN)
    if start < 0:
        return None
    end = text.find(CONTROL_CLOSE, start)
    if end < 0:
        return None
    try:
        payload = json.loads(text[start + len(CONTROL_OPEN):end].strip())
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def parse_control_state(text: str) -> Optional[str]:
    payload = _extract_control_payload(text)
    if not payload:
        return None
    state = payload.get("state")
    return state if state in LoopState.ALL else None


_CONTROL_PACKET_RE = re.compile(r"<agent_control>[\s\S]*?</agent_control>", re.IGNORECASE)


def strip_control_packets(text: str) -> str:
    return _CONTROL_PACKET_RE.sub("", text or "").strip()


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

def _short_path(p: Optional[str]) -> str:
    if not p:
        return "?"
    parts = str(p).replace("\\", "/").split("/")
    return p if len(parts) <= 2 else "/".join(parts[-2:])


def _truncate(s: Optional[str], limit: int) -> str:
    if not s:
        return "…"
    return s if len(s) <= limit else s[:limit] + "…"


def build_tool_call_summary(calls: List[ToolCall]) -> Optional[str]:
    """Deterministic one-sentence summary of what the model just did. Used as
    the assistant content when a turn has tool calls but no text."""
    if not calls:
        return None
    descriptions = []
    for call in calls:
        a = call.arguments or {}
        if call.name == "read_file":
            descriptions.append(f"read {_short_path(a.get('path'))}")
        elif call.name == "write_file":
            descriptions.append(f"wrote {_short_path(a.get('path'))}")
        elif call.name == "search_workspace":
            descriptions.append(f'searched for "{_truncate(a.get("query"), 60)}"')
        elif call.name == "list_files":
            descriptions.append(f"listed {_short_path(a.get('path') or '.')}")
        elif call.name == "run_terminal_command":
            descriptions.append(f"ran `{_truncate(a.get('command'), 40)}`")
        elif call.name == "get_diagnostics":
            suffix = f" for {_short_path(a.get('path'))}" if a.get("path") else ""
            descriptions.append(f"checked diagnostics{suffix}")
        elif call.name == "find_definition":
            descriptions.append(f"looked up definition of {a.get('symbolName') or '?'}")
        elif call.name == "run_subagent":
            descriptions.append("delegated a sub-task")
        else:
            descriptions.append(f"used {call.name}")
    return f"I {', then '.join(descriptions)}."
