"""
Rolling session memory: per-iteration records plus a small table of durable
facts, rendered as a reminder block that is re-injected into the system
prompt before every model call.
"""

import logging
import re
import time
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional

logger = logging.getLogger(__name__)

_CONFIG_FILE_RE = re.compile(
    r"package\.json|tsconfig|\.eslintrc|pyproject\.toml|Cargo\.toml|go\.mod|Gemfile|pom\.xml",
    re.IGNORECASE,
)
_SYMBOL_FINDING_RE = re.compile(
    r"(?:definition|hierarchy|references|implementations)\s+(?:of|for)\s+['\"`]?(\w+)['\"`]?",
    re.IGNORECASE,
)
_SYMBOL_TOOLS = frozenset({"find_definition"})

MAX_FUNCTIONS_EXPLORED = 50
RECENT_ITERATIONS = 3
MAX_LISTED_FILES = 15
TASK_PREVIEW_CHARS = 120
_FILE_LIST_KEYS = frozenset({"files_modified", "project_config_files"})


@dataclass(frozen=True)
class IterationRecord:
    """What one iteration did. Immutable once recorded."""
    index: int
    tools_called: List[str] = field(default_factory=list)
    files_read: List[str] = field(default_factory=list)
    files_written: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    findings: List[str] = field(default_factory=list)


def build_iteration_record(index: int, results: List[Dict[str, Any]]) -> IterationRecord:
    """Derive an IterationRecord from tool results given as
    {name, args, output, success} dicts."""
    tools_called, files_read, files_written, errors, findings = [], [], [], [], []
    for r in results:
        name = r.get("name", "")
        args = r.get("args") or {}
        output = r.get("output") or ""
        success = r.get("success", True)
        tools_called.append(name)

        if name == "read_file" and args.get("path"):
            files_read.append(args["path"])
        if name == "write_file" and args.get("path") and success:
            files_written.append(args["path"])
        if not success:
            errors.append(f"{name}: {output[:100]}")

        if name == "search_workspace" and success:
            match_count = output.count("\n")
            if match_count > 0:
                findings.append(f'Found {match_count} matches for "{args.get("query") or "unknown"}"')
        if name in _SYMBOL_TOOLS and success and args.get("symbolName"):
            findings.append(f'{name}: definition of "{args["symbolName"]}" found')

    return IterationRecord(
        index=index,
        tools_called=tools_called,
        files_read=files_read,
        files_written=files_written,
        errors=errors,
        findings=findings,
    )


def _split(value: Optional[str]) -> List[str]:
    return [v for v in (value or "").split(", ") if v]


def _merge(existing: Optional[str], new: List[str]) -> str:
    merged = _split(existing)
    for item in new:
        if item not in merged:
            merged.append(item)
    return ", ".join(merged)


def _capped(files: List[str]) -> str:
    """Most recent MAX_LISTED_FILES entries with an overflow count."""
    listed = ", ".join(files[-MAX_LISTED_FILES:])
    extra = len(files) - MAX_LISTED_FILES
    return f"{listed} (+{extra} more)" if extra > 0 else listed


class SessionMemory:
    """Per-session memory. One instance per session; never shared."""

    def __init__(self, task: str = ""):
        self.task = task
        self.entries: Dict[str, Dict[str, Any]] = {}
        self.history: List[IterationRecord] = []
        self.user_preferences: List[str] = []

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def set(self, key: str, value: str) -> None:
        self.entries[key] = {"value": value, "updated_at": time.time()}

    def get(self, key: str) -> Optional[str]:
        entry = self.entries.get(key)
        return entry["value"] if entry else None

    def add_user_preference(self, preference: str) -> None:
        if preference not in self.user_preferences:
            self.user_preferences.append(preference)

    @property
    def iteration_count(self) -> int:
        return len(self.history)

    # ------------------------------------------------------------------
    # Iterations
    # ------------------------------------------------------------------

    def add_iteration_record(self, record: IterationRecord) -> None:
        self.history.append(record)
        self._extract_facts(record)

    def _extract_facts(self, record: IterationRecord) -> None:
        config_files = [f for f in record.files_read if _CONFIG_FILE_RE.search(f)]
        if config_files:
            self.set("project_config_files", _merge(self.get("project_config_files"), config_files))

        if record.errors:
            total = int(self.get("total_errors") or "0") + len(record.errors)
            self.set("total_errors", str(total))

        if record.files_written:
            self.set("files_modified", _merge(self.get("files_modified"), record.files_written))

        if any(t in _SYMBOL_TOOLS for t in record.tools_called):
            symbols = _split(self.get("functions_explored"))
            for finding in record.findings:
                m = _SYMBOL_FINDING_RE.search(finding)
                if m and m.group(1) not in symbols:
                    symbols.append(m.group(1))
            if symbols:
                self.set("functions_explored", ", ".join(symbols[-MAX_FUNCTIONS_EXPLORED:]))

    def _all_files(self, attr: str) -> List[str]:
        seen: List[str] = []
        for record in self.history:
            for f in getattr(record, attr):
                if f not in seen:
                    seen.append(f)
        return seen

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def compact_summary(self) -> str:
        """One-line digest of counts for continuation directives."""
        parts = []
        files_read = len(self._all_files("files_read"))
        files_written = len(self._all_files("files_written"))
        total_errors = int(self.get("total_errors") or "0")
        if files_read:
            parts.append(f"{files_read} files read")
        if files_written:
            parts.append(f"{files_written} files written")
        if total_errors:
            parts.append(f"{total_errors} errors encountered")
        if self.user_preferences:
            parts.append(f"{len(self.user_preferences)} prefs noted")
        functions = _split(self.get("functions_explored"))
        if functions:
            parts.append(f"{len(functions)} functions explored")
        return ", ".join(parts)

    def to_reminder_block(self) -> str:
        if not self.entries and not self.history:
            return ""

        sections = []
        if self.task:
            preview = self.task if len(self.task) <= TASK_PREVIEW_CHARS else self.task[:TASK_PREVIEW_CHARS] + "…"
            sections.append(f"## Task Reference\n{preview}")

        if self.entries:
            ordered = sorted(self.entries.items(), key=lambda kv: kv[1]["updated_at"], reverse=True)
            notes = "\n".join(
                f"- **{k}**: {_capped(_split(e['value'])) if k in _FILE_LIST_KEYS else e['value']}"
                for k, e in ordered
            )
            sections.append(f"## Session Notes\n{notes}")

        if self.user_preferences:
            sections.append("## User Preferences\n" + "\n".join(f"- {p}" for p in self.user_preferences))

        if self.history:
            lines = []
            for record in self.history[-RECENT_ITERATIONS:]:
                parts = []
                if record.files_read:
                    parts.append(f"read {len(record.files_read)} files")
                if record.files_written:
                    parts.append(f"wrote {', '.join(record.files_written)}")
                if record.errors:
                    parts.append(f"{len(record.errors)} errors")
                if record.findings:
                    parts.append(record.findings[0])
                lines.append(f"- Iter {record.index}: {'; '.join(parts) or 'no significant actions'}")
            sections.append("## Recent Activity\n" + "\n".join(lines))

        files_read = self._all_files("files_read")
        files_written = self._all_files("files_written")
        if files_read or files_written:
            file_lines = []
            if files_read:
                file_lines.append(f"Files explored: {_capped(files_read)}")
            if files_written:
                file_lines.append(f"Files modified: {_capped(files_written)}")
            sections.append("## File Tracking\n" + "\n".join(file_lines))

        return "<session_memory>\n" + "\n\n".join(sections) + "\n</session_memory>"

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task,
            "entries": {k: dict(v) for k, v in self.entries.items()},
            "history": [asdict(r) for r in self.history],
            "user_preferences": list(self.user_preferences),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SessionMemory":
        memory = cls()
        if not data:
            return memory
        memory.task = data.get("task", "")
        memory.entries = {k: dict(v) for k, v in (data.get("entries") or {}).items()}
        memory.history = [IterationRecord(**r) for r in data.get("history") or []]
        memory.user_preferences = list(data.get("user_preferences") or [])
        return memory
