"""
Session persistence for the agent runtime.
Stores session metadata and the serialized session memory as JSON, the
append-only message log as JSON Lines, and checkpoint rows as JSON files so tasks can be resumed and reverted after restart.
"""

import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

SESSION_VERSION = 1


@dataclass
class Session:
    """A persisted agent session."""
    session_id: str = ""
    version: int = SESSION_VERSION
    name: str = "default"
    working_directory: str = ""
    model_id: str = ""
    created_at: str = ""
    updated_at: str = ""
    # Append-only log of persisted messages and tool records. Filled from
    # the .messages.jsonl file on load and never written to the session JSON.
    messages: List[Dict[str, Any]] = field(default_factory=list)
    # Serialized SessionMemory, overwritten at task end
    memory: Dict[str, Any] = field(default_factory=dict)
    auto_approve_commands: bool = False
    auto_approve_sensitive_edits: bool = False
    sensitive_file_patterns: Optional[Dict[str, bool]] = None
    token_usage: Dict[str, int] = field(default_factory=lambda: {
        "input_tokens": 0,
        "output_tokens": 0,
    })

    @property
    def message_count(self) -> int:
        """Count user messages in the log."""
        return sum(1 for m in self.messages if m.get("role") == "user")


def _slugify(name: str) -> str:
    """Turn a session name into a safe filename component."""
    s = name.lower().strip()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    s = s.strip("-")[:50]
    return s or "default"


def _dir_hash(working_directory: str) -> str:
    """Deterministic short hash of a working directory path."""
    normalized = os.path.abspath(os.path.expanduser(working_directory))
    return hashlib.sha256(normalized.encode()).hexdigest()[:12]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _auto_name(first_task: str) -> str:
    """Generate a session name from the first user task."""
    words = first_task.strip().split()[:6]
    name = " ".join(words)
    if len(first_task.strip().split()) > 6:
        name += "..."
    return name or "default"


def _atomic_write_json(path: str, data: Any) -> None:
    tmp_path = path + ".tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class SessionStore:
    """
    Manages session and checkpoint files on disk.

    File layout:  {base_dir}/{dir_hash}_{slug}.json
                  {base_dir}/{dir_hash}_{slug}.messages.jsonl
                  {base_dir}/checkpoints/{checkpoint_id}.json
    """

    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        self.checkpoint_dir = os.path.join(base_dir, "checkpoints")
        os.makedirs(self.checkpoint_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def save(self, session: Session) -> str:
        """Save a session to disk. Returns the file path."""
        if not session.session_id:
            session.session_id = self._make_id(session.working_directory, session.name)
        session.updated_at = _now_iso()
        if not session.created_at:
            session.created_at = session.updated_at

        path = self._path_for(session.session_id)
        data = asdict(session)
        data.pop("messages", None)
        _atomic_write_json(path, data)
        logger.debug(f"Session saved: {path}")
        return path

    def load(self, session_id: str) -> Optional[Session]:
        """Load a session by ID."""
        path = self._path_for(session_id)
        if not os.path.exists(path):
            return None
        session = self._read_file(path)
        if session is not None:
            session.messages = self.get_messages(session_id)
        return session

    def delete(self, session_id: str) -> bool:
        """Delete a session file and its message log. Returns True if deleted."""
        path = self._path_for(session_id)
        log_path = self._log_path_for(session_id)
        if os.path.exists(log_path):
            os.remove(log_path)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"Session deleted: {path}")
            return True
        return False

    def list_sessions(self, working_directory: str) -> List[Session]:
        """List all sessions for a given working directory, newest first."""
        prefix = _dir_hash(working_directory) + "_"
        sessions: List[Session] = []
        for fname in os.listdir(self.base_dir):
            if fname.startswith(prefix) and fname.endswith(".json"):
                sess = self._read_file(os.path.join(self.base_dir, fname))
                if sess:
                    sess.messages = self.get_messages(sess.session_id)
                    sessions.append(sess)
        sessions.sort(key=lambda s: s.updated_at or "", reverse=True)
        return sessions

    def get_latest(self, working_directory: str) -> Optional[Session]:
        sessions = self.list_sessions(working_directory)
        return sessions[0] if sessions else None

    def create_session(self, working_directory: str, model_id: str, name: str = "default") -> Session:
        """Create a new empty session (not yet saved)."""
        return Session(
            session_id=self._make_id(working_directory, name),
            name=name,
            working_directory=os.path.abspath(working_directory),
            model_id=model_id,
            created_at=_now_iso(),
            updated_at=_now_iso(),
        )

    def auto_name_session(self, session: Session, first_task: str) -> Session:
        """Name a still-default session after its first task. The id is kept so
        checkpoints and event logs stay attached."""
        if session.name == "default":
            session.name = _auto_name(first_task)
            self.save(session)
        return session

    # ------------------------------------------------------------------
    # Message log and memory blob
    # ------------------------------------------------------------------

    def _load_or_new(self, session_id: str) -> Session:
        session = self.load(session_id)
        if session is None:
            session = Session(session_id=session_id)
        return session

    def append_message(self, session_id: str, record: Dict[str, Any]) -> None:
        """Append one record to the session's message log as a single JSON line."""
        if not os.path.exists(self._path_for(session_id)):
            self.save(Session(session_id=session_id))
        entry = dict(record)
        entry.setdefault("timestamp", _now_iso())
        with open(self._log_path_for(session_id), "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

    def get_messages(self, session_id: str) -> List[Dict[str, Any]]:
        path = self._log_path_for(session_id)
        if not os.path.exists(path):
            return []
        messages = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    messages.append(json.loads(line))
                except json.JSONDecodeError as e:
                    # A crash mid-append leaves at most one torn line
                    logger.warning(f"Skipping unreadable line {lineno} in {path}: {e}")
        return messages

    def save_memory(self, session_id: str, blob: Dict[str, Any]) -> None:
        session = self._load_or_new(session_id)
        session.memory = blob
        self.save(session)

    def load_memory(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self.load(session_id)
        if not session or not session.memory:
            return None
        return session.memory

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def save_checkpoint(self, checkpoint: Dict[str, Any]) -> None:
        path = os.path.join(self.checkpoint_dir, f"{checkpoint['id']}.json")
        _atomic_write_json(path, checkpoint)

    def load_checkpoint(self, checkpoint_id: str) -> Optional[Dict[str, Any]]:
        path = os.path.join(self.checkpoint_dir, f"{checkpoint_id}.json")
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read checkpoint {path}: {e}")
            return None

    def list_checkpoints(self, session_id: str) -> List[Dict[str, Any]]:
        """Checkpoints of one session, oldest first."""
        rows = []
        for fname in os.listdir(self.checkpoint_dir):
            if not fname.endswith(".json"):
                continue
            row = self.load_checkpoint(fname[:-len(".json")])
            if row and row.get("session_id") == session_id:
                rows.append(row)
        rows.sort(key=lambda r: r.get("created_at", ""))
        return rows

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _make_id(self, working_directory: str, name: str) -> str:
        return f"{_dir_hash(working_directory)}_{_slugify(name)}"

    def _path_for(self, session_id: str) -> str:
        return os.path.join(self.base_dir, f"{session_id}.json")

    def _log_path_for(self, session_id: str) -> str:
        return os.path.join(self.base_dir, f"{session_id}.messages.jsonl")

    def _read_file(self, path: str) -> Optional[Session]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return Session(
                session_id=data.get("session_id", ""),
                version=data.get("version", SESSION_VERSION),
                name=data.get("name", "default"),
                working_directory=data.get("working_directory", ""),
                model_id=data.get("model_id", ""),
                created_at=data.get("created_at", ""),
                updated_at=data.get("updated_at", ""),
                memory=data.get("memory", {}),
                auto_approve_commands=data.get("auto_approve_commands", False),
                auto_approve_sensitive_edits=data.get("auto_approve_sensitive_edits", False),
                sensitive_file_patterns=data.get("sensitive_file_patterns"),
                token_usage=data.get("token_usage", {"input_tokens": 0, "output_tokens": 0}),
            )
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read session {path}: {e}")
            return None
