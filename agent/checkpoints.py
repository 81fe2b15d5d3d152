"""
File checkpoints: pre-edit snapshots grouped per task execution, with
per-file and bulk keep/undo and diff stats against the current disk state.
"""

import asyncio
import base64
import itertools
import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List, Optional

from backend import Backend
from sessions import SessionStore, _now_iso
from tools.file_ops import diff_line_counts

logger = logging.getLogger(__name__)


class CheckpointError(Exception):
    """Unknown checkpoint or path."""
    pass


@dataclass
class FileSnapshot:
    checkpoint_id: str
    relative_path: str
    original_content: Optional[str]  # None: the file did not exist before the edit
    action: str  # created | modified
    status: str = "pending"  # pending | kept | undone
    # Base64 of the raw bytes when they are not valid UTF-8
    original_b64: Optional[str] = None

    def original_bytes(self) -> bytes:
        if self.original_b64 is not None:
            return base64.b64decode(self.original_b64)
        return (self.original_content or "").encode("utf-8")


@dataclass
class Checkpoint:
    id: str
    session_id: str
    created_at: str = ""
    snapshots: Dict[str, FileSnapshot] = field(default_factory=dict)
    total_added: Optional[int] = None
    total_removed: Optional[int] = None

    @property
    def status(self) -> str:
        statuses = {s.status for s in self.snapshots.values()}
        if not statuses:
            return "pending"
        if len(statuses) == 1:
            return statuses.pop()
        return "partial"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "created_at": self.created_at,
            "status": self.status,
            "total_added": self.total_added,
            "total_removed": self.total_removed,
            "snapshots": {p: asdict(s) for p, s in self.snapshots.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            id=data["id"],
            session_id=data.get("session_id", ""),
            created_at=data.get("created_at", ""),
            snapshots={p: FileSnapshot(**s) for p, s in (data.get("snapshots") or {}).items()},
            total_added=data.get("total_added"),
            total_removed=data.get("total_removed"),
        )


class CheckpointStore:
    """Owns the checkpoints of one session. Every mutation is written through
    to the SessionStore so keep/undo work after a restart."""

    _counter = itertools.count(1)

    def __init__(self, backend: Backend, store: Optional[SessionStore] = None, session_id: str = ""):
        self.backend = backend
        self.store = store
        self.session_id = session_id
        self.active_id: Optional[str] = None
        self._checkpoints: Dict[str, Checkpoint] = {}
        self._path_locks: Dict[str, asyncio.Lock] = {}
        # (checkpoint_id, path) -> (mtime, added, removed)
        self._diff_cache: Dict[tuple, tuple] = {}

    # ------------------------------------------------------------------
    # Lookup and persistence
    # ------------------------------------------------------------------

    def create_checkpoint(self) -> Checkpoint:
        checkpoint = Checkpoint(
            id=f"cp-{int(time.time())}-{next(self._counter)}",
            session_id=self.session_id,
            created_at=_now_iso(),
        )
        self._checkpoints[checkpoint.id] = checkpoint
        self.active_id = checkpoint.id
        self._persist(checkpoint)
        logger.info(f"Checkpoint {checkpoint.id} opened for session {self.session_id}")
        return checkpoint

    def get(self, checkpoint_id: Optional[str] = None) -> Checkpoint:
        cid = checkpoint_id or self.active_id
        if not cid:
            raise CheckpointError("No active checkpoint")
        checkpoint = self._checkpoints.get(cid)
        if checkpoint is None and self.store is not None:
            row = self.store.load_checkpoint(cid)
            if row:
                checkpoint = Checkpoint.from_dict(row)
                self._checkpoints[cid] = checkpoint
        if checkpoint is None:
            raise CheckpointError(f"Unknown checkpoint: {cid}")
        return checkpoint

    def _snapshot(self, checkpoint: Checkpoint, path: str) -> FileSnapshot:
        rel = self.backend.relative_path(path)
        snapshot = checkpoint.snapshots.get(rel)
        if snapshot is None:
            raise CheckpointError(f"No snapshot for {rel} in checkpoint {checkpoint.id}")
        return snapshot

    def _persist(self, checkpoint: Checkpoint) -> None:
        if self.store is None:
            return
        try:
            self.store.save_checkpoint(checkpoint.to_dict())
        except OSError as e:
            logger.warning(f"Failed to persist checkpoint {checkpoint.id}: {e}")

    def lock_for(self, path: str) -> asyncio.Lock:
        """Per-path lock serializing snapshot-then-write within a batch."""
        rel = self.backend.relative_path(path)
        lock = self._path_locks.get(rel)
        if lock is None:
            lock = self._path_locks[rel] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot_before_edit(self, path: str, checkpoint_id: Optional[str] = None) -> Optional[FileSnapshot]:
        """Record the pre-edit content of `path` the first time it is touched
        in a checkpoint. Returns the new snapshot, or None if one existed."""
        checkpoint = self.get(checkpoint_id)
        rel = self.backend.relative_path(path)
        if rel in checkpoint.snapshots:
            return None

        if self.backend.file_exists(rel):
            raw = self.backend.read_bytes(rel)
            try:
                snapshot = FileSnapshot(checkpoint.id, rel, raw.decode("utf-8"), "modified")
            except UnicodeDecodeError:
                snapshot = FileSnapshot(
                    checkpoint.id, rel, raw.decode("utf-8", errors="replace"), "modified",
                    original_b64=base64.b64encode(raw).decode("ascii"),
                )
        else:
            snapshot = FileSnapshot(checkpoint.id, rel, None, "created")
        checkpoint.snapshots[rel] = snapshot
        self._persist(checkpoint)
        logger.debug(f"Snapshot {rel} ({snapshot.action}) in {checkpoint.id}")
        return snapshot

    # ------------------------------------------------------------------
    # Keep / undo
    # ------------------------------------------------------------------

    def keep(self, path: str, checkpoint_id: Optional[str] = None) -> bool:
        checkpoint = self.get(checkpoint_id)
        snapshot = self._snapshot(checkpoint, path)
        if snapshot.status != "pending":
            return False
        snapshot.status = "kept"
        self._persist(checkpoint)
        return True

    def _revert(self, snapshot: FileSnapshot) -> None:
        if snapshot.action == "created":
            if self.backend.file_exists(snapshot.relative_path):
                self.backend.remove_file(snapshot.relative_path)
        else:
            self.backend.write_bytes(snapshot.relative_path, snapshot.original_bytes())

    def undo(self, path: str, checkpoint_id: Optional[str] = None) -> bool:
        """Revert one file: delete it if the checkpoint created it, otherwise
        restore its original content. Already undone files are left alone."""
        checkpoint = self.get(checkpoint_id)
        snapshot = self._snapshot(checkpoint, path)
        if snapshot.status == "undone":
            return False
        self._revert(snapshot)
        snapshot.status = "undone"
        self._persist(checkpoint)
        logger.info(f"Reverted {snapshot.relative_path} ({snapshot.action})")
        return True

    def keep_all(self, checkpoint_id: Optional[str] = None) -> Dict[str, Any]:
        checkpoint = self.get(checkpoint_id)
        for snapshot in checkpoint.snapshots.values():
            if snapshot.status == "pending":
                snapshot.status = "kept"
        self._persist(checkpoint)
        return {"success": True, "status": checkpoint.status}

    def undo_all(self, checkpoint_id: Optional[str] = None) -> Dict[str, Any]:
        """Revert every pending file. Failures are collected per file and the
        rest of the checkpoint is still reverted."""
        checkpoint = self.get(checkpoint_id)
        errors: List[str] = []
        for snapshot in checkpoint.snapshots.values():
            if snapshot.status != "pending":
                continue
            try:
                self._revert(snapshot)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to revert {snapshot.relative_path}: {e}")
                errors.append(f"{snapshot.relative_path}: {e}")
                continue
            snapshot.status = "undone"
        self._persist(checkpoint)
        return {"success": not errors, "errors": errors, "status": checkpoint.status}

    # ------------------------------------------------------------------
    # Diff stats
    # ------------------------------------------------------------------

    def diff_stats(self, checkpoint_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Added/removed line counts per file, original vs current disk."""
        checkpoint = self.get(checkpoint_id)
        results = []
        for rel, snapshot in checkpoint.snapshots.items():
            mtime = self.backend.stat_mtime(rel)
            cached = self._diff_cache.get((checkpoint.id, rel))
            if cached and cached[0] == mtime:
                added, removed = cached[1], cached[2]
            else:
                current = self.backend.read_file(rel) if mtime is not None else ""
                added, removed = diff_line_counts(snapshot.original_content or "", current)
                self._diff_cache[(checkpoint.id, rel)] = (mtime, added, removed)
            results.append({
                "path": rel,
                "additions": added,
                "deletions": removed,
                "action": snapshot.action,
                "status": snapshot.status,
            })
        checkpoint.total_added = sum(r["additions"] for r in results)
        checkpoint.total_removed = sum(r["deletions"] for r in results)
        return results
