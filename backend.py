"""
Backend abstraction for workspace file, diagnostics and command operations.
The agent core only talks to the workspace through this interface.
"""

import ast
import json
import logging
import os
import signal
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class Diagnostic:
    """A single problem reported for a file."""
    severity: str  # error | warning | info
    line: int
    message: str

    def format(self) -> str:
        return f"Line {self.line}: {self.message}"


class Backend(ABC):
    """Abstract backend for workspace and command operations."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Return the working directory path."""

    @abstractmethod
    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        """List entries in a directory. Returns list of {name, type, ext?, size?}."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read file content as text."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Write content to a file (create dirs as needed)."""

    @abstractmethod
    def read_bytes(self, path: str) -> bytes:
        """Read raw file content."""

    @abstractmethod
    def write_bytes(self, path: str, data: bytes) -> None:
        """Write raw content to a file (create dirs as needed)."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if a file exists."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """Check if a path is a directory."""

    @abstractmethod
    def remove_file(self, path: str) -> None:
        """Delete a file."""

    @abstractmethod
    def stat_mtime(self, path: str) -> Optional[float]:
        """Last modification time in milliseconds, or None if the file is missing."""

    @abstractmethod
    def run_command(self, command: str, cwd: str, timeout: int = 30) -> Tuple[str, str, int]:
        """Run a shell command. Returns (stdout, stderr, returncode)."""

    @abstractmethod
    def search(self, pattern: str, path: str, include: Optional[str] = None) -> str:
        """Search for a regex pattern. Returns matching lines."""

    def get_diagnostics(self, path: str) -> List[Diagnostic]:
        """Current diagnostics for a file. Backends without a checker report none."""
        return []

    def active_file(self) -> Optional[str]:
        """Path of the file the user is focused on, if the host tracks one."""
        return None

    def cancel_running_command(self) -> bool:
        """Kill the currently running command, if any. Returns True if killed."""
        return False

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        if os.path.isabs(path):
            return path
        return os.path.normpath(os.path.join(self.working_directory, path))

    def relative_path(self, path: str) -> str:
        """Workspace-relative form of a path, used as the key for snapshots and caches."""
        full = self.resolve_path(path)
        rel = os.path.relpath(full, self.working_directory)
        return rel.replace(os.sep, "/")


# ============================================================
# Diagnostics
# ============================================================

def _python_diagnostics(content: str) -> List[Diagnostic]:
    try:
        ast.parse(content)
    except SyntaxError as e:
        return [Diagnostic(severity="error", line=e.lineno or 1, message=f"SyntaxError: {e.msg}")]
    return []


def _json_diagnostics(content: str) -> List[Diagnostic]:
    if not content.strip():
        return []
    try:
        json.loads(content)
    except json.JSONDecodeError as e:
        return [Diagnostic(severity="error", line=e.lineno, message=f"Invalid JSON: {e.msg}")]
    return []


_DIAGNOSTIC_CHECKERS = {
    ".py": _python_diagnostics,
    ".pyi": _python_diagnostics,
    ".json": _json_diagnostics,
}


# ============================================================
# Local Backend
# ============================================================

_HAS_RIPGREP: Optional[bool] = None


def _has_ripgrep() -> bool:
    global _HAS_RIPGREP
    if _HAS_RIPGREP is None:
        try:
            subprocess.run(["rg", "--version"], capture_output=True, check=True)
            _HAS_RIPGREP = True
        except (subprocess.CalledProcessError, FileNotFoundError):
            _HAS_RIPGREP = False
    return _HAS_RIPGREP


class LocalBackend(Backend):
    """Backend that operates on the local filesystem."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)
        self._active_process: Optional[subprocess.Popen] = None
        self._active_file: Optional[str] = None

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def _ensure_under_working(self, resolved: str) -> None:
        real = os.path.abspath(resolved)
        wd = os.path.abspath(self._working_directory)
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")

    def _full(self, path: str) -> str:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        return full

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        full = self._full(path) if path else self._working_directory
        entries = []
        for name in sorted(os.listdir(full)):
            child = os.path.join(full, name)
            if os.path.isdir(child):
                entries.append({"name": name, "type": "directory"})
            elif os.path.isfile(child):
                _, ext = os.path.splitext(name)
                entries.append({
                    "name": name, "type": "file",
                    "ext": ext.lstrip("."),
                    "size": os.path.getsize(child),
                })
        return entries

    def read_file(self, path: str) -> str:
        with open(self._full(path), "r", encoding="utf-8", errors="replace", newline="") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> None:
        full = self._full(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8", newline="") as f:
            f.write(content)

    def read_bytes(self, path: str) -> bytes:
        with open(self._full(path), "rb") as f:
            return f.read()

    def write_bytes(self, path: str, data: bytes) -> None:
        full = self._full(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "wb") as f:
            f.write(data)

    def file_exists(self, path: str) -> bool:
        return os.path.exists(self._full(path))

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(self._full(path))

    def remove_file(self, path: str) -> None:
        os.remove(self._full(path))

    def stat_mtime(self, path: str) -> Optional[float]:
        try:
            return os.stat(self._full(path)).st_mtime * 1000.0
        except FileNotFoundError:
            return None

    def get_diagnostics(self, path: str) -> List[Diagnostic]:
        _, ext = os.path.splitext(path)
        checker = _DIAGNOSTIC_CHECKERS.get(ext.lower())
        if not checker or not self.file_exists(path):
            return []
        return checker(self.read_file(path))

    def set_active_file(self, path: Optional[str]) -> None:
        self._active_file = path

    def active_file(self) -> Optional[str]:
        return self._active_file

    def run_command(self, command: str, cwd: str, timeout: int = 30) -> Tuple[str, str, int]:
        full_cwd = self._full(cwd) if cwd not in ("", ".") else self._working_directory
        proc = subprocess.Popen(
            command, shell=True, cwd=full_cwd,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
            preexec_fn=os.setsid,  # create process group for clean kill
        )
        # Track the process so it can be killed on cancel
        self._active_process = proc
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill_process(proc)
            stdout, stderr = proc.communicate(timeout=5)
            return stdout or "", f"Command timed out after {timeout}s\n{stderr or ''}", -1
        finally:
            self._active_process = None
        return stdout or "", stderr or "", proc.returncode

    def cancel_running_command(self) -> bool:
        """Kill the currently running subprocess, if any. Returns True if killed."""
        proc = self._active_process
        if proc and proc.poll() is None:
            self._kill_process(proc)
            return True
        return False

    @staticmethod
    def _kill_process(proc: subprocess.Popen) -> None:
        """Kill a process and its entire process group."""
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
        except (ProcessLookupError, OSError):
            pass
        try:
            proc.kill()
        except (ProcessLookupError, OSError):
            pass

    def search(self, pattern: str, path: str, include: Optional[str] = None) -> str:
        search_path = self._full(path) if path else self._working_directory

        if _has_ripgrep():
            cmd = ["rg", "--line-number", "--no-heading", "--color=never", "-m", "100"]
            if include:
                cmd.extend(["--glob", include])
            cmd.extend(["--", pattern, search_path])
        else:
            cmd = ["grep", "-rnE", "--color=never"]
            if include:
                cmd.extend(["--include", include])
            cmd.extend(["--", pattern, search_path])

        result = subprocess.run(cmd, capture_output=True, text=True, timeout=15,
                                cwd=self._working_directory)
        if not result.stdout:
            return ""
        prefix = self._working_directory + os.sep
        return "\n".join(
            line[len(prefix):] if line.startswith(prefix) else line
            for line in result.stdout.strip().splitlines()
        )
