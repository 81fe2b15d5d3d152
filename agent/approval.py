"""
Approval gate for risky actions (terminal commands, sensitive file edits).

A request suspends the calling coroutine on an asyncio.Future until the UI
resolves it or the task's cancel event fires. Each request resolves exactly
once; late and duplicate resolutions are ignored.
"""

import asyncio
import itertools
import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Tuple

import pathspec

logger = logging.getLogger(__name__)


class ApprovalCancelled(Exception):
    """The approval channel was closed by task cancellation."""
    pass


# ============================================================
# Risk classification
# ============================================================

SEVERITY_ORDER = ("critical", "high", "medium", "none")
_SEVERITY_RANK = {s: i for i, s in enumerate(SEVERITY_ORDER)}

_COMMAND_PATTERNS: List[Tuple[str, re.Pattern, str]] = [
    ("critical", re.compile(r"\brm\s+(-[a-zA-Z]*r[a-zA-Z]*f|-[a-zA-Z]*f[a-zA-Z]*r|--recursive\s+--force|--force\s+--recursive)\b"),
     "Recursive force delete"),
    ("critical", re.compile(r"\b(mkfs(\.\w+)?|fdisk|parted)\b"), "Disk formatting or partitioning"),
    ("critical", re.compile(r"\bdd\b.*\bof=/dev/"), "Raw write to a block device"),
    ("critical", re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"), "Fork bomb"),
    ("high", re.compile(r"(^|[;&|]\s*)(sudo|su|doas)\b"), "Privilege escalation"),
    ("high", re.compile(r"\b(curl|wget)\b[^|]*\|\s*(ba|z|da)?sh\b"), "Piping a download into a shell"),
    ("high", re.compile(r"\b(kill\s+-9\s+-1|killall\s+-9|pkill\s+-9)\b"), "Mass process kill"),
    ("high", re.compile(r"\bchmod\s+(-R\s+)?0?777\b"), "World-writable permissions"),
    ("high", re.compile(r"\bchown\s+-R\b"), "Recursive ownership change"),
    ("medium", re.compile(r"\bgit\s+push\b.*(--force\b|-f\b)"), "Force push"),
    ("medium", re.compile(r"\bgit\s+reset\s+--hard\b"), "Hard reset discards local changes"),
    ("medium", re.compile(r"\bgit\s+clean\s+-[a-zA-Z]*f"), "Deletes untracked files"),
    ("medium", re.compile(r"\b(apt(-get)?|yum|dnf)\s+(remove|purge)\b"), "Package removal"),
    ("medium", re.compile(r"\bbrew\s+uninstall\b"), "Package removal"),
    ("medium", re.compile(r"\b(systemctl\s+(stop|disable|mask)|service\s+\S+\s+stop)\b"), "Stops a system service"),
    ("medium", re.compile(r"\b(iptables|ufw|firewall-cmd)\b"), "Firewall change"),
]


def analyze_command(command: str) -> Tuple[str, Optional[str]]:
    """Classify a shell command. Returns (severity, reason) for the most severe
    matching pattern, or ("none", None)."""
    matches = [(sev, reason) for sev, pattern, reason in _COMMAND_PATTERNS if pattern.search(command or "")]
    if not matches:
        return "none", None
    matches.sort(key=lambda m: _SEVERITY_RANK[m[0]])
    return matches[0]


def severity_at_most(severity: str, ceiling: str) -> bool:
    """True when `severity` is no more dangerous than `ceiling`."""
    return _SEVERITY_RANK.get(severity, 0) >= _SEVERITY_RANK.get(ceiling, 0)


def compute_command_decision(command: str, auto_approve: bool, max_severity: str = "medium") -> Dict[str, Any]:
    """Whether a command needs a human. Critical commands always do."""
    severity, reason = analyze_command(command)
    auto_ok = auto_approve and severity != "critical" and severity_at_most(severity, max_severity)
    return {
        "severity": "medium" if severity == "none" else severity,
        "reason": reason,
        "requires_approval": not auto_ok,
    }


_CRITICAL_FILE_RE = re.compile(r"(^|/)(\.env(\..*)?|.*secrets?.*|.*\.(pem|key|pfx|p12)|id_(rsa|ed25519)(\.pub)?)$", re.IGNORECASE)
_HIGH_FILE_RE = re.compile(
    r"(^|/)(package\.json|package-lock\.json|yarn\.lock|pnpm-lock\.yaml|poetry\.lock|tsconfig(\..*)?\.json|"
    r"Dockerfile|docker-compose.*\.ya?ml|\.npmrc|\.yarnrc(\.yml)?)$|(^|/)\.github/workflows/",
)


def classify_file_severity(path: str) -> str:
    normalized = path.replace("\\", "/")
    if _CRITICAL_FILE_RE.search(normalized):
        return "critical"
    if _HIGH_FILE_RE.search(normalized):
        return "high"
    return "medium"


def evaluate_file_sensitivity(path: str, patterns: Dict[str, bool]) -> Dict[str, Any]:
    """Match a workspace-relative path against ordered glob patterns. The last
    matching pattern wins; a False value means edits need approval."""
    normalized = path.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    allowed = True
    matched: Optional[str] = None
    for glob, value in patterns.items():
        spec = pathspec.PathSpec.from_lines("gitwildmatch", [glob])
        if spec.match_file(normalized):
            allowed = bool(value)
            matched = glob
    return {
        "requires_approval": not allowed,
        "severity": classify_file_severity(normalized),
        "pattern": matched,
    }


def compute_file_edit_decision(
    path: str, patterns: Dict[str, bool], auto_approve: bool, max_severity: str = "medium",
) -> Dict[str, Any]:
    """Whether an edit needs a human. Critical files always do, even with
    session auto-approve on."""
    sensitivity = evaluate_file_sensitivity(path, patterns)
    severity = sensitivity["severity"]
    auto_ok = auto_approve and severity != "critical" and severity_at_most(severity, max_severity)
    return dict(sensitivity, requires_approval=sensitivity["requires_approval"] and not auto_ok)


# ============================================================
# Gate
# ============================================================

@dataclass
class ApprovalRequest:
    id: str
    kind: str  # command | file-edit
    payload: Dict[str, Any]
    status: str = "pending"  # pending | approved | denied
    resolved_payload: Optional[Dict[str, Any]] = None


class ApprovalGate:
    """Per-task registry of pending approval requests."""

    def __init__(self):
        self._requests: Dict[str, ApprovalRequest] = {}
        self._futures: Dict[str, asyncio.Future] = {}
        self._counter = itertools.count(1)

    def new_request(self, kind: str, payload: Dict[str, Any]) -> ApprovalRequest:
        request_id = f"appr-{int(time.time() * 1000)}-{next(self._counter)}"
        request = ApprovalRequest(id=request_id, kind=kind, payload=dict(payload, id=request_id))
        self._requests[request_id] = request
        self._futures[request_id] = asyncio.get_event_loop().create_future()
        return request

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        return self._requests.get(request_id)

    @property
    def pending(self) -> List[ApprovalRequest]:
        return [r for r in self._requests.values() if r.status == "pending"]

    async def wait(self, request: ApprovalRequest, cancel_event: Optional[asyncio.Event] = None) -> ApprovalRequest:
        """Suspend until the request is resolved. If the cancel event fires
        first the request is denied and ApprovalCancelled is raised."""
        future = self._futures[request.id]
        if cancel_event is None:
            await asyncio.shield(future)
            return request

        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({future, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_waiter.cancel()
        if not future.done():
            self._finish(request, approved=False)
            raise ApprovalCancelled(f"Approval {request.id} cancelled")
        return request

    def resolve(self, request_id: str, approved: bool, edited_payload: Optional[Dict[str, Any]] = None) -> bool:
        """Resolve a pending request. Returns False (and changes nothing) for
        unknown or already resolved ids."""
        request = self._requests.get(request_id)
        if request is None:
            logger.warning(f"Approval resolution for unknown request {request_id}")
            return False
        if request.status != "pending":
            logger.debug(f"Ignoring duplicate resolution for {request_id}")
            return False
        self._finish(request, approved, edited_payload)
        return True

    def _finish(self, request: ApprovalRequest, approved: bool, edited_payload: Optional[Dict[str, Any]] = None) -> None:
        request.status = "approved" if approved else "denied"
        if approved and edited_payload:
            request.resolved_payload = dict(request.payload, **edited_payload)
        future = self._futures.get(request.id)
        if future is not None and not future.done():
            future.set_result(request.status)
        logger.info(f"Approval {request.id} ({request.kind}) {request.status}")
