"""
Configuration module for the agent runtime.
Handles environment variables, model capability specifications, and loop settings.
"""

import os
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None
    enable_thinking: bool = _env_bool("ENABLE_THINKING", "true")
    thinking_budget: int = int(os.getenv("THINKING_BUDGET", "8000"))


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Agent Runtime"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "agent_runtime.log")
    debug_mode: bool = _env_bool("DEBUG_MODE")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    sessions_dir: str = os.getenv(
        "SESSIONS_DIR", os.path.join(os.path.expanduser("~"), ".agent-runtime", "sessions")
    )


@dataclass
class AgentConfig:
    """Agent loop settings. One instance is shared read-only by every session."""
    max_iterations: int = int(os.getenv("MAX_ITERATIONS", "25"))
    # Tool batching and repetition detection
    max_tools_per_batch: int = int(os.getenv("MAX_TOOLS_PER_BATCH", "10"))
    hard_tool_batch_limit: int = int(os.getenv("HARD_TOOL_BATCH_LIMIT", "15"))
    soft_tool_batch_warning: int = int(os.getenv("SOFT_TOOL_BATCH_WARNING", "8"))
    dedup_window: int = int(os.getenv("DEDUP_WINDOW", "2"))
    dedup_expiry: int = int(os.getenv("DEDUP_EXPIRY", "3"))
    consecutive_no_tool_limit: int = int(os.getenv("CONSECUTIVE_NO_TOOL_LIMIT", "2"))
    # Context compaction
    compaction_threshold: float = float(os.getenv("COMPACTION_THRESHOLD", "0.70"))
    compaction_preserve_recent: int = int(os.getenv("COMPACTION_PRESERVE_RECENT", "6"))
    compaction_min_messages: int = int(os.getenv("COMPACTION_MIN_MESSAGES", "4"))
    summary_message_char_cap: int = int(os.getenv("SUMMARY_MESSAGE_CHAR_CAP", "1500"))
    default_context_window: int = int(os.getenv("DEFAULT_CONTEXT_WINDOW", "16000"))
    min_context_window: int = int(os.getenv("MIN_CONTEXT_WINDOW", "8192"))
    token_warning_thresholds: Tuple[float, ...] = (0.70, 0.85)
    # Diagnostics and external change detection
    diagnostics_timeout_ms: int = int(os.getenv("DIAGNOSTICS_TIMEOUT_MS", "3000"))
    external_change_tolerance_ms: int = int(os.getenv("EXTERNAL_CHANGE_TOLERANCE_MS", "100"))
    # Continuation directive verbosity: full | standard | minimal
    continuation_strategy: str = os.getenv("CONTINUATION_STRATEGY", "full")
    # Approval policy
    auto_approve_commands: bool = _env_bool("AUTO_APPROVE_COMMANDS")
    auto_approve_max_severity: str = os.getenv("AUTO_APPROVE_MAX_SEVERITY", "medium")
    auto_approve_sensitive_edits: bool = _env_bool("AUTO_APPROVE_SENSITIVE_EDITS")
    sensitive_file_patterns: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_SENSITIVE_FILE_PATTERNS))
    # Sub-agent settings
    subagent_max_iterations: int = int(os.getenv("SUBAGENT_MAX_ITERATIONS", "8"))


# Last matching pattern wins. False means "edits to this path need approval".
DEFAULT_SENSITIVE_FILE_PATTERNS: Dict[str, bool] = {
    "**/*": True,
    "**/.env*": False,
    "**/package.json": False,
    "**/package-lock.json": False,
    "**/yarn.lock": False,
    "**/pnpm-lock.yaml": False,
    "**/poetry.lock": False,
    "**/*.pem": False,
    "**/*.key": False,
    "**/*.pfx": False,
    "**/*.p12": False,
    "**/Dockerfile": False,
    "**/docker-compose*.yml": False,
    "**/docker-compose*.yaml": False,
    "**/.github/workflows/*": False,
    "**/.npmrc": False,
    "**/*.secrets.*": False,
}


# ============================================================
# Model Specifications
# Only the capabilities the agent loop branches on are listed.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-1-20250805-v1:0",
        "name": "Claude Opus 4.1",
        "context_window": 200000,
        "max_output_tokens": 32000,
        "supports_thinking": True,
        "supports_native_tools": True,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "supports_thinking": True,
        "supports_native_tools": True,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "supports_thinking": True,
        "supports_native_tools": True,
    },
    {
        "id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "name": "Claude 3.5 Haiku",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "supports_thinking": False,
        "supports_native_tools": True,
    },
]


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()
agent_config = AgentConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id:
            return model
    return None


def get_model_name(model_id: str) -> str:
    model = get_model_by_id(model_id)
    return model["name"] if model else model_id


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the full configuration for a model. Unknown IDs get a conservative
    fallback: no context window (so the loop default applies), no thinking,
    text-embedded tool calls."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "name": model_id,
        "context_window": 0,
        "max_output_tokens": 4096,
        "supports_thinking": False,
        "supports_native_tools": False,
    }


def get_context_window(model_id: str) -> int:
    return get_model_config(model_id).get("context_window", 0)


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def supports_thinking(model_id: str) -> bool:
    """Check if model supports extended thinking"""
    return get_model_config(model_id).get("supports_thinking", False)


def supports_native_tools(model_id: str) -> bool:
    """Check if model returns structured tool_use blocks"""
    return get_model_config(model_id).get("supports_native_tools", False)


def compute_effective_context_window(model_window: Optional[int], config: Optional[AgentConfig] = None) -> int:
    """Context budget used by the loop: default when unknown, never below the floor,
    never above what the model reports."""
    cfg = config or agent_config
    if not model_window or model_window <= 0:
        return cfg.default_context_window
    return min(max(cfg.default_context_window, cfg.min_context_window), model_window)


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
