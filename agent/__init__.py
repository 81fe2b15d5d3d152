"""
Agent package - the task execution runtime.

This package contains the agent loop and the components it coordinates:
- events: AgentEvent and the outbound event sinks
- control: tool-call parsing, deduplication, completion detection, continuation directives
- approval: command/file-edit risk analysis and the approval gate
- checkpoints: pre-edit snapshots with keep/undo and diff stats
- memory: per-iteration records and the session memory reminder
- compactor: context compaction near the window limit
- conversation: the message history sent to the model
- runner: tool batch execution with result caching
- prompts: system prompt composition
- execution: the AgentLoop state machine
- subagent: read-only child loops for the run_subagent tool
- core: CodingAgent, the session-level facade
"""

# Core classes and data types
from .core import CodingAgent, TaskHandle
from .events import AgentEvent, EventSink, SubagentEventSink
from .execution import AgentLoop, LoopOutcome, StopReason

# Components
from .approval import ApprovalGate, ApprovalRequest, ApprovalCancelled, analyze_command
from .checkpoints import CheckpointStore, Checkpoint, FileSnapshot, CheckpointError
from .compactor import ContextCompactor, CompactionStats
from .control import (
    LoopState,
    NoToolDecision,
    ToolCall,
    ToolCallDeduplicator,
    parse_tool_calls,
    is_completion_signaled,
    check_no_tool_completion,
    build_continuation_message,
)
from .conversation import ConversationHistory, Message
from .memory import SessionMemory, IterationRecord
from .runner import ToolBatchRunner, ToolResultCache, ToolCallResult, SessionContext

__all__ = [
    # Facade
    "CodingAgent",
    "TaskHandle",

    # Events
    "AgentEvent",
    "EventSink",
    "SubagentEventSink",

    # Loop
    "AgentLoop",
    "LoopOutcome",
    "StopReason",

    # Approval
    "ApprovalGate",
    "ApprovalRequest",
    "ApprovalCancelled",
    "analyze_command",

    # Checkpoints
    "CheckpointStore",
    "Checkpoint",
    "FileSnapshot",
    "CheckpointError",

    # Context
    "ContextCompactor",
    "CompactionStats",
    "ConversationHistory",
    "Message",
    "SessionMemory",
    "IterationRecord",

    # Control plane
    "LoopState",
    "NoToolDecision",
    "ToolCall",
    "ToolCallDeduplicator",
    "parse_tool_calls",
    "is_completion_signaled",
    "check_no_tool_completion",
    "build_continuation_message",

    # Tool execution
    "ToolBatchRunner",
    "ToolResultCache",
    "ToolCallResult",
    "SessionContext",
]
