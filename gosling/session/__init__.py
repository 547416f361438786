"""Session data model — the persisted conversation state.

Public API: all schema types from schemas.py.
"""

from gosling.session.schemas import (
    SESSION_SCHEMA_VERSION,
    CompactionEvent,
    ExecutionMode,
    Message,
    ModelRole,
    ModelRoleBinding,
    PermissionDecision,
    PermissionVerdict,
    Role,
    Session,
    ToolCall,
    ToolErrorKind,
    ToolOutcome,
    ToolResult,
    Turn,
    Usage,
    UserDecision,
)

__all__ = [
    "SESSION_SCHEMA_VERSION",
    # Type aliases
    "ExecutionMode",
    "ModelRole",
    "Role",
    # Tool traffic
    "ToolCall",
    "ToolErrorKind",
    "ToolOutcome",
    "ToolResult",
    # Conversation
    "Message",
    "Turn",
    "Usage",
    # Policy
    "ModelRoleBinding",
    "PermissionDecision",
    "PermissionVerdict",
    "UserDecision",
    # Session
    "CompactionEvent",
    "Session",
]
