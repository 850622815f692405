"""Session layer: data model, permission policy, task list, update protocols.

The turn machinery (``StreamProcessor``, ``RetryController``,
``SessionManager``) lives in its own modules and is imported from there.
"""

from agentcore.session.message import Message, PartFrozen, ReasoningPart, Role, TextPart
from agentcore.session.permissions import (
    Action,
    LayerScope,
    MergedRuleset,
    PermissionContext,
    PermissionResolver,
    PermissionRule,
    Resolution,
    Ruleset,
    resolve,
)
from agentcore.session.protocols import (
    Failure,
    FinalResult,
    FinishReason,
    Outcome,
    RetryEvent,
    SessionStatus,
    SessionUpdate,
    UpdateKind,
)
from agentcore.session.todo import TaskItem, TaskListStore, TaskPriority, TaskStatus
from agentcore.session.tool_call import ToolCall, ToolCallStatus

__all__ = [
    "Action",
    "Failure",
    "FinalResult",
    "FinishReason",
    "LayerScope",
    "MergedRuleset",
    "Message",
    "Outcome",
    "PartFrozen",
    "PermissionContext",
    "PermissionResolver",
    "PermissionRule",
    "ReasoningPart",
    "Resolution",
    "RetryEvent",
    "Role",
    "Ruleset",
    "SessionStatus",
    "SessionUpdate",
    "TaskItem",
    "TaskListStore",
    "TaskPriority",
    "TaskStatus",
    "TextPart",
    "ToolCall",
    "ToolCallStatus",
    "UpdateKind",
    "resolve",
]
