"""agentcore: task-execution core for coding agents.

Streams model responses, runs tool calls under a layered permission policy,
tracks the session task list, and recovers from provider failures.
"""

__version__ = "0.1.0"

# Public API
from agentcore.config import Config, get_config, load_config
from agentcore.core import LiteLLMProvider, LLMProvider, ModelRequest, ReasoningEffort
from agentcore.errors import (
    AgentCoreError,
    ErrorCategory,
    InvalidArguments,
    PermissionDenied,
    ProviderError,
    TerminalFailure,
)
from agentcore.logging import get_logger, setup_logging
from agentcore.session import (
    Action,
    FinalResult,
    Message,
    Role,
    SessionUpdate,
    TaskItem,
    ToolCall,
    UpdateKind,
)
from agentcore.session.approval import ApprovalChannel, ApprovalDecision, ApprovalRequest
from agentcore.session.session_manager import Session, SessionManager, SubsessionHandle
from agentcore.tools import ToolContext, ToolContract, ToolRegistry, ToolResult

__all__ = [
    # Session
    "Session",
    "SessionManager",
    "SessionUpdate",
    "SubsessionHandle",
    "UpdateKind",
    "FinalResult",
    "Message",
    "Role",
    "ToolCall",
    "TaskItem",
    # Permissions
    "Action",
    "ApprovalChannel",
    "ApprovalDecision",
    "ApprovalRequest",
    # Tools
    "ToolContext",
    "ToolContract",
    "ToolRegistry",
    "ToolResult",
    # Config
    "Config",
    "load_config",
    "get_config",
    # LLM
    "LLMProvider",
    "LiteLLMProvider",
    "ModelRequest",
    "ReasoningEffort",
    # Errors
    "AgentCoreError",
    "ErrorCategory",
    "InvalidArguments",
    "PermissionDenied",
    "ProviderError",
    "TerminalFailure",
    # Logging
    "get_logger",
    "setup_logging",
]
