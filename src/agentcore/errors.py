"""Exception hierarchy for the task-execution core.

Tool-level failures (validation, permission, missing tool) are captured into
the tool call's error state and shown to the model. Provider and turn-level
failures are raised to the retry controller, which alone decides whether to
try again.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(Enum):
    """Classification of a failure, used to pick a recovery strategy."""

    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    AUTH = "auth"
    CONTEXT_OVERFLOW = "context_overflow"
    CAPABILITY = "capability"
    INVALID_REQUEST = "invalid_request"
    CONTENT_FILTER = "content_filter"
    FATAL = "fatal"
    ABORTED = "aborted"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = frozenset(
    {
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.TRANSIENT,
        ErrorCategory.AUTH,
        ErrorCategory.CONTEXT_OVERFLOW,
        ErrorCategory.CAPABILITY,
    }
)


class AgentCoreError(Exception):
    """Base exception for all agentcore errors."""


# -----------------------------------------------------------------------------
# Tool-level errors
# -----------------------------------------------------------------------------


class InvalidArguments(AgentCoreError):
    """Tool arguments failed validation against the parameter schema."""

    def __init__(self, tool: str, details: str):
        self.tool = tool
        self.details = details
        super().__init__(f"Invalid arguments for tool '{tool}': {details}")


class ToolNotFound(AgentCoreError):
    """The model called a tool that is not registered for this agent."""

    def __init__(self, tool: str, available: list[str] | None = None):
        self.tool = tool
        self.available = available or []
        avail = ", ".join(self.available) if self.available else "none"
        super().__init__(f"Unknown tool '{tool}'. Available tools: {avail}")


class PermissionDenied(AgentCoreError):
    """A tool call (or a resource it touches) was refused."""

    def __init__(
        self,
        tool: str,
        pattern: str,
        reason: str = "denied by ruleset",
        *,
        user_rejected: bool = False,
    ):
        self.tool = tool
        self.pattern = pattern
        self.reason = reason
        # Set when a human (or the approval timeout fallback) refused the request
        self.user_rejected = user_rejected
        super().__init__(f"Permission denied for {tool} on '{pattern}': {reason}")


class QuestionRejected(AgentCoreError):
    """The user dismissed a blocking question raised by a tool."""

    def __init__(self, question: str):
        self.question = question
        super().__init__(f"User rejected question: {question}")


class InvalidTransition(AgentCoreError):
    """A tool call was asked to move to a state it cannot reach."""

    def __init__(self, call_id: str, from_state: str, to_state: str):
        self.call_id = call_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Tool call {call_id} cannot transition from {from_state} to {to_state}"
        )


class InvalidTaskList(AgentCoreError):
    """A task list write violated the list invariants."""


# -----------------------------------------------------------------------------
# Attempt-level errors
# -----------------------------------------------------------------------------


class ProviderError(AgentCoreError):
    """A classified failure from the model provider."""

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        *,
        cause: BaseException | None = None,
        retry_after: float | None = None,
    ):
        self.category = category
        self.message = message
        self.cause = cause
        self.retry_after = retry_after
        super().__init__(f"[{category.value}] {message}")


class TurnAborted(AgentCoreError):
    """The turn was cancelled by an external abort signal."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Turn aborted for session {session_id}")


class CompactionError(AgentCoreError):
    """History summarisation failed."""


class TerminalFailure(AgentCoreError):
    """The retry controller gave up on a turn."""

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        *,
        cause: BaseException | None = None,
        retries: int = 0,
    ):
        self.category = category
        self.message = message
        self.cause = cause
        self.retries = retries
        super().__init__(f"{category.value}: {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "retries": self.retries,
        }
