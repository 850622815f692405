"""Core protocols for the session layer.

These types define the contract between:
- The presentation layer (subscribers to ``SessionUpdate``) and sessions
- Sessions and the turn pipeline (stream processor, enforcer, retry)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from agentcore.errors import ErrorCategory

if TYPE_CHECKING:
    from agentcore.session.message import Message

# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------


class UpdateKind(Enum):
    """Types of session updates emitted during execution."""

    PART_CREATED = "part_created"
    PART_UPDATED = "part_updated"
    TOOL_STATE_CHANGED = "tool_state_changed"
    TURN_FINISHED = "turn_finished"
    STATUS_CHANGED = "status_changed"
    RETRY = "retry"
    COMPACTED = "compacted"
    ERROR = "error"


class SessionStatus(Enum):
    IDLE = "idle"
    BUSY = "busy"
    RETRYING = "retrying"


class FinishReason(Enum):
    """Why generation stopped."""

    STOP = "stop"
    TOOL_CALLS = "tool-calls"
    LENGTH = "length"
    CONTENT_FILTER = "content-filter"
    ERROR = "error"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> FinishReason:
        if value is None:
            return cls.UNKNOWN
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class Outcome(Enum):
    """Completion Enforcer decision for a turn."""

    CONTINUE = "continue"
    STOP = "stop"
    COMPACT = "compact"


# -----------------------------------------------------------------------------
# Data Classes
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SessionUpdate:
    """Presentation-agnostic update emitted during session operations."""

    kind: UpdateKind
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class RetryEvent:
    """One recovered failure inside a logical turn."""

    attempt: int
    category: ErrorCategory
    message: str
    delay: float
    action: str  # "backoff", "rotate", "compact", "downgrade"


@dataclass(frozen=True, slots=True)
class Failure:
    """Structured failure surfaced to callers instead of an exception."""

    category: ErrorCategory
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"category": self.category.value, "message": self.message}


@dataclass(slots=True)
class FinalResult:
    """Outcome of ``run_attempt``: a completed message or a structured failure.

    Attributes:
        session_id: Session the turn ran in
        message: Last assistant message produced (may be None on early failure)
        finish: Finish reason of the last model step
        failure: Set when the turn did not complete successfully
        retries: Recovered failures, in order
        steps: Model turns executed for this input
        step_limit_reached: The agent's step cap ended the loop
    """

    session_id: str
    message: Message | None = None
    finish: FinishReason = FinishReason.UNKNOWN
    failure: Failure | None = None
    retries: list[RetryEvent] = field(default_factory=list)
    steps: int = 0
    step_limit_reached: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def text(self) -> str:
        return self.message.text if self.message is not None else ""
