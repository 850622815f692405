"""Tool call state machine.

A tool call moves strictly pending -> running -> (completed | error), each
transition exactly once. Cancellation is recorded as an error state with
``cancelled=True`` so nothing is ever silently dropped.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentcore.errors import InvalidTransition


class ToolCallStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class PendingState:
    partial_input: str = ""

    @property
    def status(self) -> ToolCallStatus:
        return ToolCallStatus.PENDING


@dataclass(slots=True)
class RunningState:
    input: dict[str, Any]
    start_time: float

    @property
    def status(self) -> ToolCallStatus:
        return ToolCallStatus.RUNNING


@dataclass(slots=True)
class CompletedState:
    input: dict[str, Any]
    title: str
    output: str
    truncated: bool
    metadata: dict[str, Any]
    start_time: float
    end_time: float
    attachments: list[dict[str, Any]] = field(default_factory=list)

    @property
    def status(self) -> ToolCallStatus:
        return ToolCallStatus.COMPLETED


@dataclass(slots=True)
class ErrorState:
    input: dict[str, Any]
    error: str
    start_time: float
    end_time: float
    cancelled: bool = False
    rejected: bool = False  # a human (or approval timeout) refused the call

    @property
    def status(self) -> ToolCallStatus:
        return ToolCallStatus.ERROR


ToolState = PendingState | RunningState | CompletedState | ErrorState


class ToolCall:
    """A single tool invocation inside an assistant message.

    ``call_id`` is stable across all states. Every transition is recorded in
    ``history`` and reported to the optional ``on_change`` listener.
    """

    type = "tool"

    def __init__(
        self,
        call_id: str,
        tool_name: str,
        *,
        on_change: Callable[[ToolCall], None] | None = None,
    ) -> None:
        self.call_id = call_id
        self.tool_name = tool_name
        self.state: ToolState = PendingState()
        self.history: list[ToolCallStatus] = [ToolCallStatus.PENDING]
        self._on_change = on_change

    def __repr__(self) -> str:
        return f"<ToolCall {self.call_id} {self.tool_name} {self.status.value}>"

    @property
    def status(self) -> ToolCallStatus:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return self.status in (ToolCallStatus.COMPLETED, ToolCallStatus.ERROR)

    @property
    def input(self) -> dict[str, Any]:
        if isinstance(self.state, PendingState):
            return {}
        return self.state.input

    def _transition(self, new_state: ToolState, expected: ToolCallStatus) -> None:
        if self.status is not expected:
            raise InvalidTransition(self.call_id, self.status.value, new_state.status.value)
        self.state = new_state
        self.history.append(new_state.status)
        if self._on_change is not None:
            self._on_change(self)

    def append_input(self, delta: str) -> None:
        """Accumulate streamed argument text while pending."""
        if not isinstance(self.state, PendingState):
            raise InvalidTransition(self.call_id, self.status.value, "pending")
        self.state.partial_input += delta
        if self._on_change is not None:
            self._on_change(self)

    def start(self, input: dict[str, Any], *, now: float | None = None) -> None:
        """pending -> running."""
        self._transition(
            RunningState(input=input, start_time=now if now is not None else time.time()),
            ToolCallStatus.PENDING,
        )

    def complete(
        self,
        output: str,
        *,
        title: str = "",
        truncated: bool = False,
        metadata: dict[str, Any] | None = None,
        attachments: list[dict[str, Any]] | None = None,
        now: float | None = None,
    ) -> None:
        """running -> completed."""
        running = self._running_state("completed")
        self._transition(
            CompletedState(
                input=running.input,
                title=title,
                output=output,
                truncated=truncated,
                metadata=metadata or {},
                start_time=running.start_time,
                end_time=now if now is not None else time.time(),
                attachments=attachments or [],
            ),
            ToolCallStatus.RUNNING,
        )

    def fail(
        self,
        error: str,
        *,
        cancelled: bool = False,
        rejected: bool = False,
        now: float | None = None,
    ) -> None:
        """running -> error."""
        running = self._running_state("error")
        self._transition(
            ErrorState(
                input=running.input,
                error=error,
                start_time=running.start_time,
                end_time=now if now is not None else time.time(),
                cancelled=cancelled,
                rejected=rejected,
            ),
            ToolCallStatus.RUNNING,
        )

    def _running_state(self, target: str) -> RunningState:
        if not isinstance(self.state, RunningState):
            raise InvalidTransition(self.call_id, self.status.value, target)
        return self.state

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "call_id": self.call_id,
            "tool": self.tool_name,
            "status": self.status.value,
        }
        state = self.state
        if isinstance(state, PendingState):
            data["partial_input"] = state.partial_input
            return data
        data["input"] = state.input
        data["start_time"] = state.start_time
        if isinstance(state, CompletedState):
            data.update(
                title=state.title,
                output=state.output,
                truncated=state.truncated,
                metadata=state.metadata,
                end_time=state.end_time,
            )
        elif isinstance(state, ErrorState):
            data.update(
                error=state.error,
                cancelled=state.cancelled,
                rejected=state.rejected,
                end_time=state.end_time,
            )
        return data
