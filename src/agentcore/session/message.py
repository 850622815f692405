"""Conversation data model: messages and their parts.

Parts are appended in arrival order. A text part accepts deltas until it is
frozen; a message accepts changes until its ``completed_at`` is set.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentcore.core.llm.provider import Usage
from agentcore.errors import AgentCoreError
from agentcore.session.tool_call import ToolCall


class Role(Enum):
    """Message role in a conversation."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class PartFrozen(AgentCoreError):
    """A frozen part or closed message was modified."""


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class TextPart:
    """Accumulated assistant (or user) text."""

    text: str = ""
    part_id: str = field(default_factory=lambda: _new_id("part"))
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    synthetic: bool = False  # produced by the runtime, not the model

    type = "text"

    @property
    def frozen(self) -> bool:
        return self.end_time is not None

    def append(self, delta: str) -> None:
        if self.frozen:
            raise PartFrozen(f"text part {self.part_id} is frozen")
        self.text += delta

    def freeze(self, now: float | None = None) -> None:
        if self.frozen:
            return
        self.text = self.text.rstrip()
        self.end_time = now if now is not None else time.time()

    def append_reminder(self, reminder: str) -> None:
        """Attach an enforcement block to a finalized part.

        Allowed only through the completion hook while the owning message is
        still open; the message enforces that.
        """
        self.text = f"{self.text}\n\n{reminder}" if self.text else reminder

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "part_id": self.part_id,
            "text": self.text,
            "synthetic": self.synthetic,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


@dataclass(slots=True)
class ReasoningPart:
    """Provider "thinking" content."""

    text: str = ""
    part_id: str = field(default_factory=lambda: _new_id("part"))
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    hidden: bool = False

    type = "reasoning"

    @property
    def frozen(self) -> bool:
        return self.end_time is not None

    def append(self, delta: str) -> None:
        if self.frozen:
            raise PartFrozen(f"reasoning part {self.part_id} is frozen")
        self.text += delta

    def freeze(self, now: float | None = None) -> None:
        if self.end_time is None:
            self.end_time = now if now is not None else time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "part_id": self.part_id,
            "text": "" if self.hidden else self.text,
            "hidden": self.hidden,
        }


Part = TextPart | ReasoningPart | ToolCall


@dataclass
class Message:
    """One message in a session's history.

    Attributes:
        role: user, assistant or tool
        parts: Ordered parts
        usage: Token accounting for assistant messages
        finish: Finish reason once an assistant message is closed
        summary: True for a compaction summary standing in for older history
        images: Image attachments (data URLs) carried by a user message
    """

    role: Role
    parts: list[Part] = field(default_factory=list)
    message_id: str = field(default_factory=lambda: _new_id("msg"))
    usage: Usage = field(default_factory=Usage)
    finish: str | None = None
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    summary: bool = False
    agent: str | None = None
    images: list[str] = field(default_factory=list)

    @classmethod
    def user(cls, text: str, *, images: list[str] | None = None, synthetic: bool = False) -> Message:
        now = time.time()
        part = TextPart(text=text, start_time=now, end_time=now, synthetic=synthetic)
        return cls(role=Role.USER, parts=[part], completed_at=now, images=list(images or []))

    @property
    def closed(self) -> bool:
        return self.completed_at is not None

    def _ensure_open(self) -> None:
        if self.closed:
            raise PartFrozen(f"message {self.message_id} is completed")

    def add_part(self, part: Part) -> Part:
        self._ensure_open()
        if isinstance(part, ToolCall) and self.get_tool_call(part.call_id) is not None:
            raise AgentCoreError(f"duplicate tool call id {part.call_id} in {self.message_id}")
        self.parts.append(part)
        return part

    def tool_calls(self) -> list[ToolCall]:
        return [p for p in self.parts if isinstance(p, ToolCall)]

    def get_tool_call(self, call_id: str) -> ToolCall | None:
        for part in self.parts:
            if isinstance(part, ToolCall) and part.call_id == call_id:
                return part
        return None

    def text_parts(self) -> list[TextPart]:
        return [p for p in self.parts if isinstance(p, TextPart)]

    def last_text_part(self) -> TextPart | None:
        texts = self.text_parts()
        return texts[-1] if texts else None

    def append_reminder(self, reminder: str) -> TextPart:
        """Append enforcement text to the last finalized text part.

        A synthetic part is created when the model produced no text.
        """
        self._ensure_open()
        part = self.last_text_part()
        if part is None:
            now = time.time()
            part = TextPart(start_time=now, end_time=now, synthetic=True)
            self.parts.append(part)
        part.append_reminder(reminder)
        return part

    @property
    def text(self) -> str:
        return "\n\n".join(p.text for p in self.text_parts() if p.text)

    def complete(self, finish: str | None = None, now: float | None = None) -> None:
        """Close the message; it is immutable afterwards."""
        self._ensure_open()
        if finish is not None:
            self.finish = finish
        for part in self.parts:
            if isinstance(part, (TextPart, ReasoningPart)):
                part.freeze(now)
        self.completed_at = now if now is not None else time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "role": self.role.value,
            "parts": [p.to_dict() for p in self.parts],
            "finish": self.finish,
            "summary": self.summary,
            "usage": {
                "input_tokens": self.usage.input_tokens,
                "output_tokens": self.usage.output_tokens,
                "cost": self.usage.cost,
            },
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }
