"""LLM provider protocol and typed stream events.

A provider turns a ModelRequest into an async stream of the events below.
The stream processor is the only consumer; it never sees provider wire data.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class ReasoningEffort(Enum):
    """Requested reasoning ("thinking") effort, ordered low to high."""

    OFF = "off"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def downgrade(self) -> ReasoningEffort | None:
        """One step down the ladder, or None when already off."""
        order = list(ReasoningEffort)
        index = order.index(self)
        if index == 0:
            return None
        return order[index - 1]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Tool contract as presented to the model."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON schema


@dataclass(frozen=True, slots=True)
class Credential:
    """A resolved API credential."""

    name: str
    api_key: str | None = None
    api_base: str | None = None


@dataclass(slots=True)
class SamplingConfig:
    """Per-request sampling parameters."""

    max_tokens: int = 4096
    temperature: float | None = None
    reasoning_effort: ReasoningEffort = ReasoningEffort.OFF


@dataclass(slots=True)
class ModelRequest:
    """Everything a provider needs for one model step.

    Attributes:
        system_prompt: System instructions
        messages: Provider-neutral chat messages (OpenAI-style dicts)
        tools: Tool contracts available for this step
        sampling: Sampling configuration
        credential: Credential to authenticate with (None = provider default)
    """

    system_prompt: str
    messages: list[dict[str, Any]]
    tools: list[ToolSpec] = field(default_factory=list)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    credential: Credential | None = None


@dataclass(slots=True)
class Usage:
    """Token accounting reported by the provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# -----------------------------------------------------------------------------
# Stream events
# -----------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class TextEnd:
    pass


@dataclass(frozen=True, slots=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ReasoningEnd:
    pass


@dataclass(frozen=True, slots=True)
class ToolCallStart:
    """The model began emitting a tool call."""

    call_id: str
    tool_name: str


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    """A fragment of a tool call's serialized arguments."""

    call_id: str
    delta: str


@dataclass(frozen=True, slots=True)
class ToolCallReady:
    """Arguments are fully resolved; the call may be executed."""

    call_id: str
    tool_name: str
    input: dict[str, Any]
    parse_error: str | None = None  # arguments were not valid JSON


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    """A tool finished successfully."""

    call_id: str
    title: str
    output: str
    metadata: dict[str, Any] = field(default_factory=dict)
    attachments: tuple[dict[str, Any], ...] = ()
    truncated: bool = False


@dataclass(frozen=True, slots=True)
class ToolErrorEvent:
    """A tool failed (validation, permission, execution or cancellation)."""

    call_id: str
    error: str
    cancelled: bool = False
    rejected: bool = False  # a human refused the call


@dataclass(frozen=True, slots=True)
class StepFinish:
    """The model finished one step (one request/response cycle)."""

    reason: str
    usage: Usage = field(default_factory=Usage)


@dataclass(frozen=True, slots=True)
class Finish:
    """The stream is complete."""

    reason: str
    usage: Usage = field(default_factory=Usage)


@dataclass(frozen=True, slots=True)
class StreamError:
    """The stream failed; ``error`` is usually a ProviderError."""

    error: BaseException


StreamEvent = (
    TextDelta
    | TextEnd
    | ReasoningDelta
    | ReasoningEnd
    | ToolCallStart
    | ToolCallDelta
    | ToolCallReady
    | ToolResultEvent
    | ToolErrorEvent
    | StepFinish
    | Finish
    | StreamError
)


@dataclass(slots=True)
class CompletionResult:
    """Result from a non-streaming completion."""

    content: str
    finish_reason: str | None = None
    usage: Usage = field(default_factory=Usage)


@runtime_checkable
class LLMProvider(Protocol):
    """Protocol for LLM providers."""

    @property
    def model(self) -> str:
        """The model identifier being used."""
        ...

    @property
    def provider_name(self) -> str:
        """Provider family (e.g. "anthropic"); selects the provider permission layer."""
        ...

    def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Stream typed events for one model step.

        Implementations raise ProviderError for classified failures.
        """
        ...

    async def complete(self, request: ModelRequest) -> CompletionResult:
        """Generate a completion without streaming (used for summarisation)."""
        ...
