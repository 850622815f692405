"""LLM provider abstraction."""

from agentcore.core.llm.litellm_provider import (
    LiteLLMProvider,
    classify_exception,
    create_provider,
    normalize_finish_reason,
)
from agentcore.core.llm.provider import (
    CompletionResult,
    Credential,
    Finish,
    LLMProvider,
    ModelRequest,
    ReasoningDelta,
    ReasoningEffort,
    ReasoningEnd,
    SamplingConfig,
    StepFinish,
    StreamError,
    StreamEvent,
    TextDelta,
    TextEnd,
    ToolCallDelta,
    ToolCallReady,
    ToolCallStart,
    ToolErrorEvent,
    ToolResultEvent,
    ToolSpec,
    Usage,
)

__all__ = [
    "CompletionResult",
    "Credential",
    "Finish",
    "LLMProvider",
    "LiteLLMProvider",
    "ModelRequest",
    "ReasoningDelta",
    "ReasoningEffort",
    "ReasoningEnd",
    "SamplingConfig",
    "StepFinish",
    "StreamError",
    "StreamEvent",
    "TextDelta",
    "TextEnd",
    "ToolCallDelta",
    "ToolCallReady",
    "ToolCallStart",
    "ToolErrorEvent",
    "ToolResultEvent",
    "ToolSpec",
    "Usage",
    "classify_exception",
    "create_provider",
    "normalize_finish_reason",
]
