"""Core runtime pieces: LLM providers, token counting, prompts."""

from agentcore.core.llm import LiteLLMProvider, LLMProvider, ModelRequest, ReasoningEffort
from agentcore.core.prompts import build_system_prompt
from agentcore.core.tokens import count_message_tokens, count_tokens

__all__ = [
    "LLMProvider",
    "LiteLLMProvider",
    "ModelRequest",
    "ReasoningEffort",
    "build_system_prompt",
    "count_message_tokens",
    "count_tokens",
]
