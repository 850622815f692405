"""LiteLLM provider implementation.

Supports 100+ LLM providers through litellm:
- Anthropic: "claude-sonnet-4-5-20250929"
- OpenAI: "gpt-4.1", "o3"
- Local: "ollama/llama3"

See https://docs.litellm.ai/docs/providers for full list.

Streaming chunks are converted into the typed events of
agentcore.core.llm.provider, and litellm exceptions are mapped onto
ErrorCategory so the retry controller can pick a recovery strategy.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import litellm

from agentcore.core.llm.provider import (
    CompletionResult,
    Finish,
    ModelRequest,
    ReasoningDelta,
    ReasoningEffort,
    ReasoningEnd,
    StepFinish,
    StreamEvent,
    TextDelta,
    TextEnd,
    ToolCallDelta,
    ToolCallReady,
    ToolCallStart,
    Usage,
)
from agentcore.errors import ErrorCategory, ProviderError
from agentcore.logging import get_logger

log = get_logger("llm")

# Provider finish reasons -> the core's finish reasons
_FINISH_REASONS = {
    "stop": "stop",
    "end_turn": "stop",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "tool_use": "tool-calls",
    "length": "length",
    "max_tokens": "length",
    "content_filter": "content-filter",
}

_CAPABILITY_MARKERS = ("reasoning", "thinking", "reasoning_effort", "budget_tokens")


def normalize_finish_reason(reason: str | None) -> str:
    if reason is None:
        return "stop"
    return _FINISH_REASONS.get(reason, reason.replace("_", "-"))


def _retry_after(exc: BaseException) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def classify_exception(exc: BaseException) -> ProviderError:
    """Map a litellm (or transport) exception onto a ProviderError.

    Order matters: several litellm errors subclass BadRequestError.
    """
    if isinstance(exc, ProviderError):
        return exc

    message = str(exc)
    lowered = message.lower()

    if isinstance(exc, litellm.ContextWindowExceededError):
        category = ErrorCategory.CONTEXT_OVERFLOW
    elif isinstance(exc, litellm.ContentPolicyViolationError):
        category = ErrorCategory.CONTENT_FILTER
    elif isinstance(exc, litellm.RateLimitError):
        category = ErrorCategory.RATE_LIMIT
    elif isinstance(exc, litellm.AuthenticationError):
        category = ErrorCategory.AUTH
    elif isinstance(exc, litellm.PermissionDeniedError):
        category = ErrorCategory.AUTH
    elif isinstance(exc, litellm.UnsupportedParamsError):
        category = ErrorCategory.CAPABILITY
    elif isinstance(
        exc,
        (
            litellm.Timeout,
            litellm.APIConnectionError,
            litellm.ServiceUnavailableError,
            litellm.InternalServerError,
        ),
    ):
        category = ErrorCategory.TRANSIENT
    elif isinstance(exc, litellm.BadRequestError):
        if any(marker in lowered for marker in _CAPABILITY_MARKERS):
            category = ErrorCategory.CAPABILITY
        else:
            category = ErrorCategory.INVALID_REQUEST
    elif isinstance(exc, (ConnectionError, TimeoutError)):
        category = ErrorCategory.TRANSIENT
    else:
        category = ErrorCategory.FATAL

    return ProviderError(category, message, cause=exc, retry_after=_retry_after(exc))


@dataclass
class _PendingToolCall:
    call_id: str
    name: str
    arguments: str = ""


class LiteLLMProvider:
    """LLM provider using litellm for multi-provider support.

    Usage:
        provider = LiteLLMProvider("claude-sonnet-4-5-20250929")
        provider = LiteLLMProvider("gpt-4.1", api_base="http://localhost:8000/v1")
    """

    def __init__(
        self,
        model: str,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        **kwargs: Any,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._api_base = api_base
        self._kwargs = kwargs

    @property
    def model(self) -> str:
        return self._model

    @property
    def provider_name(self) -> str:
        try:
            _, provider, _, _ = litellm.get_llm_provider(self._model)
            return provider
        except litellm.BadRequestError:
            return self._model.split("/", 1)[0] if "/" in self._model else "unknown"

    def _build_kwargs(self, request: ModelRequest, *, stream: bool) -> dict[str, Any]:
        """Build kwargs for a litellm call."""
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(request.messages)

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "max_tokens": request.sampling.max_tokens,
            "stream": stream,
            **self._kwargs,
        }
        if stream:
            kwargs["stream_options"] = {"include_usage": True}
        if request.sampling.temperature is not None:
            kwargs["temperature"] = request.sampling.temperature
        if request.sampling.reasoning_effort is not ReasoningEffort.OFF:
            kwargs["reasoning_effort"] = request.sampling.reasoning_effort.value
        if request.tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in request.tools
            ]

        api_key = self._api_key
        api_base = self._api_base
        if request.credential is not None:
            api_key = request.credential.api_key or api_key
            api_base = request.credential.api_base or api_base
        if api_key:
            kwargs["api_key"] = api_key
        if api_base:
            kwargs["api_base"] = api_base

        return kwargs

    async def complete(self, request: ModelRequest) -> CompletionResult:
        """Generate a completion (non-streaming)."""
        kwargs = self._build_kwargs(request, stream=False)
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise classify_exception(e) from e

        content = response.choices[0].message.content or ""
        usage = Usage()
        if getattr(response, "usage", None):
            usage = Usage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        return CompletionResult(
            content=content,
            finish_reason=normalize_finish_reason(response.choices[0].finish_reason),
            usage=usage,
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Stream typed events for one model step."""
        kwargs = self._build_kwargs(request, stream=True)

        pending: dict[int, _PendingToolCall] = {}
        text_open = False
        reasoning_open = False
        finish_reason: str | None = None
        usage = Usage()

        try:
            response = await litellm.acompletion(**kwargs)
            async for chunk in response:
                chunk_usage = getattr(chunk, "usage", None)
                if chunk_usage:
                    usage = Usage(
                        input_tokens=getattr(chunk_usage, "prompt_tokens", 0) or 0,
                        output_tokens=getattr(chunk_usage, "completion_tokens", 0) or 0,
                    )
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None:
                    reasoning = getattr(delta, "reasoning_content", None)
                    if reasoning:
                        reasoning_open = True
                        yield ReasoningDelta(reasoning)

                    if delta.content:
                        if reasoning_open:
                            reasoning_open = False
                            yield ReasoningEnd()
                        text_open = True
                        yield TextDelta(delta.content)

                    for tc in getattr(delta, "tool_calls", None) or []:
                        if text_open:
                            text_open = False
                            yield TextEnd()
                        index = tc.index if tc.index is not None else len(pending)
                        entry = pending.get(index)
                        if entry is None:
                            entry = _PendingToolCall(
                                call_id=tc.id or f"call_{index}",
                                name=tc.function.name or "",
                            )
                            pending[index] = entry
                            yield ToolCallStart(entry.call_id, entry.name)
                        if tc.function and tc.function.arguments:
                            entry.arguments += tc.function.arguments
                            yield ToolCallDelta(entry.call_id, tc.function.arguments)

                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except ProviderError:
            raise
        except Exception as e:
            raise classify_exception(e) from e

        if reasoning_open:
            yield ReasoningEnd()
        if text_open:
            yield TextEnd()

        for entry in pending.values():
            yield _ready_event(entry)

        reason = normalize_finish_reason(finish_reason)
        if pending and reason == "stop":
            # Some providers report "stop" even when tool calls were emitted
            reason = "tool-calls"
        log.debug("Stream finished: reason=%s usage=%s", reason, usage)
        yield StepFinish(reason, usage)
        yield Finish(reason, usage)


def _ready_event(entry: _PendingToolCall) -> ToolCallReady:
    raw = entry.arguments.strip() or "{}"
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        return ToolCallReady(entry.call_id, entry.name, {}, parse_error=str(e))
    if not isinstance(parsed, dict):
        return ToolCallReady(
            entry.call_id, entry.name, {}, parse_error="arguments must be a JSON object"
        )
    return ToolCallReady(entry.call_id, entry.name, parsed)


def create_provider(model: str = "claude-sonnet-4-5-20250929", **kwargs: Any) -> LiteLLMProvider:
    """Create an LLM provider with sensible defaults."""
    return LiteLLMProvider(model, **kwargs)
