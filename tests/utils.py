"""Shared test utilities for agentcore tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from types import SimpleNamespace
from typing import Any

from agentcore.config import Config, dict_to_config
from agentcore.core.llm.provider import (
    CompletionResult,
    Finish,
    ModelRequest,
    StepFinish,
    StreamEvent,
    TextDelta,
    TextEnd,
    ToolCallReady,
    ToolCallStart,
    Usage,
)
from agentcore.session.approval import ApprovalDecision, ApprovalRequest
from agentcore.session.retry import CredentialPool, SleepFn
from agentcore.session.session_manager import SessionManager
from agentcore.tools.builtin import builtin_tools
from agentcore.tools.registry import ToolContract, ToolRegistry

Step = list[StreamEvent] | BaseException


class ScriptedProvider:
    """LLM provider that replays pre-built event lists, one per model step.

    A step may be an exception instance, raised when the step is streamed.
    """

    def __init__(
        self,
        steps: list[Step] | None = None,
        *,
        summary: str = "Earlier work: files were inspected.",
        provider_name: str = "test",
    ) -> None:
        self.steps: list[Step] = list(steps or [])
        self.summary = summary
        self.requests: list[ModelRequest] = []
        self.complete_requests: list[ModelRequest] = []
        self._provider_name = provider_name

    @property
    def model(self) -> str:
        return "test-model"

    @property
    def provider_name(self) -> str:
        return self._provider_name

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        if not self.steps:
            raise AssertionError("ScriptedProvider ran out of steps")
        step = self.steps.pop(0)
        if isinstance(step, BaseException):
            raise step
        for event in step:
            yield event
            await asyncio.sleep(0)

    async def complete(self, request: ModelRequest) -> CompletionResult:
        self.complete_requests.append(request)
        return CompletionResult(content=self.summary, finish_reason="stop")


class FakeApprovalChannel:
    """Approval channel answering from a script (or a fixed decision)."""

    def __init__(
        self,
        decisions: list[ApprovalDecision] | ApprovalDecision = ApprovalDecision.ALLOW_ONCE,
        *,
        delay: float = 0.0,
    ) -> None:
        self._decisions = decisions
        self._delay = delay
        self.requests: list[ApprovalRequest] = []

    async def request_approval(self, request: ApprovalRequest) -> ApprovalDecision:
        self.requests.append(request)
        if self._delay:
            await asyncio.sleep(self._delay)
        if isinstance(self._decisions, list):
            return self._decisions.pop(0)
        return self._decisions


def text_step(text: str, reason: str = "stop", usage: Usage | None = None) -> list[StreamEvent]:
    """A model step that replies with text and finishes."""
    usage = usage or Usage()
    return [TextDelta(text), TextEnd(), StepFinish(reason, usage), Finish(reason, usage)]


def tool_step(*calls: tuple[str, str, dict[str, Any]], text: str | None = None) -> list[StreamEvent]:
    """A model step that issues ``(call_id, tool, args)`` calls."""
    events: list[StreamEvent] = []
    if text:
        events += [TextDelta(text), TextEnd()]
    for call_id, tool, args in calls:
        events += [ToolCallStart(call_id, tool), ToolCallReady(call_id, tool, args)]
    events += [StepFinish("tool-calls"), Finish("tool-calls")]
    return events


def make_config(**sections: Any) -> Config:
    """Config from plain dict sections, e.g. ``permission={"default": "allow"}``."""
    return dict_to_config(sections)


class SleepRecorder:
    """Backoff sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_manager(
    provider: ScriptedProvider,
    *,
    tmp_path: Any,
    approval: FakeApprovalChannel | None = None,
    extra_tools: list[ToolContract] | None = None,
    credentials: CredentialPool | None = None,
    sleep: SleepFn | None = None,
    **sections: Any,
) -> SessionManager:
    """SessionManager over a scripted provider with no real backoff sleeps."""
    config = make_config(**sections)
    registry = ToolRegistry(
        [*builtin_tools(), *(extra_tools or [])],
        max_output_lines=config.tools.max_output_lines,
        max_output_bytes=config.tools.max_output_bytes,
    )
    return SessionManager(
        config,
        provider=provider,
        approval=approval,
        registry=registry,
        credentials=credentials,
        cwd=str(tmp_path),
        sleep=sleep or SleepRecorder(),
    )


def create_mock_llm_response(content: str = "Test response", finish_reason: str = "stop") -> Any:
    """Create a mock non-streaming litellm response."""
    message = SimpleNamespace(content=content)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=20, total_tokens=30),
    )


def create_mock_llm_stream_chunk(
    text: str | None = None,
    *,
    reasoning: str | None = None,
    tool_calls: list[Any] | None = None,
    finish_reason: str | None = None,
    usage: tuple[int, int] | None = None,
) -> Any:
    """Create a mock litellm streaming chunk.

    Plain namespaces rather than Mock objects, so absent attributes stay None.
    """
    delta = SimpleNamespace(content=text, reasoning_content=reasoning, tool_calls=tool_calls)
    chunk_usage = None
    if usage is not None:
        chunk_usage = SimpleNamespace(prompt_tokens=usage[0], completion_tokens=usage[1])
    return SimpleNamespace(
        choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)],
        usage=chunk_usage,
    )


def create_mock_tool_call_delta(
    index: int, *, call_id: str | None = None, name: str | None = None, arguments: str = ""
) -> Any:
    return SimpleNamespace(
        index=index,
        id=call_id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


class MockStream:
    """Async iterator over pre-built chunks, as returned by ``litellm.acompletion``."""

    def __init__(self, chunks: list[Any], error: BaseException | None = None) -> None:
        self._chunks = list(chunks)
        self._error = error

    def __aiter__(self) -> MockStream:
        return self

    async def __anext__(self) -> Any:
        if self._chunks:
            return self._chunks.pop(0)
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration


async def wait_for_async(coro, timeout: float = 1.0):
    """Wait for an async coroutine with a timeout."""
    return await asyncio.wait_for(coro, timeout=timeout)
