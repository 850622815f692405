"""Tests for the stream processor: events in, message parts and tool states out."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest
from pydantic import BaseModel

from agentcore.core.llm.provider import (
    Finish,
    ReasoningDelta,
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
from agentcore.errors import ErrorCategory, ProviderError, TurnAborted
from agentcore.session.approval import ApprovalDecision, ApprovalGate, ApprovalReason
from agentcore.session.doom_loop import DoomLoopDetector
from agentcore.session.message import Message, ReasoningPart, Role, TextPart
from agentcore.session.permissions import (
    Action,
    LayerScope,
    MergedRuleset,
    PermissionRule,
    Ruleset,
)
from agentcore.session.protocols import FinishReason, UpdateKind
from agentcore.session.stream_processor import StreamProcessor
from agentcore.session.todo import TaskListStore
from agentcore.session.tool_call import CompletedState, ErrorState, ToolCallStatus
from agentcore.tools.registry import ToolContext, ToolContract, ToolRegistry, ToolResult
from tests.utils import FakeApprovalChannel, tool_step, wait_for_async


class EchoParams(BaseModel):
    text: str


async def _echo(params: EchoParams, ctx: ToolContext) -> ToolResult:
    return ToolResult(output=params.text, title="echo")


ECHO = ToolContract(
    name="echo",
    description="Echo text back.",
    parameters=EchoParams,
    execute=_echo,
    patterns=lambda p, ctx: [p.text],
)


class WaitParams(BaseModel):
    name: str


class Rendezvous:
    """Two tool calls that can only finish if they run at the same time."""

    def __init__(self) -> None:
        self.arrived: dict[str, asyncio.Event] = {"a": asyncio.Event(), "b": asyncio.Event()}
        self.started = asyncio.Event()

    def contract(self) -> ToolContract:
        async def execute(params: WaitParams, ctx: ToolContext) -> ToolResult:
            self.started.set()
            self.arrived[params.name].set()
            other = "b" if params.name == "a" else "a"
            await self.arrived[other].wait()
            return ToolResult(output=f"{params.name} done")

        return ToolContract("wait", "Wait for the other call.", WaitParams, execute)


class EmptyParams(BaseModel):
    pass


def _rules(*rules: tuple[str, str, str], default: Action = Action.DENY) -> MergedRuleset:
    layer = Ruleset(LayerScope.GLOBAL, tuple(PermissionRule(t, Action(a), p) for t, p, a in rules))
    return MergedRuleset(layers=(layer,), default=default)


ALLOW_ALL = _rules(("*", "*", "allow"))


async def _events(*events: StreamEvent) -> AsyncIterator[StreamEvent]:
    for event in events:
        yield event
        await asyncio.sleep(0)


class Harness:
    """Builds processors that share one session's state."""

    def __init__(
        self,
        tools: list[ToolContract] | None = None,
        *,
        ruleset: MergedRuleset = ALLOW_ALL,
        channel: FakeApprovalChannel | None = None,
        gate_timeout: float = 5.0,
    ) -> None:
        self.tools = tools or [ECHO]
        self.registry = ToolRegistry(self.tools)
        self.ruleset = ruleset
        self.channel = channel or FakeApprovalChannel()
        self.gate = ApprovalGate(self.channel, timeout=gate_timeout)
        self.doom_loop = DoomLoopDetector(3)
        self.tasks = TaskListStore()
        self.abort = asyncio.Event()
        self.updates: list[tuple[UpdateKind, dict[str, Any]]] = []

    def processor(self, message: Message | None = None) -> StreamProcessor:
        return StreamProcessor(
            "ses_test",
            message or Message(role=Role.ASSISTANT),
            registry=self.registry,
            tools=self.tools,
            ruleset=self.ruleset,
            gate=self.gate,
            doom_loop=self.doom_loop,
            tasks=self.tasks,
            abort=self.abort,
            emit=lambda kind, payload: self.updates.append((kind, payload)),
        )

    async def run(self, *events: StreamEvent):
        return await wait_for_async(self.processor().process(_events(*events)))


class TestTextAndReasoning:
    """Test text and reasoning part handling."""

    async def test_text_deltas_accumulate(self) -> None:
        harness = Harness()
        result = await harness.run(
            TextDelta("Hello"),
            TextDelta(", world"),
            TextEnd(),
            StepFinish("stop", Usage(input_tokens=10, output_tokens=3)),
            Finish("stop"),
        )
        assert result.finish is FinishReason.STOP
        assert result.message.text == "Hello, world"
        part = result.message.parts[0]
        assert isinstance(part, TextPart)
        assert part.frozen
        assert result.usage.input_tokens == 10

    async def test_reasoning_part(self) -> None:
        harness = Harness()
        result = await harness.run(
            ReasoningDelta("thinking"),
            ReasoningEnd(),
            TextDelta("answer"),
            Finish("stop"),
        )
        reasoning, text = result.message.parts
        assert isinstance(reasoning, ReasoningPart)
        assert reasoning.text == "thinking"
        assert reasoning.frozen
        assert text.text == "answer"

    async def test_step_finish_used_when_finish_unknown(self) -> None:
        harness = Harness()
        result = await harness.run(TextDelta("x"), StepFinish("length"))
        assert result.finish is FinishReason.LENGTH

    async def test_updates_emitted(self) -> None:
        harness = Harness()
        await harness.run(TextDelta("hi"), TextEnd(), Finish("stop"))
        kinds = [kind for kind, _ in harness.updates]
        assert kinds[0] is UpdateKind.PART_CREATED
        assert UpdateKind.PART_UPDATED in kinds
        assert all("message_id" in payload for _, payload in harness.updates)


class TestToolExecution:
    """Test the tool call lifecycle inside one step."""

    async def test_allowed_call_completes(self) -> None:
        harness = Harness()
        result = await harness.run(*tool_step(("call_1", "echo", {"text": "hi"})))
        call = result.message.get_tool_call("call_1")
        assert call is not None
        assert isinstance(call.state, CompletedState)
        assert call.state.output == "hi"
        assert call.history == [
            ToolCallStatus.PENDING,
            ToolCallStatus.RUNNING,
            ToolCallStatus.COMPLETED,
        ]
        assert result.finish is FinishReason.TOOL_CALLS
        changes = [p for k, p in harness.updates if k is UpdateKind.TOOL_STATE_CHANGED]
        assert [p["status"] for p in changes] == ["running", "completed"]

    async def test_streamed_arguments(self) -> None:
        harness = Harness()
        result = await harness.run(
            ToolCallStart("call_1", "echo"),
            ToolCallDelta("call_1", '{"text": '),
            ToolCallDelta("call_1", '"hi"}'),
            ToolCallReady("call_1", "echo", {"text": "hi"}),
            Finish("tool-calls"),
        )
        assert result.message.get_tool_call("call_1").status is ToolCallStatus.COMPLETED

    async def test_ready_without_start(self) -> None:
        harness = Harness()
        result = await harness.run(ToolCallReady("call_1", "echo", {"text": "x"}), Finish("tool-calls"))
        assert result.message.get_tool_call("call_1").status is ToolCallStatus.COMPLETED

    async def test_invalid_arguments_never_execute(self) -> None:
        executed: list[str] = []

        async def execute(params: EchoParams, ctx: ToolContext) -> ToolResult:
            executed.append(params.text)
            return ToolResult(output="ran")

        harness = Harness([ToolContract("echo", "Echo.", EchoParams, execute)])
        result = await harness.run(*tool_step(("call_1", "echo", {"wrong": 1})))
        call = result.message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert "Invalid arguments for tool 'echo'" in call.state.error
        assert "text" in call.state.error
        assert executed == []

    async def test_unparseable_arguments(self) -> None:
        harness = Harness()
        result = await harness.run(
            ToolCallStart("call_1", "echo"),
            ToolCallReady("call_1", "echo", {}, parse_error="Expecting value"),
            Finish("tool-calls"),
        )
        call = result.message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert "not valid JSON" in call.state.error

    async def test_unknown_tool(self) -> None:
        harness = Harness()
        result = await harness.run(*tool_step(("call_1", "nope", {})))
        call = result.message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert "Unknown tool 'nope'" in call.state.error

    async def test_tool_exception_becomes_error_state(self) -> None:
        async def execute(params: EmptyParams, ctx: ToolContext) -> ToolResult:
            raise RuntimeError("disk on fire")

        harness = Harness([ToolContract("boom", "Fails.", EmptyParams, execute)])
        result = await harness.run(*tool_step(("call_1", "boom", {})))
        call = result.message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert call.state.error == "RuntimeError: disk on fire"

    async def test_incomplete_call_is_failed(self) -> None:
        harness = Harness()
        result = await harness.run(ToolCallStart("call_1", "echo"), Finish("tool-calls"))
        call = result.message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert "never completed" in call.state.error

    async def test_calls_run_concurrently(self) -> None:
        rendezvous = Rendezvous()
        harness = Harness([rendezvous.contract()])
        result = await harness.run(
            *tool_step(("call_a", "wait", {"name": "a"}), ("call_b", "wait", {"name": "b"}))
        )
        outputs = [c.state.output for c in result.message.tool_calls()]
        assert outputs == ["a done", "b done"]

    async def test_image_attachments_collected(self) -> None:
        async def execute(params: EmptyParams, ctx: ToolContext) -> ToolResult:
            return ToolResult(
                output="image",
                attachments=[{"type": "image", "url": "data:image/png;base64,AA"}],
            )

        harness = Harness([ToolContract("shot", "Screenshot.", EmptyParams, execute)])
        result = await harness.run(*tool_step(("call_1", "shot", {})))
        assert result.images == ["data:image/png;base64,AA"]

    async def test_task_list_shared_through_context(self) -> None:
        async def execute(params: EmptyParams, ctx: ToolContext) -> ToolResult:
            await ctx.tasks.write([{"id": "1", "content": "from tool"}])
            return ToolResult(output="ok")

        harness = Harness([ToolContract("plan", "Plan.", EmptyParams, execute)])
        await harness.run(*tool_step(("call_1", "plan", {})))
        assert [i.content for i in harness.tasks.read()] == ["from tool"]


class TestPermissions:
    """Test permission resolution for calls in flight."""

    async def test_denied_call(self) -> None:
        harness = Harness(ruleset=_rules(("echo", "*", "allow"), ("echo", "secret*", "deny")))
        result = await harness.run(*tool_step(("call_1", "echo", {"text": "secret plans"})))
        call = result.message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert "Permission denied" in call.state.error
        assert not call.state.rejected
        assert not result.blocked
        assert harness.channel.requests == []

    async def test_ask_approved(self) -> None:
        channel = FakeApprovalChannel(ApprovalDecision.ALLOW_ONCE)
        harness = Harness(ruleset=_rules(("echo", "*", "ask")), channel=channel)
        result = await harness.run(*tool_step(("call_1", "echo", {"text": "hi"})))
        assert result.message.get_tool_call("call_1").status is ToolCallStatus.COMPLETED
        request = channel.requests[0]
        assert request.tool == "echo"
        assert request.pattern == "hi"
        assert request.call_id == "call_1"
        assert request.reason is ApprovalReason.RULESET

    async def test_ask_rejected_blocks_step(self) -> None:
        channel = FakeApprovalChannel(ApprovalDecision.DENY)
        harness = Harness(ruleset=_rules(("echo", "*", "ask")), channel=channel)
        result = await harness.run(*tool_step(("call_1", "echo", {"text": "hi"})))
        call = result.message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert call.state.rejected
        assert result.blocked

    async def test_ask_timeout_applies_deny_fallback(self) -> None:
        channel = FakeApprovalChannel(delay=1.0)
        harness = Harness(ruleset=_rules(("echo", "*", "ask")), channel=channel, gate_timeout=0.01)
        result = await harness.run(*tool_step(("call_1", "echo", {"text": "hi"})))
        call = result.message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert "timed out" in call.state.error
        assert result.blocked

    async def test_ask_suspends_only_its_own_call(self) -> None:
        channel = FakeApprovalChannel(ApprovalDecision.ALLOW_ONCE, delay=0.05)
        harness = Harness(
            ruleset=_rules(("echo", "*", "allow"), ("echo", "slow", "ask")), channel=channel
        )
        await harness.run(
            *tool_step(
                ("call_slow", "echo", {"text": "slow"}),
                ("call_fast", "echo", {"text": "fast"}),
            )
        )
        completed = [
            payload["call_id"]
            for kind, payload in harness.updates
            if kind is UpdateKind.TOOL_STATE_CHANGED and payload["status"] == "completed"
        ]
        assert completed == ["call_fast", "call_slow"]

    async def test_allow_always_grant_reused_in_later_step(self) -> None:
        channel = FakeApprovalChannel([ApprovalDecision.ALLOW_ALWAYS])
        harness = Harness(ruleset=_rules(("echo", "*", "ask")), channel=channel)
        await harness.run(*tool_step(("call_1", "echo", {"text": "hi"})))
        result = await harness.run(*tool_step(("call_2", "echo", {"text": "hi"})))
        assert result.message.get_tool_call("call_2").status is ToolCallStatus.COMPLETED
        assert len(channel.requests) == 1

    async def test_grant_with_glob_characters_covers_only_that_input(self) -> None:
        channel = FakeApprovalChannel([ApprovalDecision.ALLOW_ALWAYS, ApprovalDecision.DENY])
        harness = Harness(ruleset=_rules(("echo", "*", "ask")), channel=channel)
        await harness.run(*tool_step(("call_1", "echo", {"text": "git log *"})))
        result = await harness.run(*tool_step(("call_2", "echo", {"text": "git log ; rm -rf ~"})))
        call = result.message.get_tool_call("call_2")
        assert isinstance(call.state, ErrorState)
        assert call.state.rejected
        assert len(channel.requests) == 2

    async def test_permission_requested_during_execution(self) -> None:
        async def execute(params: EmptyParams, ctx: ToolContext) -> ToolResult:
            await ctx.ask("read", "/etc/shadow")
            return ToolResult(output="read it")

        inspect = ToolContract("inspect", "Inspect.", EmptyParams, execute)
        harness = Harness(
            [inspect],
            ruleset=_rules(("inspect", "*", "allow"), ("read", "/etc/*", "deny")),
        )
        result = await harness.run(*tool_step(("call_1", "inspect", {})))
        call = result.message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert "/etc/shadow" in call.state.error

    async def test_execution_ask_goes_through_gate(self) -> None:
        async def execute(params: EmptyParams, ctx: ToolContext) -> ToolResult:
            await ctx.ask("read", "/home/me/notes")
            return ToolResult(output="read it")

        channel = FakeApprovalChannel(ApprovalDecision.ALLOW_ONCE)
        inspect = ToolContract("inspect", "Inspect.", EmptyParams, execute)
        harness = Harness(
            [inspect], ruleset=_rules(("inspect", "*", "allow"), ("read", "*", "ask")), channel=channel
        )
        result = await harness.run(*tool_step(("call_1", "inspect", {})))
        assert result.message.get_tool_call("call_1").status is ToolCallStatus.COMPLETED
        assert channel.requests[0].reason is ApprovalReason.EXECUTION
        assert channel.requests[0].pattern == "/home/me/notes"


class TestDoomLoop:
    """Test repeated identical calls across steps."""

    async def test_fourth_identical_call_goes_to_gate(self) -> None:
        channel = FakeApprovalChannel(ApprovalDecision.ALLOW_ONCE)
        harness = Harness(channel=channel)
        for n in range(1, 4):
            result = await harness.run(*tool_step((f"call_{n}", "echo", {"text": "again"})))
            assert result.message.get_tool_call(f"call_{n}").status is ToolCallStatus.COMPLETED
        assert channel.requests == []

        result = await harness.run(*tool_step(("call_4", "echo", {"text": "again"})))
        assert result.message.get_tool_call("call_4").status is ToolCallStatus.COMPLETED
        assert len(channel.requests) == 1
        assert channel.requests[0].reason is ApprovalReason.DOOM_LOOP

    async def test_rejected_loop_blocks(self) -> None:
        channel = FakeApprovalChannel(ApprovalDecision.DENY)
        harness = Harness(channel=channel)
        for n in range(3):
            await harness.run(*tool_step((f"call_{n}", "echo", {"text": "again"})))
        result = await harness.run(*tool_step(("call_x", "echo", {"text": "again"})))
        assert result.blocked
        assert result.message.get_tool_call("call_x").state.rejected

    async def test_different_arguments_do_not_loop(self) -> None:
        channel = FakeApprovalChannel()
        harness = Harness(channel=channel)
        for n in range(5):
            await harness.run(*tool_step((f"call_{n}", "echo", {"text": f"v{n}"})))
        assert channel.requests == []


class TestAbortAndErrors:
    """Test abort and provider failure handling."""

    async def test_abort_cancels_running_tools(self) -> None:
        started = asyncio.Event()

        async def execute(params: EmptyParams, ctx: ToolContext) -> ToolResult:
            started.set()
            await asyncio.sleep(30)
            return ToolResult(output="never")

        harness = Harness([ToolContract("sleepy", "Sleeps.", EmptyParams, execute)])
        message = Message(role=Role.ASSISTANT)
        processor = harness.processor(message)

        async def abort_when_started() -> None:
            await started.wait()
            harness.abort.set()

        aborter = asyncio.create_task(abort_when_started())
        with pytest.raises(TurnAborted):
            await wait_for_async(processor.process(_events(*tool_step(("call_1", "sleepy", {})))))
        await aborter

        call = message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert call.state.cancelled

    async def test_abort_before_start(self) -> None:
        harness = Harness()
        harness.abort.set()
        with pytest.raises(TurnAborted):
            await harness.run(TextDelta("x"), Finish("stop"))

    async def test_abort_marks_pending_calls(self) -> None:
        harness = Harness()
        message = Message(role=Role.ASSISTANT)

        async def stalled() -> AsyncIterator[StreamEvent]:
            yield TextDelta("partial")
            yield ToolCallStart("call_1", "echo")
            harness.abort.set()
            await asyncio.sleep(30)
            yield Finish("stop")

        with pytest.raises(TurnAborted):
            await wait_for_async(harness.processor(message).process(stalled()))
        call = message.get_tool_call("call_1")
        assert isinstance(call.state, ErrorState)
        assert call.state.cancelled
        assert message.text_parts()[0].frozen

    async def test_provider_error_propagates(self) -> None:
        harness = Harness()
        message = Message(role=Role.ASSISTANT)

        async def failing() -> AsyncIterator[StreamEvent]:
            yield TextDelta("half")
            raise ProviderError(ErrorCategory.TRANSIENT, "connection reset")

        with pytest.raises(ProviderError) as exc_info:
            await wait_for_async(harness.processor(message).process(failing()))
        assert exc_info.value.category is ErrorCategory.TRANSIENT
        assert message.text_parts()[0].frozen
