"""Stream Processor: one model step, from typed events to message parts.

Provider events and tool outcomes share one queue. A pump task copies the
provider stream into it; every ready tool call runs as its own task and
reports back with a ``ToolResultEvent`` or ``ToolErrorEvent``. The loop reads
the queue until the stream has finished and every spawned call has reported,
or until the abort signal fires.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from agentcore.core.llm.provider import (
    Finish,
    ReasoningDelta,
    ReasoningEnd,
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
    Usage,
)
from agentcore.errors import (
    AgentCoreError,
    InvalidArguments,
    PermissionDenied,
    QuestionRejected,
    ToolNotFound,
    TurnAborted,
)
from agentcore.logging import get_logger
from agentcore.session.approval import ApprovalGate, ApprovalReason, ApprovalRequest
from agentcore.session.doom_loop import DoomLoopDetector
from agentcore.session.message import Message, ReasoningPart, TextPart
from agentcore.session.permissions import Action, MergedRuleset
from agentcore.session.protocols import FinishReason, UpdateKind
from agentcore.session.todo import TaskListStore
from agentcore.session.tool_call import ToolCall, ToolCallStatus
from agentcore.tools.registry import SpawnFn, ToolContext, ToolContract, ToolRegistry

_log = get_logger("session.stream")

Emit = Callable[[UpdateKind, dict[str, Any]], None]


class _StreamClosed:
    """Sentinel queued when the provider iterator is exhausted."""


_CLOSED = _StreamClosed()


@dataclass(slots=True)
class StepResult:
    """What one processed model step produced.

    Attributes:
        message: The assistant message (still open; the caller closes it)
        finish: Final finish reason of the stream
        step_finish: Finish reason reported for the model step, if any
        usage: Token usage for the step
        blocked: A user rejected an approval request or question
        images: Image data URLs returned by tools, for the next prompt
    """

    message: Message
    finish: FinishReason = FinishReason.UNKNOWN
    step_finish: FinishReason | None = None
    usage: Usage = field(default_factory=Usage)
    blocked: bool = False
    images: list[str] = field(default_factory=list)


class StreamProcessor:
    """Drives one model step for a session."""

    def __init__(
        self,
        session_id: str,
        message: Message,
        *,
        registry: ToolRegistry,
        tools: list[ToolContract],
        ruleset: MergedRuleset,
        gate: ApprovalGate,
        doom_loop: DoomLoopDetector,
        tasks: TaskListStore,
        abort: asyncio.Event,
        cwd: str = ".",
        agent: str = "build",
        emit: Emit | None = None,
        spawn_fn: SpawnFn | None = None,
        bash_timeout: float = 120.0,
    ) -> None:
        self._session_id = session_id
        self._message = message
        self._registry = registry
        self._tools = {t.name: t for t in tools}
        self._ruleset = ruleset
        self._gate = gate
        self._doom_loop = doom_loop
        self._tasks = tasks
        self._abort = abort
        self._cwd = cwd
        self._agent = agent
        self._emit_fn = emit
        self._spawn_fn = spawn_fn
        self._bash_timeout = bash_timeout

        self._queue: asyncio.Queue[StreamEvent | _StreamClosed] = asyncio.Queue()
        self._running: dict[str, asyncio.Task[None]] = {}
        self._text: TextPart | None = None
        self._reasoning: ReasoningPart | None = None
        self._result = StepResult(message=message)

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    async def process(self, events: AsyncIterator[StreamEvent]) -> StepResult:
        """Consume ``events`` until the step is complete.

        Raises:
            TurnAborted: the abort signal fired
            BaseException: the provider failed; the error is re-raised as-is
        """
        if self._abort.is_set():
            raise TurnAborted(self._session_id)

        pump = asyncio.create_task(self._pump(events))
        abort_wait = asyncio.create_task(self._abort.wait())
        stream_done = False
        try:
            while not (stream_done and not self._running):
                getter = asyncio.create_task(self._queue.get())
                done, _ = await asyncio.wait(
                    {getter, abort_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter not in done:
                    getter.cancel()
                    await self._cancel_outstanding("aborted by user")
                    self._close_parts()
                    _log.info("Step aborted for session %s", self._session_id)
                    raise TurnAborted(self._session_id)

                event = getter.result()
                if isinstance(event, _StreamClosed):
                    stream_done = True
                elif isinstance(event, StreamError):
                    await self._cancel_outstanding("interrupted by stream error")
                    self._close_parts()
                    raise event.error
                else:
                    self._handle(event)
                    if isinstance(event, Finish):
                        stream_done = True
        finally:
            pump.cancel()
            abort_wait.cancel()
            for task in self._running.values():
                task.cancel()

        self._close_parts()
        for call in self._message.tool_calls():
            if call.status is ToolCallStatus.PENDING:
                # Started but the model never sent complete arguments
                call.start({})
                self._finish_call(call, error="tool call arguments were never completed")
        if self._result.finish is FinishReason.UNKNOWN and self._result.step_finish is not None:
            self._result.finish = self._result.step_finish
        return self._result

    async def _pump(self, events: AsyncIterator[StreamEvent]) -> None:
        try:
            async for event in events:
                await self._queue.put(event)
                if isinstance(event, Finish):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._queue.put(StreamError(e))
            return
        await self._queue.put(_CLOSED)

    # -------------------------------------------------------------------------
    # Event handling
    # -------------------------------------------------------------------------

    def _handle(self, event: StreamEvent) -> None:
        match event:
            case TextDelta(text=text):
                if self._text is None:
                    self._text = TextPart()
                    self._message.add_part(self._text)
                    self._emit(UpdateKind.PART_CREATED, self._text.to_dict())
                self._text.append(text)
                self._emit(UpdateKind.PART_UPDATED, {"part_id": self._text.part_id, "delta": text})
            case TextEnd():
                self._finish_text()
            case ReasoningDelta(text=text):
                if self._reasoning is None:
                    self._reasoning = ReasoningPart()
                    self._message.add_part(self._reasoning)
                    self._emit(UpdateKind.PART_CREATED, self._reasoning.to_dict())
                self._reasoning.append(text)
            case ReasoningEnd():
                if self._reasoning is not None:
                    self._reasoning.freeze()
                    self._emit(UpdateKind.PART_UPDATED, self._reasoning.to_dict())
                    self._reasoning = None
            case ToolCallStart(call_id=call_id, tool_name=tool_name):
                self._finish_text()
                self._new_call(call_id, tool_name)
            case ToolCallDelta(call_id=call_id, delta=delta):
                call = self._message.get_tool_call(call_id)
                if call is not None and call.status is ToolCallStatus.PENDING:
                    call.append_input(delta)
            case ToolCallReady():
                self._on_tool_ready(event)
            case ToolResultEvent():
                self._on_tool_result(event)
            case ToolErrorEvent():
                self._on_tool_error(event)
            case StepFinish(reason=reason, usage=usage):
                self._result.step_finish = FinishReason.parse(reason)
                self._add_usage(usage)
            case Finish(reason=reason, usage=usage):
                self._result.finish = FinishReason.parse(reason)
                if self._result.usage.total_tokens == 0:
                    self._add_usage(usage)

    def _finish_text(self) -> None:
        part = self._text
        if part is None:
            return
        self._text = None
        part.freeze()
        self._emit(UpdateKind.PART_UPDATED, part.to_dict())

    def _close_parts(self) -> None:
        self._finish_text()
        if self._reasoning is not None:
            self._reasoning.freeze()
            self._reasoning = None

    def _add_usage(self, usage: Usage) -> None:
        total = self._result.usage
        total.input_tokens += usage.input_tokens
        total.output_tokens += usage.output_tokens
        total.reasoning_tokens += usage.reasoning_tokens
        total.cost += usage.cost
        self._message.usage = total

    def _new_call(self, call_id: str, tool_name: str) -> ToolCall:
        call = ToolCall(call_id, tool_name, on_change=self._on_call_change)
        self._message.add_part(call)
        self._emit(UpdateKind.PART_CREATED, call.to_dict())
        return call

    def _on_call_change(self, call: ToolCall) -> None:
        self._emit(UpdateKind.TOOL_STATE_CHANGED, call.to_dict())

    def _on_tool_ready(self, event: ToolCallReady) -> None:
        call = self._message.get_tool_call(event.call_id)
        if call is None:
            self._finish_text()
            call = self._new_call(event.call_id, event.tool_name)
        if call.status is not ToolCallStatus.PENDING:
            _log.warning("Ignoring duplicate tool call event for %s", event.call_id)
            return

        call.start(event.input)
        if event.parse_error is not None:
            error = InvalidArguments(call.tool_name, f"arguments are not valid JSON: {event.parse_error}")
            self._finish_call(call, error=str(error))
            return

        self._running[call.call_id] = asyncio.create_task(
            self._run_tool(call.call_id, call.tool_name, event.input)
        )

    def _on_tool_result(self, event: ToolResultEvent) -> None:
        self._running.pop(event.call_id, None)
        call = self._message.get_tool_call(event.call_id)
        if call is None or call.is_terminal:
            return
        call.complete(
            event.output,
            title=event.title,
            truncated=event.truncated,
            metadata=dict(event.metadata),
            attachments=list(event.attachments),
        )
        self._doom_loop.record(call.tool_name, call.input)
        for attachment in event.attachments:
            if attachment.get("type") == "image" and attachment.get("url"):
                self._result.images.append(attachment["url"])

    def _on_tool_error(self, event: ToolErrorEvent) -> None:
        self._running.pop(event.call_id, None)
        call = self._message.get_tool_call(event.call_id)
        if call is None or call.is_terminal:
            return
        self._finish_call(call, error=event.error, cancelled=event.cancelled, rejected=event.rejected)

    def _finish_call(
        self,
        call: ToolCall,
        *,
        error: str,
        cancelled: bool = False,
        rejected: bool = False,
    ) -> None:
        call.fail(error, cancelled=cancelled, rejected=rejected)
        self._doom_loop.record(call.tool_name, call.input)
        if rejected:
            self._result.blocked = True

    # -------------------------------------------------------------------------
    # Tool execution
    # -------------------------------------------------------------------------

    async def _run_tool(self, call_id: str, tool_name: str, args: dict[str, Any]) -> None:
        event = await self._execute(call_id, tool_name, args)
        await self._queue.put(event)

    async def _execute(
        self, call_id: str, tool_name: str, args: dict[str, Any]
    ) -> ToolResultEvent | ToolErrorEvent:
        contract = self._tools.get(tool_name)
        ctx = ToolContext(
            session_id=self._session_id,
            call_id=call_id,
            agent=self._agent,
            cwd=self._cwd,
            tasks=self._tasks,
            abort=self._abort,
            bash_timeout=self._bash_timeout,
            ask_fn=lambda tool, pattern, a: self._authorize(tool, [pattern], a, call_id),
            spawn_fn=self._spawn_fn,
        )
        try:
            if contract is None:
                raise ToolNotFound(tool_name, list(self._tools))
            params = contract.validate(args)
            patterns = contract.salient_patterns(params, ctx)
            await self._authorize(tool_name, patterns, args, call_id, check_loop=True)
            result = await self._registry.execute(tool_name, args, ctx, contract=contract)
        except PermissionDenied as e:
            _log.info("Tool %s denied: %s", tool_name, e.reason)
            return ToolErrorEvent(call_id, str(e), rejected=e.user_rejected)
        except QuestionRejected as e:
            return ToolErrorEvent(call_id, str(e), rejected=True)
        except AgentCoreError as e:
            return ToolErrorEvent(call_id, str(e))
        except Exception as e:
            # Tool failures are reported to the model, not raised
            _log.debug("Tool %s raised", tool_name, exc_info=True)
            return ToolErrorEvent(call_id, f"{type(e).__name__}: {e}")

        return ToolResultEvent(
            call_id=call_id,
            title=result.title,
            output=result.output,
            metadata=result.metadata,
            attachments=tuple(result.attachments),
            truncated=result.truncated,
        )

    async def _authorize(
        self,
        tool: str,
        patterns: list[str],
        args: dict[str, Any],
        call_id: str,
        *,
        check_loop: bool = False,
    ) -> None:
        """Resolve permission for every salient pattern; raise if refused."""
        resolutions = [self._ruleset.resolve(tool, p) for p in patterns]
        for resolution in resolutions:
            _log.debug(
                "Permission %s for %s on '%s' (%s)",
                resolution.action.value,
                tool,
                resolution.pattern,
                resolution.scope.name.lower() if resolution.scope else "default",
            )
            if resolution.action is Action.DENY:
                raise PermissionDenied(tool, resolution.pattern)

        if check_loop and self._doom_loop.is_looping(tool, args):
            _log.warning("Repeated identical %s call in session %s", tool, self._session_id)
            await self._gate.check(
                self._request(tool, " ".join(patterns), args, call_id, ApprovalReason.DOOM_LOOP),
                Action.ASK,
            )
            return

        reason = ApprovalReason.RULESET if check_loop else ApprovalReason.EXECUTION
        for resolution in resolutions:
            if resolution.action is Action.ASK:
                await self._gate.check(
                    self._request(tool, resolution.pattern, args, call_id, reason), Action.ASK
                )

    def _request(
        self,
        tool: str,
        pattern: str,
        args: dict[str, Any],
        call_id: str,
        reason: ApprovalReason,
    ) -> ApprovalRequest:
        return ApprovalRequest(
            session_id=self._session_id,
            tool=tool,
            pattern=pattern,
            args=args,
            call_id=call_id,
            agent=self._agent,
            reason=reason,
        )

    async def _cancel_outstanding(self, reason: str) -> None:
        """Cancel tool tasks and record a terminal state for every open call."""
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        # Outcomes that arrived before the cancellation still count
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if isinstance(event, ToolResultEvent):
                self._on_tool_result(event)
            elif isinstance(event, ToolErrorEvent):
                self._on_tool_error(event)
        self._running.clear()

        now = time.time()
        for call in self._message.tool_calls():
            if call.status is ToolCallStatus.PENDING:
                call.start({}, now=now)
            if call.status is ToolCallStatus.RUNNING:
                call.fail(reason, cancelled=True, now=now)

    def _emit(self, kind: UpdateKind, payload: dict[str, Any]) -> None:
        if self._emit_fn is not None:
            self._emit_fn(kind, {"message_id": self._message.message_id, **payload})
