"""Retry/Fallback Controller.

``RetryController.run_attempt`` owns one logical turn:

1. prepare the prompt (sanitised history, pending images)
2. run one model step through the Stream Processor
3. ask the Completion Enforcer what to do
4. continue, compact, or stop

Provider failures are classified by ``ErrorCategory`` and recovered here and
nowhere else: credentials rotate on auth and rate-limit failures, context
overflow compacts once per step, a capability mismatch lowers the reasoning
effort one level, transient failures back off exponentially. Anything else,
or running out of retries, ends the turn with a structured failure.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING

from agentcore.config.secrets import fetch_secret
from agentcore.core.llm.provider import (
    Credential,
    LLMProvider,
    ModelRequest,
    ReasoningEffort,
    SamplingConfig,
)
from agentcore.core.tokens import count_message_tokens
from agentcore.errors import (
    CompactionError,
    ErrorCategory,
    ProviderError,
    TerminalFailure,
    TurnAborted,
)
from agentcore.logging import get_logger
from agentcore.session.compaction import Compactor
from agentcore.session.completion import CompletionEnforcer
from agentcore.session.history import sanitize, to_provider_messages
from agentcore.session.message import Message, Role
from agentcore.session.permissions import PermissionContext, PermissionResolver
from agentcore.session.protocols import (
    Failure,
    FinalResult,
    FinishReason,
    Outcome,
    RetryEvent,
    SessionStatus,
    UpdateKind,
)
from agentcore.session.stream_processor import StepResult, StreamProcessor
from agentcore.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from agentcore.config.schema import Config, LLMConfig, RetryConfig
    from agentcore.session.session_manager import Session

_log = get_logger("session.retry")

SleepFn = Callable[[float], Awaitable[None]]


# -----------------------------------------------------------------------------
# Credentials
# -----------------------------------------------------------------------------


class CredentialPool:
    """Ordered credential profiles with cooldown parking.

    Rate-limited credentials are parked for ``cooldown`` seconds; rejected
    ones are excluded for the life of the pool.
    """

    def __init__(
        self,
        credentials: Sequence[Credential] = (),
        *,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._credentials = list(credentials)
        self._cooldown = cooldown
        self._clock = clock
        self._index = 0
        self._parked_until: dict[str, float] = {}
        self._excluded: set[str] = set()

    @classmethod
    def from_config(cls, llm: LLMConfig, *, cooldown: float = 60.0) -> CredentialPool:
        credentials = []
        for profile in llm.credentials:
            key = profile.api_key
            if key is None and profile.api_key_env:
                key = fetch_secret(profile.api_key_env)
            if key is None:
                _log.warning("Credential profile '%s' has no API key; skipped", profile.name)
                continue
            credentials.append(
                Credential(name=profile.name, api_key=key, api_base=profile.api_base or llm.api_base)
            )
        return cls(credentials, cooldown=cooldown)

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def current(self) -> Credential | None:
        if not self._credentials:
            return None
        return self._credentials[self._index]

    def is_available(self, credential: Credential) -> bool:
        if credential.name in self._excluded:
            return False
        return self._parked_until.get(credential.name, 0.0) <= self._clock()

    def park(self, credential: Credential, seconds: float | None = None) -> None:
        self._parked_until[credential.name] = self._clock() + (
            seconds if seconds is not None else self._cooldown
        )

    def exclude(self, credential: Credential) -> None:
        self._excluded.add(credential.name)

    def rotate(self) -> Credential | None:
        """Move to the next usable credential after the current one.

        Returns None, leaving the current selection alone, when no other
        credential is usable.
        """
        count = len(self._credentials)
        for step in range(1, count):
            index = (self._index + step) % count
            if self.is_available(self._credentials[index]):
                self._index = index
                _log.info("Rotated to credential '%s'", self._credentials[index].name)
                return self._credentials[index]
        return None


def backoff_delay(
    attempt: int,
    *,
    initial: float = 1.0,
    factor: float = 2.0,
    maximum: float = 30.0,
    retry_after: float | None = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    if retry_after is not None and retry_after > 0:
        return min(retry_after, maximum)
    return min(initial * factor ** max(attempt - 1, 0), maximum)


# -----------------------------------------------------------------------------
# Controller
# -----------------------------------------------------------------------------


class RetryController:
    """Runs logical turns for sessions; the sole authority on retrying."""

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        resolver: PermissionResolver,
        config: Config,
        *,
        credentials: CredentialPool | None = None,
        compactor: Compactor | None = None,
        enforcer: CompletionEnforcer | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self.resolver = resolver  # swapped on config reload
        self._config = config
        self._retry: RetryConfig = config.retry
        if credentials is None:
            credentials = CredentialPool.from_config(config.llm, cooldown=config.retry.cooldown)
        self._credentials = credentials
        self._compactor = compactor or Compactor(
            provider,
            keep_recent=config.compaction.keep_recent,
            summary_max_tokens=config.compaction.summary_max_tokens,
        )
        self._enforcer = enforcer or CompletionEnforcer.from_config(config)
        self._sleep = sleep

    @property
    def credentials(self) -> CredentialPool:
        return self._credentials

    async def run_attempt(
        self,
        session: Session,
        text: str | None = None,
        *,
        images: Sequence[str] = (),
    ) -> FinalResult:
        """Run one logical turn for ``session``.

        Never raises for turn failures; they are returned as
        ``FinalResult.failure`` with a category and message.
        """
        result = FinalResult(session_id=session.id)
        if text is not None:
            session.messages.append(Message.user(text, images=list(images)))

        try:
            await self._loop(session, result)
        except TerminalFailure as e:
            _log.error("Turn failed for session %s: %s", session.id, e)
            result.failure = Failure(e.category, e.message)
        except TurnAborted:
            result.failure = Failure(ErrorCategory.ABORTED, "turn aborted by user")

        if result.failure is not None:
            session.emit(UpdateKind.ERROR, result.failure.to_dict())
        return result

    async def _loop(self, session: Session, result: FinalResult) -> None:
        agent = session.agent
        backoffs = 0
        overflow_compacted_at: int | None = None

        while True:
            if result.steps >= agent.max_steps:
                _log.info("Step limit (%d) reached for session %s", agent.max_steps, session.id)
                result.step_limit_reached = True
                return
            if session.abort.is_set():
                raise TurnAborted(session.id)

            try:
                step = await self._step(session)
            except ProviderError as e:
                if not e.category.retryable:
                    raise TerminalFailure(
                        e.category, e.message, cause=e, retries=len(result.retries)
                    ) from e
                if len(result.retries) >= self._retry.max_retries:
                    raise TerminalFailure(
                        e.category,
                        f"gave up after {len(result.retries)} retries: {e.message}",
                        cause=e,
                        retries=len(result.retries),
                    ) from e

                if e.category is ErrorCategory.CONTEXT_OVERFLOW:
                    if overflow_compacted_at == result.steps:
                        raise TerminalFailure(
                            e.category,
                            "context still too large after compaction",
                            cause=e,
                            retries=len(result.retries),
                        ) from e
                    overflow_compacted_at = result.steps

                action, delay = await self._recover(session, e, backoffs + 1)
                if action == "backoff":
                    backoffs += 1
                event = RetryEvent(
                    attempt=len(result.retries) + 1,
                    category=e.category,
                    message=e.message,
                    delay=delay,
                    action=action,
                )
                result.retries.append(event)
                _log.warning(
                    "Retry %d for session %s after %s (%s, %.1fs)",
                    event.attempt,
                    session.id,
                    e.category.value,
                    action,
                    delay,
                )
                session.emit(
                    UpdateKind.RETRY,
                    {
                        "attempt": event.attempt,
                        "category": e.category.value,
                        "action": action,
                        "delay": delay,
                        "message": e.message,
                    },
                )
                if delay > 0:
                    session.set_status(SessionStatus.RETRYING)
                    await self._wait(delay, session)
                    session.set_status(SessionStatus.BUSY)
                continue

            result.steps += 1
            result.message = step.message
            result.finish = step.finish
            session.pending_images.extend(step.images)

            # Only a length stop consults context occupancy
            tokens = self._context_tokens(session, step) if step.finish is FinishReason.LENGTH else 0
            decision = self._enforcer.decide(step, session.tasks, context_tokens=tokens)
            step.message.complete(step.finish.value)
            _log.debug("Step %d outcome: %s (%s)", result.steps, decision.outcome.value, decision.reason)

            match decision.outcome:
                case Outcome.CONTINUE:
                    continue
                case Outcome.COMPACT:
                    await self._compact(session)
                    continue
                case Outcome.STOP:
                    if decision.error_category is not None:
                        result.failure = Failure(decision.error_category, decision.reason)
                    return

    async def _step(self, session: Session) -> StepResult:
        """Prepare the prompt and process one model step."""
        agent = session.agent
        context = PermissionContext(
            agent=agent.name,
            provider=self._provider.provider_name,
            sender=session.sender,
            subagent=session.parent_id is not None,
        )
        # One immutable snapshot per model step
        ruleset = self.resolver.snapshot(context)
        tools = self._registry.resolve(agent, ruleset)

        images = session.take_pending_images()
        llm = self._config.llm
        request = ModelRequest(
            system_prompt=session.system_prompt,
            messages=to_provider_messages(sanitize(session.messages), images=images),
            tools=[t.spec() for t in tools],
            sampling=SamplingConfig(
                max_tokens=llm.max_tokens,
                temperature=llm.temperature,
                reasoning_effort=session.reasoning_effort,
            ),
            credential=self._credentials.current,
        )

        message = Message(role=Role.ASSISTANT, agent=agent.name)
        session.messages.append(message)
        processor = StreamProcessor(
            session.id,
            message,
            registry=self._registry,
            tools=tools,
            ruleset=ruleset,
            gate=session.gate,
            doom_loop=session.doom_loop,
            tasks=session.tasks,
            abort=session.abort,
            cwd=session.cwd,
            agent=agent.name,
            emit=session.emit,
            spawn_fn=session.spawn_fn,
            bash_timeout=self._config.tools.bash_timeout,
        )
        try:
            return await processor.process(self._provider.stream(request))
        except TurnAborted:
            message.complete("aborted")
            raise
        except ProviderError:
            self._discard(session, message, images)
            raise
        except Exception as e:
            self._discard(session, message, images)
            raise ProviderError(ErrorCategory.FATAL, f"{type(e).__name__}: {e}", cause=e) from e

    def _discard(self, session: Session, message: Message, images: list[str]) -> None:
        """Drop a failed step's message unless tools already ran in it."""
        session.pending_images[:0] = images
        if any(call.is_terminal for call in message.tool_calls()):
            message.complete("error")
        elif message in session.messages:
            session.messages.remove(message)

    async def _recover(
        self, session: Session, error: ProviderError, backoff_attempt: int
    ) -> tuple[str, float]:
        """Apply the category's recovery action. Returns (action, delay)."""
        pool = self._credentials
        match error.category:
            case ErrorCategory.RATE_LIMIT:
                current = pool.current
                if current is not None:
                    pool.park(current, error.retry_after)
                    if pool.rotate() is not None:
                        return "rotate", 0.0
                return "backoff", self._delay(backoff_attempt, error.retry_after)
            case ErrorCategory.AUTH:
                current = pool.current
                if current is None:
                    raise TerminalFailure(error.category, error.message, cause=error)
                pool.exclude(current)
                if pool.rotate() is None:
                    raise TerminalFailure(
                        error.category, f"no alternate credentials: {error.message}", cause=error
                    )
                return "rotate", 0.0
            case ErrorCategory.CONTEXT_OVERFLOW:
                await self._compact(session)
                return "compact", 0.0
            case ErrorCategory.CAPABILITY:
                lower = session.reasoning_effort.downgrade()
                if lower is None:
                    raise TerminalFailure(error.category, error.message, cause=error)
                _log.info(
                    "Reasoning effort %s unsupported; downgrading to %s",
                    session.reasoning_effort.value,
                    lower.value,
                )
                session.reasoning_effort = lower
                return "downgrade", 0.0
            case _:
                return "backoff", self._delay(backoff_attempt, error.retry_after)

    def _delay(self, attempt: int, retry_after: float | None) -> float:
        return backoff_delay(
            attempt,
            initial=self._retry.initial_delay,
            factor=self._retry.backoff_factor,
            maximum=self._retry.max_delay,
            retry_after=retry_after,
        )

    async def _wait(self, delay: float, session: Session) -> None:
        """Sleep for ``delay`` unless the session is aborted first."""
        sleeper = asyncio.ensure_future(self._sleep(delay))
        aborter = asyncio.ensure_future(session.abort.wait())
        try:
            await asyncio.wait({sleeper, aborter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            aborter.cancel()
        if session.abort.is_set():
            raise TurnAborted(session.id)

    async def _compact(self, session: Session) -> None:
        before = len(session.messages)
        try:
            session.messages[:] = await self._compactor.compact(
                session.messages, credential=self._credentials.current
            )
        except CompactionError as e:
            raise TerminalFailure(ErrorCategory.CONTEXT_OVERFLOW, str(e), cause=e) from e
        session.emit(
            UpdateKind.COMPACTED,
            {"messages_before": before, "messages_after": len(session.messages)},
        )

    def _context_tokens(self, session: Session, step: StepResult) -> int:
        reported = step.usage.input_tokens + step.usage.output_tokens
        if reported:
            return reported
        messages = to_provider_messages(sanitize(session.messages))
        return count_message_tokens(messages, session.system_prompt)


def initial_effort(config: Config) -> ReasoningEffort:
    return ReasoningEffort(config.llm.reasoning_effort)

