"""Sessions and the manager that owns them.

A ``Session`` is the explicit state every turn operates on: history, task
list, approval grants, abort signal. It processes one turn at a time; a
prompt that arrives mid-turn waits in the session lane.

Sub-sessions hold a ``parent_id``. The parent only ever sees a
``SubsessionHandle``, whose result is the child's ``FinalResult``.
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any

from agentcore.config.loader import DEFAULT_AGENTS, get_config, on_config_reload
from agentcore.config.paths import get_project_data_dir
from agentcore.core.llm.litellm_provider import create_provider
from agentcore.core.prompts import build_system_prompt
from agentcore.errors import AgentCoreError
from agentcore.logging import get_logger
from agentcore.session.approval import ApprovalChannel, ApprovalGate
from agentcore.session.doom_loop import DoomLoopDetector
from agentcore.session.message import Message
from agentcore.session.permissions import Action, PermissionResolver
from agentcore.session.protocols import FinalResult, SessionStatus, SessionUpdate, UpdateKind
from agentcore.session.retry import CredentialPool, RetryController, SleepFn, initial_effort
from agentcore.session.todo import TaskListStore
from agentcore.tools.builtin import builtin_tools
from agentcore.tools.registry import SpawnFn, ToolRegistry

if TYPE_CHECKING:
    from agentcore.config.schema import AgentConfig, Config
    from agentcore.core.llm.provider import LLMProvider, ReasoningEffort

log = get_logger("session")


class Session:
    """One conversation with an agent."""

    def __init__(
        self,
        session_id: str,
        cwd: str,
        agent: AgentConfig,
        controller: RetryController,
        gate: ApprovalGate,
        *,
        system_prompt: str,
        reasoning_effort: ReasoningEffort,
        doom_loop_threshold: int = 3,
        parent_id: str | None = None,
        sender: str | None = None,
        spawn_fn: SpawnFn | None = None,
    ) -> None:
        self.id = session_id
        self.cwd = cwd
        self.agent = agent
        self.parent_id = parent_id
        self.sender = sender
        self.system_prompt = system_prompt
        self.reasoning_effort = reasoning_effort
        self.spawn_fn = spawn_fn
        self.gate = gate
        self.messages: list[Message] = []
        self.tasks = TaskListStore()
        self.doom_loop = DoomLoopDetector(doom_loop_threshold)
        self.abort = asyncio.Event()
        self.pending_images: list[str] = []
        self.status = SessionStatus.IDLE
        self.created_at = time.time()

        self._controller = controller
        self._lane = asyncio.Lock()
        self._subscribers: list[asyncio.Queue[SessionUpdate | None]] = []
        self._closed = False

    def __repr__(self) -> str:
        return f"<Session {self.id} agent={self.agent.name} {self.status.value}>"

    @property
    def session_id(self) -> str:
        return self.id

    @property
    def busy(self) -> bool:
        return self._lane.locked()

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def emit(self, kind: UpdateKind, payload: dict[str, Any] | None = None) -> None:
        update = SessionUpdate(kind=kind, session_id=self.id, payload=payload or {})
        for queue in self._subscribers:
            queue.put_nowait(update)

    def subscribe(self) -> AsyncIterator[SessionUpdate]:
        """Stream of updates from now until the session closes."""
        queue: asyncio.Queue[SessionUpdate | None] = asyncio.Queue()
        self._subscribers.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue[SessionUpdate | None]) -> AsyncIterator[SessionUpdate]:
        try:
            while True:
                update = await queue.get()
                if update is None:
                    return
                yield update
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def set_status(self, status: SessionStatus) -> None:
        if status is self.status:
            return
        self.status = status
        self.emit(UpdateKind.STATUS_CHANGED, {"status": status.value})

    # -------------------------------------------------------------------------
    # Turns
    # -------------------------------------------------------------------------

    async def prompt(self, text: str, *, images: list[str] | None = None) -> FinalResult:
        """Run a turn for ``text``; queued behind any turn in flight."""
        if self._closed:
            raise AgentCoreError(f"session {self.id} is closed")
        if self._lane.locked():
            log.debug("Session %s busy; input queued", self.id)

        async with self._lane:
            self.abort.clear()
            self.set_status(SessionStatus.BUSY)
            try:
                result = await self._controller.run_attempt(self, text, images=images or ())
            finally:
                self.set_status(SessionStatus.IDLE)
            self.emit(
                UpdateKind.TURN_FINISHED,
                {
                    "finish": result.finish.value,
                    "steps": result.steps,
                    "step_limit_reached": result.step_limit_reached,
                    "failure": result.failure.to_dict() if result.failure else None,
                },
            )
            return result

    def take_pending_images(self) -> list[str]:
        images, self.pending_images = self.pending_images, []
        return images

    def cancel(self) -> None:
        """Abort the turn in flight, if any."""
        self.abort.set()

    def close(self) -> None:
        self._closed = True
        self.abort.set()
        self.gate.clear_grants()
        for queue in self._subscribers:
            queue.put_nowait(None)


class SubsessionHandle:
    """Parent-side view of a delegated sub-session."""

    def __init__(
        self,
        session_id: str,
        parent_id: str,
        task: asyncio.Task[FinalResult],
        cancel: Callable[[], None],
    ) -> None:
        self.session_id = session_id
        self.parent_id = parent_id
        self._task = task
        self._cancel = cancel

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> FinalResult:
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        self._cancel()


class SessionManager:
    """Creates sessions and wires them to the shared turn machinery."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        provider: LLMProvider | None = None,
        approval: ApprovalChannel | None = None,
        registry: ToolRegistry | None = None,
        credentials: CredentialPool | None = None,
        cwd: str | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Initialize the session manager.

        Args:
            config: Configuration; the cached global config if not provided
            provider: LLM provider; a LiteLLMProvider for ``llm.model`` if not provided
            approval: Human-in-the-loop channel for ``ask`` resolutions
            registry: Tool registry; built-ins plus configured extensions if not provided
            credentials: Credential pool; built from ``llm.credentials`` if not provided
            cwd: Directory for stored tool output when ``tools.output_dir`` is unset
            sleep: Backoff sleep, replaceable in tests
        """
        self._config = config or get_config()
        llm = self._config.llm
        if provider is None:
            kwargs: dict[str, Any] = {"api_base": llm.api_base} if llm.api_base else {}
            provider = create_provider(llm.model, **kwargs) if llm.model else create_provider(**kwargs)
        self._provider = provider
        self._approval = approval
        if registry is None:
            output_dir = get_project_data_dir(cwd or os.getcwd()) / "tool-output"
            registry = ToolRegistry.from_config(
                self._config.tools, builtin_tools(), output_dir=str(output_dir)
            )
        self._registry = registry
        self._controller = RetryController(
            provider,
            registry,
            PermissionResolver.from_config(self._config.permission),
            self._config,
            credentials=credentials,
            sleep=sleep,
        )
        self._sessions: dict[str, Session] = {}
        self._handles: dict[str, SubsessionHandle] = {}
        self._unregister_reload = on_config_reload(self._on_config_reload)

    @property
    def config(self) -> Config:
        return self._config

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def controller(self) -> RetryController:
        return self._controller

    def _on_config_reload(self, new_config: Config) -> None:
        self._controller.resolver = PermissionResolver.from_config(new_config.permission)
        log.debug("Permission rules reloaded for %d sessions", len(self._sessions))

    def _agent_config(self, name: str) -> AgentConfig:
        agent = self._config.get_agent(name)
        if agent is None:
            agent = next((a for a in DEFAULT_AGENTS if a.name == name), None)
        if agent is None:
            raise AgentCoreError(f"Unknown agent '{name}'")
        return agent

    def _new_session(
        self,
        cwd: str,
        agent: AgentConfig,
        *,
        session_id: str | None = None,
        parent_id: str | None = None,
        sender: str | None = None,
    ) -> Session:
        session_id = session_id or f"ses_{uuid.uuid4().hex[:12]}"
        if session_id in self._sessions:
            raise AgentCoreError(f"Session {session_id} already exists")

        approval = self._config.approval
        gate = ApprovalGate(
            self._approval,
            timeout=approval.timeout,
            timeout_action=Action(approval.timeout_action),
        )
        session = Session(
            session_id,
            cwd,
            agent,
            self._controller,
            gate,
            system_prompt=build_system_prompt(agent, cwd, subagent=parent_id is not None),
            reasoning_effort=initial_effort(self._config),
            doom_loop_threshold=self._config.tools.doom_loop_threshold,
            parent_id=parent_id,
            sender=sender,
        )

        async def delegate(prompt: str, agent_name: str, description: str) -> FinalResult:
            handle = self.spawn_subsession(session_id, prompt, agent_name, description)
            try:
                return await handle.result()
            except asyncio.CancelledError:
                handle.cancel()
                raise

        session.spawn_fn = delegate
        self._sessions[session_id] = session
        log.info("Created session %s (agent=%s, parent=%s)", session_id, agent.name, parent_id)
        return session

    async def create_session(
        self,
        cwd: str,
        *,
        agent: str = "build",
        session_id: str | None = None,
        sender: str | None = None,
    ) -> Session:
        """Create a top-level session.

        Args:
            cwd: Working directory for the session
            agent: Agent name from config (or a built-in agent)
            session_id: Optional specific ID; generated if not provided
            sender: Sender or group id selecting the sender permission layer
        """
        return self._new_session(
            cwd, self._agent_config(agent), session_id=session_id, sender=sender
        )

    def spawn_subsession(
        self,
        parent_id: str,
        prompt: str,
        agent: str = "general",
        description: str = "",
    ) -> SubsessionHandle:
        """Start a child session on ``prompt`` without waiting for it."""
        parent = self._sessions.get(parent_id)
        if parent is None:
            raise AgentCoreError(f"Unknown parent session {parent_id}")
        child = self._new_session(
            parent.cwd, self._agent_config(agent), parent_id=parent_id, sender=parent.sender
        )
        log.info("Delegating to sub-session %s: %s", child.id, description or prompt[:60])
        task = asyncio.create_task(child.prompt(prompt))
        handle = SubsessionHandle(child.id, parent_id, task, child.cancel)
        self._handles[child.id] = handle
        # The handle keeps the result; the child session is released once done
        task.add_done_callback(lambda _: self._release(child.id))
        return handle

    async def get_session(self, session_id: str) -> Session | None:
        """Get an existing session by ID."""
        return self._sessions.get(session_id)

    async def list_sessions(self) -> list[str]:
        """List all active session IDs."""
        return list(self._sessions.keys())

    async def close_session(self, session_id: str) -> None:
        """Close a session and every sub-session below it."""
        self._release(session_id)

    def _release(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        for child_id in [sid for sid, s in self._sessions.items() if s.parent_id == session_id]:
            self._release(child_id)
        self._handles.pop(session_id, None)
        session.close()
        log.debug("Released session %s", session_id)

    async def close(self) -> None:
        for session_id in [sid for sid, s in self._sessions.items() if s.parent_id is None]:
            await self.close_session(session_id)
        self._unregister_reload()
