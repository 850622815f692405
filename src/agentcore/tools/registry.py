"""Tool contracts and the name-keyed registry.

Every tool is registered explicitly as a ``ToolContract`` carrying a pydantic
model for its parameters. Arguments are validated before execution; a schema
violation becomes ``InvalidArguments`` and the tool function never runs.
"""

from __future__ import annotations

import asyncio
import importlib
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from agentcore.core.llm.provider import ToolSpec
from agentcore.errors import AgentCoreError, InvalidArguments, ToolNotFound
from agentcore.logging import get_logger
from agentcore.tools.truncation import OutputStore, truncate_output

if TYPE_CHECKING:
    from agentcore.config.schema import AgentConfig, ToolsConfig
    from agentcore.session.permissions import MergedRuleset
    from agentcore.session.protocols import FinalResult
    from agentcore.session.todo import TaskListStore

_log = get_logger("tools")

# (tool, pattern, args) -> None, raises PermissionDenied
AskFn = Callable[[str, str, dict[str, Any]], Awaitable[None]]
# (prompt, agent, description) -> result of the delegated session
SpawnFn = Callable[[str, str, str], Awaitable["FinalResult"]]


@dataclass
class ToolResult:
    """What a tool returns.

    Attributes:
        title: Short label shown next to the call
        output: Text handed back to the model
        metadata: Structured details for the presentation layer
        attachments: Extra content, e.g. ``{"type": "image", "url": "data:..."}``
        truncated: Set by the registry when output was capped
    """

    output: str = ""
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    attachments: list[dict[str, Any]] = field(default_factory=list)
    truncated: bool = False


@dataclass
class ToolContext:
    """Per-call execution context handed to tool functions."""

    session_id: str
    call_id: str
    agent: str
    cwd: str
    tasks: TaskListStore
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    bash_timeout: float = 120.0
    ask_fn: AskFn | None = None
    spawn_fn: SpawnFn | None = None

    async def ask(self, tool: str, pattern: str, args: dict[str, Any] | None = None) -> None:
        """Request permission for a further resource while executing.

        Goes through the same resolver and approval gate as the call itself.
        Raises ``PermissionDenied`` when refused.
        """
        if self.ask_fn is None:
            raise AgentCoreError("permission requests are not available in this context")
        await self.ask_fn(tool, pattern, args or {})

    async def spawn(self, prompt: str, agent: str, description: str = "") -> FinalResult:
        if self.spawn_fn is None:
            raise AgentCoreError("sub-sessions are not available in this context")
        return await self.spawn_fn(prompt, agent, description)


ExecuteFn = Callable[[Any, ToolContext], Awaitable[ToolResult]]
PatternFn = Callable[[Any, ToolContext], list[str]]


@dataclass(frozen=True)
class ToolContract:
    """A tool: name, description, parameter model, execute function.

    ``patterns`` maps validated parameters to the salient resources used for
    permission resolution (a path, a command line). Defaults to ``["*"]``.
    """

    name: str
    description: str
    parameters: type[BaseModel]
    execute: ExecuteFn
    patterns: PatternFn | None = None

    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            parameters=self.parameters.model_json_schema(),
        )

    def validate(self, args: dict[str, Any] | None) -> BaseModel:
        try:
            return self.parameters.model_validate(args or {})
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in e.errors()
            )
            raise InvalidArguments(self.name, details) from e

    def salient_patterns(self, params: BaseModel, ctx: ToolContext) -> list[str]:
        if self.patterns is None:
            return ["*"]
        return self.patterns(params, ctx) or ["*"]


class ToolRegistry:
    """Name-keyed registry of built-in and extension tools.

    Built-ins always win a name collision; the colliding extension entry is
    dropped with a warning.
    """

    def __init__(
        self,
        builtins: Iterable[ToolContract] = (),
        *,
        max_output_lines: int = 2000,
        max_output_bytes: int = 50 * 1024,
        output_store: OutputStore | None = None,
    ) -> None:
        self._tools: dict[str, ToolContract] = {}
        self._builtin_names: set[str] = set()
        self._max_lines = max_output_lines
        self._max_bytes = max_output_bytes
        self._store = output_store
        for contract in builtins:
            self.register(contract, builtin=True)

    @classmethod
    def from_config(
        cls,
        config: ToolsConfig,
        builtins: Iterable[ToolContract],
        *,
        output_dir: str | None = None,
    ) -> ToolRegistry:
        directory = config.output_dir or output_dir
        registry = cls(
            builtins,
            max_output_lines=config.max_output_lines,
            max_output_bytes=config.max_output_bytes,
            output_store=OutputStore(directory) if directory else None,
        )
        registry.load_extensions(config.extensions)
        return registry

    def register(self, contract: ToolContract, *, builtin: bool = False) -> bool:
        """Register a tool. Returns False if it was dropped."""
        name = contract.name
        if name in self._tools:
            if name in self._builtin_names:
                _log.warning("Extension tool '%s' collides with a built-in; dropped", name)
            else:
                _log.warning("Tool '%s' is already registered; dropped", name)
            return False
        self._tools[name] = contract
        if builtin:
            self._builtin_names.add(name)
        return True

    def unregister(self, name: str) -> bool:
        if name in self._builtin_names:
            return False
        return self._tools.pop(name, None) is not None

    def load_extensions(self, entries: Iterable[str]) -> int:
        """Import ``module:attribute`` entries and register what they yield.

        The attribute may be a ``ToolContract``, an iterable of them, or a
        zero-argument callable returning either.
        """
        loaded = 0
        for entry in entries:
            module_name, _, attr = entry.partition(":")
            if not module_name or not attr:
                _log.warning("Invalid tool extension entry '%s' (expected module:attribute)", entry)
                continue
            try:
                target = getattr(importlib.import_module(module_name), attr)
            except (ImportError, AttributeError) as e:
                _log.warning("Failed to load tool extension '%s': %s", entry, e)
                continue

            if callable(target) and not isinstance(target, ToolContract):
                target = target()
            contracts = [target] if isinstance(target, ToolContract) else list(target)
            for contract in contracts:
                if not isinstance(contract, ToolContract):
                    _log.warning("Extension '%s' yielded a non-tool object: %r", entry, contract)
                    continue
                if self.register(contract):
                    loaded += 1
        if loaded:
            _log.info("Loaded %d extension tool(s)", loaded)
        return loaded

    def get(self, name: str) -> ToolContract | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def is_builtin(self, name: str) -> bool:
        return name in self._builtin_names

    def resolve(
        self,
        agent: AgentConfig,
        ruleset: MergedRuleset | None = None,
    ) -> list[ToolContract]:
        """Effective tool set for an agent context.

        Applies the agent's allow list and disabled list, then hides tools
        the ruleset denies outright.
        """
        tools = []
        for name, contract in self._tools.items():
            if agent.tools is not None and name not in agent.tools:
                continue
            if name in agent.disabled_tools:
                continue
            if ruleset is not None and ruleset.is_disabled(name):
                continue
            tools.append(contract)
        return tools

    async def execute(
        self,
        name: str,
        args: dict[str, Any] | None,
        ctx: ToolContext,
        *,
        contract: ToolContract | None = None,
    ) -> ToolResult:
        """Validate and run a tool, capping its output."""
        contract = contract or self._tools.get(name)
        if contract is None:
            raise ToolNotFound(name, self.names())
        params = contract.validate(args)
        result = await contract.execute(params, ctx)
        return self.truncate(result, name)

    def truncate(self, result: ToolResult, name: str) -> ToolResult:
        capped = truncate_output(
            result.output,
            max_lines=self._max_lines,
            max_bytes=self._max_bytes,
            store=self._store,
            name=name,
        )
        if capped.truncated:
            result.output = capped.content
            result.truncated = True
            if capped.output_path is not None:
                result.metadata["output_path"] = str(capped.output_path)
        return result
