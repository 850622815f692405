"""Approval channel contract and the gate that applies it.

An ``ask`` resolution suspends only the tool call that triggered it. The gate
forwards an ``ApprovalRequest`` to the human-in-the-loop channel, waits up to
``timeout`` seconds, and applies the configured fallback on timeout. "Allow
always" answers become session grants that turn later ``ask`` resolutions for
the same (tool, pattern) into ``allow``; they never override a ``deny``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from agentcore.errors import PermissionDenied
from agentcore.logging import get_logger
from agentcore.session.permissions import Action

_log = get_logger("approval")


class ApprovalDecision(Enum):
    ALLOW_ONCE = "allow-once"
    ALLOW_ALWAYS = "allow-always"
    DENY = "deny"
    TIMEOUT = "timeout"


class ApprovalReason(Enum):
    RULESET = "ruleset"  # the ruleset resolved to ask
    DOOM_LOOP = "doom_loop"  # repeated identical call
    EXECUTION = "execution"  # a running tool asked about a further resource


@dataclass(frozen=True, slots=True)
class ApprovalRequest:
    """What the human is asked to approve."""

    session_id: str
    tool: str
    pattern: str
    args: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None
    agent: str | None = None
    reason: ApprovalReason = ApprovalReason.RULESET


@runtime_checkable
class ApprovalChannel(Protocol):
    """Human-in-the-loop collaborator."""

    async def request_approval(self, request: ApprovalRequest) -> ApprovalDecision: ...


class ApprovalGate:
    """Applies ask resolutions for one session.

    Grants are session-scoped and cleared with the session. A grant covers
    exactly the (tool, pattern) the human approved; the pattern is a literal,
    not a glob. Writes are serialized; reads from concurrent tool tasks take
    no lock since grants are only ever added.
    """

    def __init__(
        self,
        channel: ApprovalChannel | None,
        *,
        timeout: float = 120.0,
        timeout_action: Action = Action.DENY,
    ) -> None:
        self._channel = channel
        self._timeout = timeout
        self._timeout_action = timeout_action
        self._grants: set[tuple[str, str]] = set()
        self._lock = asyncio.Lock()

    @property
    def grants(self) -> frozenset[tuple[str, str]]:
        return frozenset(self._grants)

    def is_granted(self, tool: str, pattern: str) -> bool:
        return (tool, pattern) in self._grants

    async def grant(self, tool: str, pattern: str) -> None:
        async with self._lock:
            if self.is_granted(tool, pattern):
                return
            self._grants.add((tool, pattern))
        _log.info("Session grant added: %s %s", tool, pattern)

    def clear_grants(self) -> None:
        self._grants.clear()

    async def check(self, request: ApprovalRequest, action: Action) -> None:
        """Return if the call may proceed, raise ``PermissionDenied`` otherwise.

        ``action`` is the ruleset resolution. Doom-loop requests always ask,
        and are not satisfied by existing grants.
        """
        forced = request.reason is ApprovalReason.DOOM_LOOP
        if action is Action.DENY:
            raise PermissionDenied(request.tool, request.pattern)
        if action is Action.ALLOW and not forced:
            return
        if not forced and self.is_granted(request.tool, request.pattern):
            _log.debug("Ask satisfied by session grant: %s %s", request.tool, request.pattern)
            return

        decision = await self.request(request)
        match decision:
            case ApprovalDecision.ALLOW_ONCE:
                return
            case ApprovalDecision.ALLOW_ALWAYS:
                await self.grant(request.tool, request.pattern)
                return
            case ApprovalDecision.DENY:
                raise PermissionDenied(
                    request.tool, request.pattern, "rejected by user", user_rejected=True
                )
            case ApprovalDecision.TIMEOUT:
                if self._timeout_action is Action.ALLOW:
                    _log.warning("Approval timed out for %s; fallback allow", request.tool)
                    return
                raise PermissionDenied(
                    request.tool, request.pattern, "approval timed out", user_rejected=True
                )

    async def request(self, request: ApprovalRequest) -> ApprovalDecision:
        """Ask the channel, bounded by the timeout."""
        if self._channel is None:
            _log.warning("No approval channel; treating %s request as timed out", request.tool)
            return ApprovalDecision.TIMEOUT

        _log.info(
            "Requesting approval for %s on '%s' (%s)",
            request.tool,
            request.pattern,
            request.reason.value,
        )
        try:
            decision = await asyncio.wait_for(
                self._channel.request_approval(request), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            _log.warning("Approval for %s timed out after %ss", request.tool, self._timeout)
            return ApprovalDecision.TIMEOUT
        return decision
