"""Layered permission resolution for tool calls.

Rulesets are evaluated per (tool, pattern) where ``pattern`` is the call's
salient resource: a file path for ``read``, the literal command string for
``bash``, and so on. Layers are ordered from least to most specific:

    profile -> provider -> global -> agent -> sender -> subagent

The most specific layer that has a matching rule decides. Inside one layer
the most specific matching rule decides (named tool over tool glob over
``*``, then literal pattern over glob over ``*``); rules of equal
specificity that disagree resolve to the most restrictive action
(deny > ask > allow). With no match anywhere the configured default applies,
which is ``deny`` unless configured otherwise.

A merged ruleset is an immutable snapshot, built once per turn.
"""

from __future__ import annotations

import fnmatch

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from agentcore.logging import get_logger

if TYPE_CHECKING:
    from agentcore.config.schema import PermissionConfig, PermissionRuleConfig

_log = get_logger("session.permissions")

_GLOB_CHARS = frozenset("*?[")


class Action(Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"

    @property
    def restrictiveness(self) -> int:
        return _RESTRICTIVENESS[self]


_RESTRICTIVENESS = {Action.ALLOW: 0, Action.ASK: 1, Action.DENY: 2}


def most_restrictive(actions: Iterable[Action]) -> Action:
    return max(actions, key=lambda a: a.restrictiveness)


class LayerScope(Enum):
    """Ruleset layers, least to most specific."""

    PROFILE = 0
    PROVIDER = 1
    GLOBAL = 2
    AGENT = 3
    SENDER = 4
    SUBAGENT = 5


def _is_glob(text: str) -> bool:
    return any(c in _GLOB_CHARS for c in text)


def _literal_chars(text: str) -> int:
    return sum(1 for c in text if c not in _GLOB_CHARS)


@dataclass(frozen=True, slots=True)
class PermissionRule:
    """A single rule: which tool, which resource pattern, what to do."""

    subject: str  # tool name, tool glob (e.g. "mcp_*"), or "*"
    action: Action
    pattern: str = "*"

    def matches(self, tool: str, pattern: str) -> bool:
        return fnmatch.fnmatch(tool, self.subject) and fnmatch.fnmatch(pattern, self.pattern)

    @property
    def specificity(self) -> tuple[int, int, int]:
        """Sort key; larger is more specific."""
        if self.subject == "*":
            subject_rank = 0
        elif _is_glob(self.subject):
            subject_rank = 1
        else:
            subject_rank = 2

        if self.pattern == "*":
            return (subject_rank, 0, 0)
        if _is_glob(self.pattern):
            return (subject_rank, 1, _literal_chars(self.pattern))
        return (subject_rank, 2, len(self.pattern))

    @classmethod
    def from_config(cls, rule: PermissionRuleConfig) -> PermissionRule:
        return cls(subject=rule.tool, pattern=rule.pattern, action=Action(rule.action))


@dataclass(frozen=True, slots=True)
class Ruleset:
    """An ordered collection of rules belonging to one layer."""

    scope: LayerScope
    rules: tuple[PermissionRule, ...] = ()
    name: str = ""

    def match(self, tool: str, pattern: str) -> PermissionRule | None:
        """Find the deciding rule in this layer, or None if nothing matches."""
        matching = [r for r in self.rules if r.matches(tool, pattern)]
        if not matching:
            return None
        top = max(r.specificity for r in matching)
        candidates = [r for r in matching if r.specificity == top]
        # Equal specificity: deny wins over ask wins over allow
        return max(candidates, key=lambda r: r.action.restrictiveness)

    def mentions(self, tool: str) -> bool:
        return any(fnmatch.fnmatch(tool, r.subject) for r in self.rules)

    def with_rule(self, rule: PermissionRule) -> Ruleset:
        return Ruleset(scope=self.scope, rules=(*self.rules, rule), name=self.name)


@dataclass(frozen=True, slots=True)
class Resolution:
    """Outcome of resolving one (tool, pattern)."""

    action: Action
    rule: PermissionRule | None = None
    scope: LayerScope | None = None
    pattern: str = "*"


@dataclass(frozen=True, slots=True)
class MergedRuleset:
    """Immutable snapshot of every applicable layer for one turn."""

    layers: tuple[Ruleset, ...] = ()
    default: Action = Action.DENY

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.layers, key=lambda r: r.scope.value))
        object.__setattr__(self, "layers", ordered)

    def resolve(self, tool: str, pattern: str = "*") -> Resolution:
        for layer in reversed(self.layers):
            rule = layer.match(tool, pattern)
            if rule is not None:
                return Resolution(rule.action, rule, layer.scope, pattern)
        return Resolution(self.default, None, None, pattern)

    def resolve_all(self, tool: str, patterns: Iterable[str]) -> Resolution:
        """Resolve several patterns; the most restrictive outcome wins."""
        resolutions = [self.resolve(tool, p) for p in patterns] or [self.resolve(tool)]
        return max(resolutions, key=lambda r: r.action.restrictiveness)

    def is_disabled(self, tool: str) -> bool:
        """True when the tool is denied for every pattern.

        A layer with a ``*``-pattern rule for the tool decides every pattern,
        so lower layers are never reached. The tool is hidden when that rule
        denies and no more specific rule in the layer lets anything through.
        """
        for layer in reversed(self.layers):
            rules = [r for r in layer.rules if fnmatch.fnmatch(tool, r.subject)]
            if not rules:
                continue
            catch_all = [r for r in rules if r.pattern == "*"]
            if not catch_all:
                if any(r.action is not Action.DENY for r in rules):
                    return False
                continue
            top = max(r.specificity for r in catch_all)
            if not any(r.action is Action.DENY for r in catch_all if r.specificity == top):
                return False
            return all(r.action is Action.DENY for r in rules if r.specificity > top)
        return self.default is Action.DENY

    def with_layer(self, ruleset: Ruleset) -> MergedRuleset:
        return MergedRuleset(layers=(*self.layers, ruleset), default=self.default)


def resolve(merged: MergedRuleset, tool: str, pattern: str = "*") -> Action:
    """Pure resolution helper: allow, deny or ask."""
    return merged.resolve(tool, pattern).action


@dataclass(frozen=True, slots=True)
class PermissionContext:
    """Who is asking; selects which configured layers apply."""

    agent: str = "build"
    provider: str | None = None
    sender: str | None = None
    subagent: bool = False


@dataclass
class PermissionResolver:
    """Builds merged snapshots from configuration.

    Configured layers are immutable; runtime additions ("allow always") are
    passed in per snapshot by the session that owns them.
    """

    default: Action = Action.DENY
    profile: tuple[PermissionRule, ...] = ()
    provider: dict[str, tuple[PermissionRule, ...]] = field(default_factory=dict)
    global_rules: tuple[PermissionRule, ...] = ()
    agents: dict[str, tuple[PermissionRule, ...]] = field(default_factory=dict)
    senders: dict[str, tuple[PermissionRule, ...]] = field(default_factory=dict)
    subagent: tuple[PermissionRule, ...] = ()

    @classmethod
    def from_config(cls, config: PermissionConfig | None) -> PermissionResolver:
        if config is None:
            return cls()

        def convert(rules: list[PermissionRuleConfig]) -> tuple[PermissionRule, ...]:
            return tuple(PermissionRule.from_config(r) for r in rules)

        return cls(
            default=Action(config.default),
            profile=convert(config.profile),
            provider={k: convert(v) for k, v in config.provider.items()},
            global_rules=convert(config.global_rules),
            agents={k: convert(v) for k, v in config.agents.items()},
            senders={k: convert(v) for k, v in config.senders.items()},
            subagent=convert(config.subagent),
        )

    def snapshot(
        self,
        context: PermissionContext,
        extra_layers: Iterable[Ruleset] = (),
    ) -> MergedRuleset:
        """Merge every layer that applies to ``context``."""
        layers: list[Ruleset] = [Ruleset(LayerScope.PROFILE, self.profile, "profile")]
        if context.provider and context.provider in self.provider:
            layers.append(
                Ruleset(LayerScope.PROVIDER, self.provider[context.provider], context.provider)
            )
        layers.append(Ruleset(LayerScope.GLOBAL, self.global_rules, "global"))
        if context.agent in self.agents:
            layers.append(Ruleset(LayerScope.AGENT, self.agents[context.agent], context.agent))
        if context.sender and context.sender in self.senders:
            layers.append(
                Ruleset(LayerScope.SENDER, self.senders[context.sender], context.sender)
            )
        if context.subagent:
            layers.append(Ruleset(LayerScope.SUBAGENT, self.subagent, "subagent"))
        layers.extend(extra_layers)

        merged = MergedRuleset(
            layers=tuple(layer for layer in layers if layer.rules),
            default=self.default,
        )
        _log.debug(
            "Permission snapshot for %s: %d layers, default=%s",
            context.agent,
            len(merged.layers),
            merged.default.value,
        )
        return merged
