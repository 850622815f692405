"""Configuration schema dataclasses for agentcore.

All fields have defaults so partial configs from several files can be
deep-merged before conversion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class CredentialProfileConfig:
    """One API credential the retry controller may rotate to.

    Example config.yaml:
        llm:
          credentials:
            - name: primary
              api_key_env: ANTHROPIC_API_KEY
            - name: backup
              api_key_env: ANTHROPIC_API_KEY_BACKUP
    """

    name: str
    api_key_env: str | None = None  # Env var (or .env.secrets key) holding the key
    api_key: str | None = None  # Literal key; prefer api_key_env
    api_base: str | None = None


@dataclass
class LLMConfig:
    """Model and sampling configuration."""

    model: str | None = None  # litellm model id, e.g. "claude-sonnet-4-5-20250929"
    api_base: str | None = None
    max_tokens: int = 4096
    temperature: float | None = None
    reasoning_effort: str = "off"  # off, low, medium, high
    context_limit: int = 200_000  # Context window in tokens
    credentials: list[CredentialProfileConfig] = field(default_factory=list)


@dataclass
class PermissionRuleConfig:
    """A single permission rule as written in config."""

    tool: str  # Tool name, glob, or "*"
    pattern: str = "*"  # Glob matched against the call's salient pattern
    action: str = "ask"  # allow, deny, ask


@dataclass
class PermissionConfig:
    """Layered permission rulesets, least to most specific.

    Example config.yaml:
        permission:
          default: deny
          global:
            - {tool: "*", action: ask}
            - {tool: read, action: allow}
          agents:
            plan:
              - {tool: bash, action: deny}
    """

    default: str = "deny"
    profile: list[PermissionRuleConfig] = field(default_factory=list)
    provider: dict[str, list[PermissionRuleConfig]] = field(default_factory=dict)
    global_rules: list[PermissionRuleConfig] = field(default_factory=list)
    agents: dict[str, list[PermissionRuleConfig]] = field(default_factory=dict)
    senders: dict[str, list[PermissionRuleConfig]] = field(default_factory=dict)
    subagent: list[PermissionRuleConfig] = field(default_factory=list)


@dataclass
class ApprovalConfig:
    """Human-in-the-loop approval behaviour."""

    timeout: float = 120.0  # Seconds before the fallback decision applies
    timeout_action: str = "deny"  # allow or deny
    continue_on_deny: bool = False  # Keep looping after a user rejection


@dataclass
class RetryConfig:
    """Retry/backoff limits for provider failures."""

    max_retries: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    cooldown: float = 60.0  # Seconds a rate-limited credential stays parked


@dataclass
class CompactionConfig:
    """History summarisation settings."""

    threshold: float = 0.9  # Fraction of context_limit that triggers compaction
    keep_recent: int = 4  # Messages kept verbatim
    summary_max_tokens: int = 1024


@dataclass
class ToolsConfig:
    """Tool execution settings."""

    max_output_lines: int = 2000
    max_output_bytes: int = 50 * 1024
    output_dir: str | None = None  # Default: <cwd>/.agentcore/tool-output
    extensions: list[str] = field(default_factory=list)  # "module:attribute"
    doom_loop_threshold: int = 3
    bash_timeout: float = 120.0


@dataclass
class AgentConfig:
    """An agent definition.

    ``tools`` is an allow list (None means every registered tool);
    ``disabled_tools`` is subtracted afterwards.
    """

    name: str
    mode: str = "primary"  # primary or subagent
    prompt: str = ""
    description: str = ""
    tools: list[str] | None = None
    disabled_tools: list[str] = field(default_factory=list)
    max_steps: int = 50


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, overrides level
    file: str | None = None


@dataclass
class Config:
    """Root configuration object."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    permission: PermissionConfig = field(default_factory=PermissionConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    agents: list[AgentConfig] = field(default_factory=list)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Unknown top-level sections, kept for collaborators
    extra: dict[str, Any] = field(default_factory=dict)

    def get_agent(self, name: str) -> AgentConfig | None:
        for agent in self.agents:
            if agent.name == name:
                return agent
        return None
