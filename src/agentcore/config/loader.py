"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching with reload support
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from agentcore.config.merge import merge_configs
from agentcore.config.paths import get_config_paths
from agentcore.config.schema import (
    AgentConfig,
    ApprovalConfig,
    CompactionConfig,
    Config,
    CredentialProfileConfig,
    LLMConfig,
    LoggingConfig,
    PermissionConfig,
    PermissionRuleConfig,
    RetryConfig,
    ToolsConfig,
)

_log = logging.getLogger("agentcore.config")

_cached_config: Config | None = None

_reload_callbacks: list[Callable[[Config], None]] = []

_VALID_ACTIONS = ("allow", "deny", "ask")
_VALID_EFFORTS = ("off", "low", "medium", "high")

# Agents that always exist unless the config redefines them
DEFAULT_AGENTS: tuple[AgentConfig, ...] = (
    AgentConfig(
        name="build",
        mode="primary",
        description="Default agent with the full tool set.",
    ),
    AgentConfig(
        name="general",
        mode="subagent",
        description="Delegated worker for multi-step research and edits.",
        disabled_tools=["task"],
        max_steps=25,
    ),
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build config dict from environment variables (highest priority).

    API keys are not read here; credential profiles resolve them lazily
    through fetch_secret().
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("AGENTCORE_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    model = os.environ.get("AGENTCORE_MODEL")
    if model:
        overrides.setdefault("llm", {})["model"] = model

    return overrides


def _parse_rules(data: Any) -> list[PermissionRuleConfig]:
    rules: list[PermissionRuleConfig] = []
    if not isinstance(data, list):
        return rules
    for entry in data:
        if not isinstance(entry, dict) or not entry.get("tool"):
            continue
        action = str(entry.get("action", "ask")).lower()
        if action not in _VALID_ACTIONS:
            _log.warning("Invalid permission action '%s', defaulting to 'ask'", action)
            action = "ask"
        rules.append(
            PermissionRuleConfig(
                tool=str(entry["tool"]),
                pattern=str(entry.get("pattern", "*")),
                action=action,
            )
        )
    return rules


def _parse_rule_map(data: Any) -> dict[str, list[PermissionRuleConfig]]:
    if not isinstance(data, dict):
        return {}
    return {str(key): _parse_rules(value) for key, value in data.items()}


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass."""
    # LLM
    llm_data = data.get("llm", {})
    credentials = [
        CredentialProfileConfig(
            name=c.get("name", ""),
            api_key_env=c.get("api_key_env"),
            api_key=c.get("api_key"),
            api_base=c.get("api_base"),
        )
        for c in llm_data.get("credentials", [])
        if isinstance(c, dict) and c.get("name")
    ]
    effort = str(llm_data.get("reasoning_effort", "off")).lower()
    if effort not in _VALID_EFFORTS:
        _log.warning("Invalid reasoning_effort '%s', defaulting to 'off'", effort)
        effort = "off"
    llm = LLMConfig(
        model=llm_data.get("model"),
        api_base=llm_data.get("api_base"),
        max_tokens=llm_data.get("max_tokens", 4096),
        temperature=llm_data.get("temperature"),
        reasoning_effort=effort,
        context_limit=llm_data.get("context_limit", 200_000),
        credentials=credentials,
    )

    # Permission layers
    perm_data = data.get("permission", {})
    default_action = str(perm_data.get("default", "deny")).lower()
    if default_action not in _VALID_ACTIONS:
        _log.warning("Invalid default permission '%s', defaulting to 'deny'", default_action)
        default_action = "deny"
    permission = PermissionConfig(
        default=default_action,
        profile=_parse_rules(perm_data.get("profile")),
        provider=_parse_rule_map(perm_data.get("provider")),
        global_rules=_parse_rules(perm_data.get("global")),
        agents=_parse_rule_map(perm_data.get("agents")),
        senders=_parse_rule_map(perm_data.get("senders")),
        subagent=_parse_rules(perm_data.get("subagent")),
    )

    approval_data = data.get("approval", {})
    approval = ApprovalConfig(
        timeout=float(approval_data.get("timeout", 120.0)),
        timeout_action=approval_data.get("timeout_action", "deny"),
        continue_on_deny=bool(approval_data.get("continue_on_deny", False)),
    )

    retry_data = data.get("retry", {})
    retry = RetryConfig(
        max_retries=retry_data.get("max_retries", 5),
        initial_delay=retry_data.get("initial_delay", 1.0),
        max_delay=retry_data.get("max_delay", 30.0),
        backoff_factor=retry_data.get("backoff_factor", 2.0),
        cooldown=retry_data.get("cooldown", 60.0),
    )

    compaction_data = data.get("compaction", {})
    compaction = CompactionConfig(
        threshold=compaction_data.get("threshold", 0.9),
        keep_recent=compaction_data.get("keep_recent", 4),
        summary_max_tokens=compaction_data.get("summary_max_tokens", 1024),
    )

    tools_data = data.get("tools", {})
    tools = ToolsConfig(
        max_output_lines=tools_data.get("max_output_lines", 2000),
        max_output_bytes=tools_data.get("max_output_bytes", 50 * 1024),
        output_dir=tools_data.get("output_dir"),
        extensions=[e for e in tools_data.get("extensions", []) if isinstance(e, str)],
        doom_loop_threshold=tools_data.get("doom_loop_threshold", 3),
        bash_timeout=tools_data.get("bash_timeout", 120.0),
    )

    agents = [
        AgentConfig(
            name=a["name"],
            mode=a.get("mode", "primary"),
            prompt=a.get("prompt", ""),
            description=a.get("description", ""),
            tools=a.get("tools"),
            disabled_tools=a.get("disabled_tools", []),
            max_steps=a.get("max_steps", 50),
        )
        for a in data.get("agents", [])
        if isinstance(a, dict) and a.get("name")
    ]
    configured = {a.name for a in agents}
    for default_agent in DEFAULT_AGENTS:
        if default_agent.name not in configured:
            agents.append(
                AgentConfig(
                    name=default_agent.name,
                    mode=default_agent.mode,
                    description=default_agent.description,
                    disabled_tools=list(default_agent.disabled_tools),
                    max_steps=default_agent.max_steps,
                )
            )

    log_data = data.get("logging", {})
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    known_keys = {
        "llm", "permission", "approval", "retry", "compaction", "tools", "agents", "logging",
    }
    extra = {k: v for k, v in data.items() if k not in known_keys}

    return Config(
        llm=llm,
        permission=permission,
        approval=approval,
        retry=retry,
        compaction=compaction,
        tools=tools,
        agents=agents,
        logging=logging_config,
        extra=extra,
    )


def load_config(cwd: str | None = None, reload: bool = False) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Project config (<cwd>/.agentcore/config.yaml)
    3. User config
    4. System config

    Args:
        cwd: Project directory for project-level config.
        reload: Force reload even if cached.
    """
    global _cached_config

    if _cached_config is not None and not reload and cwd is None:
        return _cached_config

    configs: list[dict[str, Any]] = []
    for path in get_config_paths(cwd):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    config = dict_to_config(merge_configs(*configs))

    # Only the global (project-less) config is cached
    if cwd is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Reset cached config (tests, forced reload)."""
    global _cached_config
    _cached_config = None


def reload_config(cwd: str | None = None) -> Config:
    """Reload config from files and notify callbacks."""
    config = load_config(cwd=cwd, reload=True)

    for callback in _reload_callbacks:
        try:
            callback(config)
        except Exception as e:
            _log.warning("Config reload callback error: %s", e)

    return config


def on_config_reload(callback: Callable[[Config], None]) -> Callable[[], None]:
    """Register a callback for config reloads; returns an unregister function."""
    _reload_callbacks.append(callback)

    def unregister() -> None:
        if callback in _reload_callbacks:
            _reload_callbacks.remove(callback)

    return unregister
