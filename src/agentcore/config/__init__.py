"""Configuration management for agentcore.

Hierarchical YAML configuration:
- System-level config (/etc/agentcore/ or %PROGRAMDATA%)
- User-level config (~/.config/agentcore/, ~/.agentcore/ or %APPDATA%)
- Project-level config (<cwd>/.agentcore/)
- Environment variable overrides (highest priority)

Example usage:
    from agentcore.config import load_config

    config = load_config(cwd="/path/to/project")
    print(config.llm.model)
    print(config.permission.default)
"""

from agentcore.config.loader import (
    DEFAULT_AGENTS,
    dict_to_config,
    get_config,
    load_config,
    on_config_reload,
    reload_config,
    reset_config,
)
from agentcore.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_project_data_dir,
    get_system_config_path,
    get_user_config_path,
)
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
from agentcore.config.secrets import clear_secret_cache, fetch_secret

__all__ = [
    "DEFAULT_AGENTS",
    "AgentConfig",
    "ApprovalConfig",
    "CompactionConfig",
    "Config",
    "CredentialProfileConfig",
    "LLMConfig",
    "LoggingConfig",
    "PermissionConfig",
    "PermissionRuleConfig",
    "RetryConfig",
    "ToolsConfig",
    "clear_secret_cache",
    "dict_to_config",
    "fetch_secret",
    "get_config",
    "get_config_paths",
    "get_project_config_path",
    "get_project_data_dir",
    "get_system_config_path",
    "get_user_config_path",
    "load_config",
    "on_config_reload",
    "reload_config",
    "reset_config",
]
