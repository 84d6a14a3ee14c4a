"""Configuration loading and validation for MCP Switchboard."""

from mcp_switchboard.config.loader import (
    expand_env_vars,
    load_switchboard_config,
    parse_switchboard_config,
)
from mcp_switchboard.config.schema import (
    BackendConfig,
    HealthSettings,
    ProxySettings,
    ReconnectSettings,
    SwitchboardConfig,
    TimeoutConfig,
    TimeoutSettings,
)

__all__ = [
    "BackendConfig",
    "HealthSettings",
    "ProxySettings",
    "ReconnectSettings",
    "SwitchboardConfig",
    "TimeoutConfig",
    "TimeoutSettings",
    "expand_env_vars",
    "load_switchboard_config",
    "parse_switchboard_config",
]
