"""Pydantic configuration models for MCP Switchboard.

Backends are declared as an ordered list; the order is kept everywhere the
switchboard enumerates backends (catalog rebuilds, ``status()``).
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from mcp_switchboard.constants import (
    CALL_TIMEOUT,
    CAP_FETCH_TIMEOUT,
    CONNECT_CONCURRENCY,
    CONNECT_TIMEOUT,
    HEALTH_CHECK_INTERVAL,
    MCP_INIT_TIMEOUT,
    PROBE_TIMEOUT,
    READ_TIMEOUT,
    RECONNECT_BASE_DELAY,
    RECONNECT_FACTOR,
    RECONNECT_MAX_ATTEMPTS,
    RECONNECT_MAX_DELAY,
    SHUTDOWN_TIMEOUT,
    TOOL_SEPARATOR,
    UNHEALTHY_THRESHOLD,
)

# First and last characters may not be "_" so that "<name>__" always ends
# exactly where the backend name ends.
_BACKEND_NAME_RE = re.compile(r"^[A-Za-z0-9-](?:[A-Za-z0-9_-]*[A-Za-z0-9-])?$")


# ── Timeouts ─────────────────────────────────────────────────────────────


class TimeoutSettings(BaseModel):
    """Global operation timeouts in seconds."""

    connect: float = Field(default=CONNECT_TIMEOUT, gt=0)
    init: float = Field(default=MCP_INIT_TIMEOUT, gt=0)
    cap_fetch: float = Field(default=CAP_FETCH_TIMEOUT, gt=0)
    call: float = Field(default=CALL_TIMEOUT, gt=0)
    read: float = Field(default=READ_TIMEOUT, gt=0)
    probe: float = Field(default=PROBE_TIMEOUT, gt=0)
    shutdown: float = Field(default=SHUTDOWN_TIMEOUT, gt=0)


class TimeoutConfig(BaseModel):
    """Per-backend timeout overrides. Unset fields use the global settings."""

    model_config = ConfigDict(frozen=True)

    connect: Optional[float] = Field(default=None, gt=0)
    init: Optional[float] = Field(default=None, gt=0)
    cap_fetch: Optional[float] = Field(default=None, gt=0)
    call: Optional[float] = Field(default=None, gt=0)
    read: Optional[float] = Field(default=None, gt=0)

    def apply(self, base: TimeoutSettings) -> TimeoutSettings:
        """Return *base* with every override that is set applied."""
        overrides = self.model_dump(exclude_none=True)
        if not overrides:
            return base
        return base.model_copy(update=overrides)


# ── Backends ─────────────────────────────────────────────────────────────


class BackendConfig(BaseModel):
    """Launch parameters and identity for one stdio backend server."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Unique name, used as namespace prefix.")
    command: str = Field(..., min_length=1, description="Executable to run.")
    args: List[str] = Field(default_factory=list)
    env: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Environment overrides; null values are dropped.",
    )
    description: Optional[str] = None
    cwd: Optional[str] = None
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        v = v.strip()
        if TOOL_SEPARATOR in v:
            raise ValueError(f"backend name '{v}' must not contain '{TOOL_SEPARATOR}'")
        if not _BACKEND_NAME_RE.match(v):
            raise ValueError(
                f"backend name '{v}' may only use letters, digits, '-' and '_' "
                "and must not start or end with '_'"
            )
        return v

    @field_validator("command")
    @classmethod
    def _strip_command(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("command must be a non-empty string")
        return v


# ── Supervision ──────────────────────────────────────────────────────────


class HealthSettings(BaseModel):
    """Health supervisor settings."""

    enabled: bool = True
    interval: float = Field(default=HEALTH_CHECK_INTERVAL, gt=0)
    unhealthy_threshold: int = Field(
        default=UNHEALTHY_THRESHOLD,
        ge=1,
        description="Consecutive probe failures before a backend is disconnected.",
    )


class ReconnectSettings(BaseModel):
    """Exponential reconnect backoff."""

    base_delay: float = Field(default=RECONNECT_BASE_DELAY, ge=0)
    factor: float = Field(default=RECONNECT_FACTOR, ge=1)
    max_delay: float = Field(default=RECONNECT_MAX_DELAY, ge=0)
    jitter: float = Field(default=0.0, ge=0, le=1)
    max_attempts: int = Field(default=RECONNECT_MAX_ATTEMPTS, ge=1)

    @model_validator(mode="after")
    def _check_schedule(self) -> "ReconnectSettings":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.factor < 1 + self.jitter:
            raise ValueError("factor must be >= 1 + jitter so delays never decrease")
        return self


class ProxySettings(BaseModel):
    """Switchboard-wide settings."""

    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    reconnect: ReconnectSettings = Field(default_factory=ReconnectSettings)
    connect_concurrency: int = Field(default=CONNECT_CONCURRENCY, ge=1)


class SwitchboardConfig(BaseModel):
    """Top-level configuration file model."""

    version: str = "1"
    settings: ProxySettings = Field(default_factory=ProxySettings)
    backends: List[BackendConfig] = Field(default_factory=list)

    @field_validator("backends")
    @classmethod
    def _unique_names(cls, v: List[BackendConfig]) -> List[BackendConfig]:
        seen: set[str] = set()
        for backend in v:
            if backend.name in seen:
                raise ValueError(f"duplicate backend name '{backend.name}'")
            seen.add(backend.name)
        return v
