"""
Configuration for provisioncore.

Uses Pydantic BaseSettings for environment variable integration
and validation. Instances are passed explicitly to the components that
need them; there is no process-wide singleton.

Configuration sources (in order of precedence):
1. Explicit constructor arguments
2. Environment variables (PROVISIONCORE_*)
3. .env file
4. Default values

Example:
    from provisioncore.config import load_config

    config = load_config(network_retry_count=3)
    store = StatusStore.from_config(config)
"""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from provisioncore.errors import ConfigurationError
from provisioncore.timeouts import (
    DEFAULT_NETWORK_RETRY_COUNT,
    DEFAULT_NETWORK_RETRY_DELAY_S,
    DEFAULT_STEP_TIMEOUT_S,
    NETWORK_PROBE_DEFAULT_URL,
    NETWORK_PROBE_TIMEOUT_S,
)


class ProvisionConfig(BaseSettings):
    """
    Settings for a provisioning run.

    All settings can be overridden via environment variables
    prefixed with PROVISIONCORE_.

    Example:
        export PROVISIONCORE_STATE_ROOT=/var/lib/provisioning
        export PROVISIONCORE_LOG_LEVEL=debug
    """

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Device identification
    device_name: str = Field(
        default_factory=platform.node,
        description="Device name attached to structured log events",
    )

    # Status persistence
    state_root: str = Field(
        default="~/.provisioncore/state",
        description="Root of the persisted status tree (file backend)",
    )
    store_backend: Literal["file", "memory", "registry"] = Field(
        default="file",
        description="Status store backend",
    )
    registry_root: str = Field(
        default="SOFTWARE\\Provisioning",
        description="Key under HKEY_LOCAL_MACHINE used by the registry backend",
    )

    # Network stability
    probe_url: str = Field(
        default=NETWORK_PROBE_DEFAULT_URL,
        description="Known-stable endpoint used for reachability probes",
    )
    probe_timeout_seconds: float = Field(
        default=NETWORK_PROBE_TIMEOUT_S,
        gt=0,
        description="Timeout for a single reachability probe",
    )
    network_retry_count: int = Field(
        default=DEFAULT_NETWORK_RETRY_COUNT,
        ge=1,
        description="Outer attempts when waiting for network stability",
    )
    network_retry_delay_seconds: int = Field(
        default=DEFAULT_NETWORK_RETRY_DELAY_S,
        ge=0,
        description="Delay between network stability attempts",
    )
    continuous_network_check: bool = Field(
        default=True,
        description="Require consecutive confirmation probes before declaring stability",
    )

    # Step execution
    default_step_timeout_seconds: float = Field(
        default=DEFAULT_STEP_TIMEOUT_S,
        gt=0,
        description="Child process timeout for steps without their own timeout",
    )

    # Logging
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format",
    )
    log_file: Optional[str] = Field(
        default=None,
        description="Optional log file path (in addition to stderr)",
    )

    @field_validator("state_root")
    @classmethod
    def expand_path(cls, v: str) -> str:
        """Expand ~ and environment variables in paths."""
        return os.path.expanduser(os.path.expandvars(v))

    @field_validator("log_file")
    @classmethod
    def expand_optional_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return os.path.expanduser(os.path.expandvars(v))

    def get_state_path(self) -> Path:
        """Get the status tree root as a Path."""
        return Path(self.state_root)


def load_config(**overrides) -> ProvisionConfig:
    """
    Build a configuration instance.

    Args:
        **overrides: Override any config values

    Raises:
        ConfigurationError: If a value fails validation
    """
    try:
        return ProvisionConfig(**overrides)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e
