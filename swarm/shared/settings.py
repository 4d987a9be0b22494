"""
SWARM — Shared Settings

Central configuration for the control plane and the workers.
Load from environment variables with sensible defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from swarm.shared.errors import ConfigurationError, MissingEnvironmentVariableError


# =============================================================================
# Project Identity
# =============================================================================
PROJECT_NAME: str = "SWARM"
VERSION: str = "0.3.0"


def _env(name: str, default: str) -> str:
    return os.environ.get(f"SWARM_{name}", default)


def _env_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"SWARM_{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"SWARM_{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "true" if default else "false").lower() == "true"


@dataclass
class SwarmSettings:
    """Recognized configuration options. Durations are in seconds."""

    # =========================================================================
    # Lease / reaper timing
    # =========================================================================
    heartbeat_ttl: int = 30
    heartbeat_interval: float = 10.0
    reaper_interval: float = 30.0
    stop_config_timeout: int = 30
    max_turn_timeout: int = 600
    mapping_grace: int = 300
    status_ttl: int = 3600
    explicit_destroy: bool = False

    # =========================================================================
    # waitForSession polling
    # =========================================================================
    poll_interval: float = 2.0
    poll_max_interval: float = 2.0
    poll_backoff: float = 1.0

    # =========================================================================
    # Naming
    # =========================================================================
    key_prefix: str = "agent"
    resource_prefix: str = "session-"

    # =========================================================================
    # Registry
    # =========================================================================
    redis_url: str = "redis://localhost:6379/0"

    # =========================================================================
    # Provisioner
    # =========================================================================
    provisioner: str = "fly"
    fly_api_token: str = ""
    fly_app_name: str = ""
    fly_api_base: str = "https://api.machines.dev/v1"
    agent_image: str = ""
    machine_cpu_kind: str = "shared"
    machine_cpus: int = 1
    machine_memory_mb: int = 512
    provisioner_timeout: float = 30.0

    # =========================================================================
    # Logging
    # =========================================================================
    log_level: str = "INFO"
    log_format: str = "text"

    def __post_init__(self) -> None:
        self.validate()

    @property
    def mapping_ttl(self) -> int:
        """TTL of the session→resource mapping: max runtime plus grace."""
        return self.max_turn_timeout + self.mapping_grace

    def validate(self) -> None:
        positive = {
            "heartbeat_ttl": self.heartbeat_ttl,
            "heartbeat_interval": self.heartbeat_interval,
            "reaper_interval": self.reaper_interval,
            "max_turn_timeout": self.max_turn_timeout,
            "status_ttl": self.status_ttl,
            "poll_interval": self.poll_interval,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        # A single missed renewal must not expire the lease.
        if self.heartbeat_ttl <= self.heartbeat_interval:
            raise ConfigurationError(
                f"heartbeat_ttl ({self.heartbeat_ttl}s) must exceed "
                f"heartbeat_interval ({self.heartbeat_interval}s)"
            )
        if self.poll_max_interval < self.poll_interval:
            raise ConfigurationError("poll_max_interval must be >= poll_interval")
        if self.poll_backoff < 1.0:
            raise ConfigurationError("poll_backoff must be >= 1.0")
        if self.provisioner not in {"fly", "memory"}:
            raise ConfigurationError(f"Unknown provisioner: {self.provisioner}")

    def require(self, *names: str) -> None:
        """Raise if any of the given settings is empty."""
        for name in names:
            if not getattr(self, name):
                raise MissingEnvironmentVariableError(f"SWARM_{name.upper()}")

    @classmethod
    def from_env(cls) -> "SwarmSettings":
        """Build settings from SWARM_* environment variables."""
        return cls(
            heartbeat_ttl=_env_int("HEARTBEAT_TTL", 30),
            heartbeat_interval=_env_float("HEARTBEAT_INTERVAL", 10.0),
            reaper_interval=_env_float("REAPER_INTERVAL", 30.0),
            stop_config_timeout=_env_int("STOP_CONFIG_TIMEOUT", 30),
            max_turn_timeout=_env_int("MAX_TURN_TIMEOUT", 600),
            mapping_grace=_env_int("MAPPING_GRACE", 300),
            status_ttl=_env_int("STATUS_TTL", 3600),
            explicit_destroy=_env_bool("EXPLICIT_DESTROY", False),
            poll_interval=_env_float("POLL_INTERVAL", 2.0),
            poll_max_interval=_env_float("POLL_MAX_INTERVAL", 2.0),
            poll_backoff=_env_float("POLL_BACKOFF", 1.0),
            key_prefix=_env("KEY_PREFIX", "agent"),
            resource_prefix=_env("RESOURCE_PREFIX", "session-"),
            redis_url=_env("REDIS_URL", os.environ.get("REDIS_URL", "redis://localhost:6379/0")),
            provisioner=_env("PROVISIONER", "fly").lower(),
            fly_api_token=_env("FLY_API_TOKEN", os.environ.get("FLY_API_TOKEN", "")),
            fly_app_name=_env("FLY_APP_NAME", os.environ.get("FLY_APP_NAME", "")),
            fly_api_base=_env("FLY_API_BASE", "https://api.machines.dev/v1"),
            agent_image=_env("AGENT_IMAGE", ""),
            machine_cpu_kind=_env("MACHINE_CPU_KIND", "shared"),
            machine_cpus=_env_int("MACHINE_CPUS", 1),
            machine_memory_mb=_env_int("MACHINE_MEMORY_MB", 512),
            provisioner_timeout=_env_float("PROVISIONER_TIMEOUT", 30.0),
            log_level=_env("LOG_LEVEL", "INFO"),
            log_format=_env("LOG_FORMAT", "text").lower(),
        )


def load_settings(env_file: Optional[str] = None) -> SwarmSettings:
    """Load .env (if present) and build settings from the environment."""
    from dotenv import load_dotenv

    load_dotenv(env_file)
    return SwarmSettings.from_env()
