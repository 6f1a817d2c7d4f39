"""Base configuration class for orchestrator components.

Provides type-safe environment variable loading shared by every config
dataclass, and ``OrchestratorConfig``, the one config the controller and its
background components are built from.

Usage:
    from testnet.coordination.base_config import OrchestratorConfig

    config = OrchestratorConfig.from_env()          # TESTNET_* overrides
    config = config.apply_overrides({"max_restarts": 3})
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, ClassVar, TypeVar

from testnet.config import defaults
from testnet.utils.exceptions import ConfigError

T = TypeVar("T", bound="BaseCoordinationConfig")


@dataclass
class BaseCoordinationConfig:
    """Base configuration with env var helpers.

    Subclasses should:
    1. Override ``_env_prefix`` for their env var namespace
    2. Add their fields as dataclass fields
    3. Implement ``from_env()`` using the helper methods
    """

    _env_prefix: ClassVar[str] = "TESTNET"

    # -------------------------------------------------------------------------
    # Environment Variable Helpers
    # -------------------------------------------------------------------------

    @classmethod
    def _make_env_key(cls, suffix: str) -> str:
        """e.g. ``MAX_RESTARTS`` -> ``TESTNET_MAX_RESTARTS``"""
        return f"{cls._env_prefix}_{suffix}"

    @classmethod
    def _get_env_int(cls, suffix: str, default: int) -> int:
        value = os.environ.get(cls._make_env_key(suffix))
        if value is None:
            return default
        try:
            return int(value)
        except (ValueError, TypeError):
            return default

    @classmethod
    def _get_env_float(cls, suffix: str, default: float) -> float:
        value = os.environ.get(cls._make_env_key(suffix))
        if value is None:
            return default
        try:
            return float(value)
        except (ValueError, TypeError):
            return default

    @classmethod
    def _get_env_str(cls, suffix: str, default: str) -> str:
        value = os.environ.get(cls._make_env_key(suffix))
        if value is None:
            return default
        return value.strip()

    @classmethod
    def from_env(cls: type[T]) -> T:
        return cls()

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for logging/serialization."""
        return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}

    def apply_overrides(self: T, overrides: dict[str, Any]) -> T:
        """Copy with fields replaced from a mapping (topology ``orchestrator:`` section).

        Raises:
            ConfigError: on unknown keys or values of the wrong type
        """
        known = {f.name: f for f in fields(self) if not f.name.startswith("_")}
        changes: dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                raise ConfigError(f"unknown orchestrator setting '{key}'")
            current = getattr(self, key)
            try:
                if isinstance(current, bool):
                    changes[key] = bool(value)
                elif isinstance(current, int):
                    changes[key] = int(value)
                elif isinstance(current, float):
                    changes[key] = float(value)
                else:
                    changes[key] = str(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"invalid value for orchestrator setting '{key}': {value!r}") from e
        return replace(self, **changes)


@dataclass
class OrchestratorConfig(BaseCoordinationConfig):
    """Timing, budget and concurrency knobs of one orchestrator run."""

    _env_prefix: ClassVar[str] = "TESTNET"

    # Remediation
    restart_cooldown_seconds: float = defaults.RESTART_COOLDOWN_SECONDS
    max_restarts: int = defaults.MAX_RESTARTS
    restart_window_seconds: float = defaults.RESTART_WINDOW_SECONDS

    # Lifecycle
    pending_timeout_seconds: float = defaults.PENDING_TIMEOUT_SECONDS
    watchdog_interval_seconds: float = defaults.WATCHDOG_INTERVAL_SECONDS
    shutdown_timeout_seconds: float = defaults.SHUTDOWN_TIMEOUT_SECONDS
    kill_timeout_seconds: float = defaults.KILL_TIMEOUT_SECONDS

    # Health probes
    probe_history_size: int = defaults.PROBE_HISTORY_SIZE
    max_concurrent_probes: int = defaults.MAX_CONCURRENT_PROBES

    # Per-process output logs; empty means inherit the orchestrator's stdio
    log_dir: str = ""

    def __post_init__(self) -> None:
        if self.max_restarts < 0:
            raise ConfigError(f"max_restarts must be >= 0 (got {self.max_restarts})")
        for name in (
            "restart_cooldown_seconds",
            "restart_window_seconds",
            "pending_timeout_seconds",
            "shutdown_timeout_seconds",
            "kill_timeout_seconds",
        ):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0 (got {getattr(self, name)})")
        if self.watchdog_interval_seconds <= 0:
            raise ConfigError("watchdog_interval_seconds must be positive")
        if self.probe_history_size < 1 or self.max_concurrent_probes < 1:
            raise ConfigError("probe_history_size and max_concurrent_probes must be >= 1")

    @classmethod
    def from_env(cls) -> OrchestratorConfig:
        return cls(
            restart_cooldown_seconds=cls._get_env_float(
                "RESTART_COOLDOWN", defaults.RESTART_COOLDOWN_SECONDS
            ),
            max_restarts=cls._get_env_int("MAX_RESTARTS", defaults.MAX_RESTARTS),
            restart_window_seconds=cls._get_env_float(
                "RESTART_WINDOW", defaults.RESTART_WINDOW_SECONDS
            ),
            pending_timeout_seconds=cls._get_env_float(
                "PENDING_TIMEOUT", defaults.PENDING_TIMEOUT_SECONDS
            ),
            watchdog_interval_seconds=cls._get_env_float(
                "WATCHDOG_INTERVAL", defaults.WATCHDOG_INTERVAL_SECONDS
            ),
            shutdown_timeout_seconds=cls._get_env_float(
                "SHUTDOWN_TIMEOUT", defaults.SHUTDOWN_TIMEOUT_SECONDS
            ),
            kill_timeout_seconds=cls._get_env_float("KILL_TIMEOUT", defaults.KILL_TIMEOUT_SECONDS),
            probe_history_size=cls._get_env_int("PROBE_HISTORY_SIZE", defaults.PROBE_HISTORY_SIZE),
            max_concurrent_probes=cls._get_env_int(
                "MAX_CONCURRENT_PROBES", defaults.MAX_CONCURRENT_PROBES
            ),
            log_dir=cls._get_env_str("LOG_DIR", ""),
        )
