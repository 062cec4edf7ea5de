"""Engine configuration with validation.

Limits are enforced at configuration load time so that a misconfigured run
fails before any provider operation is attempted.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_PARALLELISM = 4
MIN_PARALLELISM = 1
MAX_PARALLELISM = 64

DEFAULT_MAX_ATTEMPTS = 3
MAX_ATTEMPTS_LIMIT = 10

RETRY_BACKOFF_BASE_SECONDS = 1.0
RETRY_BACKOFF_MAX_SECONDS = 30.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 300
MAX_OPERATION_TIMEOUT_SECONDS = 3600

# Input limits
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per declaration file
MAX_CONFIG_FILES = 500
MAX_INSTANCE_COUNT = 1000  # Upper bound for count / for_each expansion
MAX_STATE_RECORD_SIZE_BYTES = 4 * 1024 * 1024

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_LOG_FORMATS = ("json", "text")


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    # Paths
    config_dir: Path = field(default_factory=lambda: Path("./infra"))
    state_dir: Path = field(default_factory=lambda: Path("./.ckit/state"))

    # Execution
    parallelism: int = DEFAULT_PARALLELISM
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Behavior
    refresh: bool = True
    dry_run: bool = False

    # Plugins
    provider_modules: tuple[str, ...] = ()

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.config_dir.exists():
            errors.append(f"Configuration directory does not exist: {self.config_dir}")

        if self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"State path is not a directory: {self.state_dir}")

        if not (MIN_PARALLELISM <= self.parallelism <= MAX_PARALLELISM):
            errors.append(
                f"CKIT_PARALLELISM must be between {MIN_PARALLELISM} and {MAX_PARALLELISM}"
            )

        if not (1 <= self.max_attempts <= MAX_ATTEMPTS_LIMIT):
            errors.append(f"CKIT_MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS_LIMIT}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("CKIT_RETRY_BACKOFF_SECONDS cannot be negative")

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("CKIT_RETRY_BACKOFF_MAX_SECONDS must be >= CKIT_RETRY_BACKOFF_SECONDS")

        if not (1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"CKIT_OPERATION_TIMEOUT must be between 1 and "
                f"{MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"CKIT_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if self.log_format not in VALID_LOG_FORMATS:
            errors.append(f"CKIT_LOG_FORMAT must be one of {list(VALID_LOG_FORMATS)}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: Any) -> EngineConfig:
        """Load configuration from environment variables.

        Keyword overrides (e.g. from command-line options) take precedence over
        the environment; None values are ignored.

        Environment Variables:
            CKIT_CONFIG_DIR: Directory of YAML resource declarations (default: ./infra)
            CKIT_STATE_DIR: Directory for persisted state records (default: ./.ckit/state)
            CKIT_PARALLELISM: Max concurrent provider operations (default: 4)
            CKIT_MAX_ATTEMPTS: Attempts per provider operation on transient errors (default: 3)
            CKIT_RETRY_BACKOFF_SECONDS: Base of the exponential backoff (default: 1)
            CKIT_RETRY_BACKOFF_MAX_SECONDS: Backoff ceiling (default: 30)
            CKIT_OPERATION_TIMEOUT: Timeout per provider operation in seconds (default: 300)
            CKIT_REFRESH: If "false", skip reading actual state before planning
            CKIT_DRY_RUN: If "true", plan without applying (default: false)
            CKIT_PROVIDER_MODULES: Comma-separated modules exposing register(registry)
            CKIT_LOG_LEVEL: Logging level (default: INFO)
            CKIT_LOG_FORMAT: "json" or "text" (default: json)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        values: dict[str, Any] = dict(
            config_dir=Path(os.environ.get("CKIT_CONFIG_DIR", "./infra")),
            state_dir=Path(os.environ.get("CKIT_STATE_DIR", "./.ckit/state")),
            parallelism=get_int("CKIT_PARALLELISM", DEFAULT_PARALLELISM),
            max_attempts=get_int("CKIT_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "CKIT_RETRY_BACKOFF_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "CKIT_RETRY_BACKOFF_MAX_SECONDS", RETRY_BACKOFF_MAX_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "CKIT_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            refresh=get_bool("CKIT_REFRESH", True),
            dry_run=get_bool("CKIT_DRY_RUN", False),
            provider_modules=get_list("CKIT_PROVIDER_MODULES"),
            log_level=os.environ.get("CKIT_LOG_LEVEL", "INFO").upper(),
            log_format=os.environ.get("CKIT_LOG_FORMAT", "json").lower(),
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
