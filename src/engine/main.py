"""Main entry point for the reconciliation engine.

Runs one reconcile pass (refresh, plan, apply) for the configuration
directory named by CKIT_CONFIG_DIR, holding the state directory lock for
the whole run. SIGINT/SIGTERM cancel the run: no new actions are dispatched,
in-flight provider operations finish and commit their state.

Exit codes:
    0    every action succeeded (or dry run)
    1    configuration, declaration or planning error
    2    apply finished with failed or skipped actions
    130  canceled
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from typing import IO

from .builtin import register as register_builtin
from .config import ConfigurationError, EngineConfig
from .config_loader import ConfigLoadError, load_snapshot
from .executor import ProgressCallback
from .models import ConfigurationSnapshot
from .plan import ChangePlan
from .reconciler import ReconcileResult, Reconciler
from .registry import RegistryError, ResourceDescriptorRegistry, load_provider_plugins
from .state import FileStateBackend, StateLockError, StateStore

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_APPLY_FAILED = 2
EXIT_CANCELED = 130

LOG_HANDLER_NAME = "ckit"

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO", log_format: str = "json", stream: IO[str] | None = None
) -> logging.Handler:
    """Configure logging: JSON records for production, plain text for terminals.

    Calling it again replaces the handler installed by the previous call.

    Returns:
        The installed handler.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.set_name(LOG_HANDLER_NAME)
    if log_format == "text":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == LOG_HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    return handler


def build_registry(config: EngineConfig) -> ResourceDescriptorRegistry:
    """Registry with the built-in kinds plus configured provider plugins."""
    registry = ResourceDescriptorRegistry()
    register_builtin(registry)
    load_provider_plugins(registry, config.provider_modules)
    return registry


def exit_code_for(result: ReconcileResult) -> int:
    if result.error is not None:
        return EXIT_ERROR
    if result.apply is None:
        return EXIT_OK
    if result.apply.canceled:
        return EXIT_CANCELED
    if not result.apply.success:
        return EXIT_APPLY_FAILED
    return EXIT_OK


async def run_once(
    config: EngineConfig,
    *,
    dry_run: bool | None = None,
    destroy: bool = False,
    progress: ProgressCallback | None = None,
    approve: Callable[[ChangePlan], bool] | None = None,
    registry: ResourceDescriptorRegistry | None = None,
) -> ReconcileResult:
    """Run one reconcile pass under the state directory lock.

    Args:
        config: Engine configuration.
        dry_run: Plan only (defaults to config.dry_run).
        destroy: Plan deletion of every stored resource instead of loading
            the configuration.
        progress: Called on every action status transition.
        approve: Called with a plan that has changes before applying it.
        registry: Pre-built registry (defaults to build_registry(config)).

    Raises:
        ConfigLoadError: If the configuration cannot be loaded.
        RegistryError: If a provider plugin cannot be loaded.
        StateLockError: If another run holds the state lock.
    """
    logger = logging.getLogger(__name__)

    registry = registry or build_registry(config)
    if destroy:
        snapshot = ConfigurationSnapshot(source="destroy")
    else:
        snapshot = load_snapshot(config.config_dir)

    backend = FileStateBackend(config.state_dir)
    reconciler = Reconciler(registry, StateStore(backend), config, progress=progress)

    # Set up signal handlers for graceful cancellation
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or unsupported platform
            pass

    try:
        with backend.locked():
            return await reconciler.reconcile(snapshot, dry_run=dry_run, approve=approve)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def main() -> int:
    """Run the engine once with configuration from the environment.

    Returns:
        Exit code (see module docstring).
    """
    try:
        config = EngineConfig.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
        return EXIT_ERROR

    setup_logging(config.log_level, config.log_format)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting reconciliation engine",
        extra={
            "config_dir": str(config.config_dir),
            "state_dir": str(config.state_dir),
            "parallelism": config.parallelism,
            "dry_run": config.dry_run,
        },
    )

    try:
        result = await run_once(config)
    except ConfigLoadError as e:
        # Declaration loading/validation failed - user configuration error
        logger.error(
            "Configuration loading failed",
            extra={"error": str(e), "config_dir": str(config.config_dir)},
        )
        return EXIT_ERROR
    except RegistryError as e:
        logger.error("Provider plugin loading failed", extra={"error": str(e)})
        return EXIT_ERROR
    except StateLockError as e:
        logger.error("State is locked", extra={"error": str(e)})
        return EXIT_ERROR
    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Engine failed unexpectedly", extra={"error": str(e)})
        return EXIT_ERROR

    code = exit_code_for(result)
    logger.info("Engine stopped", extra={"exit_code": code})
    return code


def run() -> None:
    """Entry point for the engine process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
