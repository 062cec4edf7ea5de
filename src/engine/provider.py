"""Resource provider capability interface.

Each resource kind is backed by a provider implementing four operations:

    create(inputs)                 -> (external_id, outputs)
    read(external_id)              -> outputs        (ResourceNotFoundError if gone)
    update(external_id, changed)   -> outputs
    delete(external_id)            -> None

Providers classify their failures:
- ProviderTransientError: rate limiting, transient network failure. Retried
  with exponential backoff.
- ProviderPermanentError: invalid input, permission denied. Never retried.

Reads that exceed the operation timeout are abandoned and retried. Mutating
calls (create, update, delete) are never abandoned: the provider may still be
carrying them out, and a second create would leave an untracked resource.
Past the timeout the engine logs a warning and keeps waiting for the real
result.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .config import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    RETRY_BACKOFF_BASE_SECONDS,
    RETRY_BACKOFF_MAX_SECONDS,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderError(Exception):
    """Base class for provider failures."""

    def __init__(self, message: str, *, address: str | None = None) -> None:
        super().__init__(message)
        self.address = address

    def __str__(self) -> str:
        message = super().__str__()
        if self.address:
            return f"{self.address}: {message}"
        return message


class ProviderTransientError(ProviderError):
    """Retryable failure (rate limit, timeout, dropped connection)."""

    pass


class ProviderPermanentError(ProviderError):
    """Non-retryable failure (invalid input, permission denied)."""

    pass


class ResourceNotFoundError(ProviderError):
    """The external resource no longer exists."""

    pass


class ResourceProvider(ABC):
    """Create/read/update/delete operations for one resource kind."""

    @abstractmethod
    async def create(self, inputs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create the resource and return (external_id, outputs)."""

    @abstractmethod
    async def read(self, external_id: str) -> dict[str, Any]:
        """Return current attribute values, or raise ResourceNotFoundError."""

    @abstractmethod
    async def update(self, external_id: str, changed: dict[str, Any]) -> dict[str, Any]:
        """Apply changed attributes in place and return outputs."""

    @abstractmethod
    async def delete(self, external_id: str) -> None:
        """Delete the resource (ResourceNotFoundError if already gone)."""


class SyncResourceProvider(ResourceProvider):
    """Adapter for providers built on blocking client libraries.

    Subclasses implement the blocking ``*_sync`` methods; calls are run in the
    event loop's default thread pool so they do not block other workers.
    """

    @abstractmethod
    def create_sync(self, inputs: dict[str, Any]) -> tuple[str, dict[str, Any]]: ...

    @abstractmethod
    def read_sync(self, external_id: str) -> dict[str, Any]: ...

    @abstractmethod
    def update_sync(self, external_id: str, changed: dict[str, Any]) -> dict[str, Any]: ...

    @abstractmethod
    def delete_sync(self, external_id: str) -> None: ...

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def create(self, inputs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        return await self._run(self.create_sync, inputs)

    async def read(self, external_id: str) -> dict[str, Any]:
        return await self._run(self.read_sync, external_id)

    async def update(self, external_id: str, changed: dict[str, Any]) -> dict[str, Any]:
        return await self._run(self.update_sync, external_id, changed)

    async def delete(self, external_id: str) -> None:
        await self._run(self.delete_sync, external_id)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter for transient provider errors."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS
    jitter_ratio: float = 0.2
    timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS

    def delay(self, attempt: int) -> float:
        """Seconds to wait after a failed attempt (1-based)."""
        backoff = min(
            self.backoff_base_seconds * (2 ** (attempt - 1)),
            self.backoff_max_seconds,
        )
        jitter = random.uniform(0, backoff * self.jitter_ratio)
        return backoff + jitter


def classify_error(error: BaseException, address: str | None = None) -> ProviderError:
    """Map an arbitrary exception raised by a provider onto the taxonomy.

    Unclassified exceptions are treated as permanent: retrying a bug in a
    provider will not fix it.
    """
    if isinstance(error, ProviderError):
        if address and error.address is None:
            error.address = address
        return error
    if isinstance(error, TimeoutError):
        return ProviderTransientError(f"operation timed out: {error}", address=address)
    if isinstance(error, ConnectionError):
        return ProviderTransientError(f"connection failure: {error}", address=address)
    return ProviderPermanentError(f"{type(error).__name__}: {error}", address=address)


@dataclass
class RetryOutcome:
    """Attempts consumed by a retried call."""

    attempts: int = 0


async def _attempt(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str,
    address: str | None,
    idempotent: bool,
) -> T:
    if idempotent:
        return await asyncio.wait_for(operation(), timeout=policy.timeout_seconds)

    task = asyncio.ensure_future(operation())
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=policy.timeout_seconds)
    except TimeoutError:
        if task.done():
            # The provider itself raised TimeoutError
            raise
        logger.warning(
            "Provider operation exceeded timeout, waiting for its result",
            extra={
                "address": address,
                "operation": operation_name,
                "timeout_seconds": policy.timeout_seconds,
            },
        )
        return await task


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation_name: str,
    address: str | None = None,
    outcome: RetryOutcome | None = None,
    idempotent: bool = False,
) -> T:
    """Run a provider operation with timeout and exponential backoff retry.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        policy: Retry and timeout policy.
        operation_name: Human-readable name for logging (e.g. "create").
        address: Resource address for error attribution.
        outcome: Optional accumulator for the number of attempts made.
        idempotent: True for reads. Only idempotent calls are cancelled and
            retried when they exceed the timeout; other calls run to
            completion so their result is never lost.

    Returns:
        The operation's result.

    Raises:
        ProviderPermanentError: Immediately on non-transient failures.
        ProviderTransientError: When all attempts are exhausted.
        ResourceNotFoundError: Passed through unchanged for the caller to decide.
    """
    last_error: ProviderError | None = None

    for attempt in range(1, policy.max_attempts + 1):
        if outcome is not None:
            outcome.attempts += 1
        try:
            return await _attempt(operation, policy, operation_name, address, idempotent)
        except Exception as e:
            error = classify_error(e, address)

            if not isinstance(error, ProviderTransientError):
                if error is e:
                    raise
                raise error from e

            last_error = error
            if attempt < policy.max_attempts:
                wait_time = policy.delay(attempt)
                logger.warning(
                    "Provider operation failed, retrying",
                    extra={
                        "address": address,
                        "operation": operation_name,
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(error),
                    },
                )
                await asyncio.sleep(wait_time)

    # SAFETY: max_attempts >= 1, so the loop ran and set last_error
    assert last_error is not None, "Retry loop completed without setting last_error"
    logger.error(
        "Provider operation failed after retries",
        extra={
            "address": address,
            "operation": operation_name,
            "attempts": policy.max_attempts,
            "error": str(last_error),
        },
    )
    raise last_error
