"""State store: last-applied attribute values for every managed resource.

The store is the only shared mutable resource of an apply. Writes are scoped
to a single record and serialized per address, so no cross-record locking is
needed. Only the plan executor writes, and only after a provider operation
has been confirmed.

Backends:
- InMemoryStateBackend: tests and dry runs
- FileStateBackend: one JSON document per record, written atomically
  (temporary file + rename). A lock file guards the directory against a
  second engine run; arbitration beyond that is the backend's concern.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

from pydantic import BaseModel, Field, ValidationError

from .config import MAX_STATE_RECORD_SIZE_BYTES

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".lock"
STATE_FORMAT_VERSION = 1


class StateError(Exception):
    """Raised when state cannot be read or written."""

    pass


class StateLockError(StateError):
    """Raised when another run holds the state lock."""

    pass


class StateRecord(BaseModel):
    """Last-applied state of one resource's real-world counterpart."""

    model_config = {"extra": "ignore"}

    address: str
    kind: str
    external_id: str
    # Resolved input values as last sent to the provider
    inputs: dict[str, Any] = Field(default_factory=dict)
    # Values returned by the provider (including computed attributes)
    outputs: dict[str, Any] = Field(default_factory=dict)
    # Addresses this resource depended on when it was applied
    dependencies: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    version: int = STATE_FORMAT_VERSION

    def attributes(self) -> dict[str, Any]:
        """All known attribute values; provider outputs win over inputs."""
        return {**self.inputs, **self.outputs}


class StateBackend(Protocol):
    """Durable storage for state records keyed by address."""

    def get(self, address: str) -> StateRecord | None: ...

    def put(self, record: StateRecord) -> None: ...

    def delete(self, address: str) -> None: ...

    def list(self) -> list[StateRecord]: ...


class InMemoryStateBackend:
    """Non-durable backend holding records in a dict."""

    def __init__(self, records: list[StateRecord] | None = None) -> None:
        self._records: dict[str, StateRecord] = {}
        for record in records or []:
            self._records[record.address] = record

    def get(self, address: str) -> StateRecord | None:
        record = self._records.get(address)
        return record.model_copy(deep=True) if record else None

    def put(self, record: StateRecord) -> None:
        self._records[record.address] = record.model_copy(deep=True)

    def delete(self, address: str) -> None:
        self._records.pop(address, None)

    def list(self) -> list[StateRecord]:
        return [r.model_copy(deep=True) for _, r in sorted(self._records.items())]


class FileStateBackend:
    """Backend storing one JSON document per record in a directory."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)
        self._lock_path = self._directory / LOCK_FILENAME

    @property
    def directory(self) -> Path:
        return self._directory

    def _path_for(self, address: str) -> Path:
        return self._directory / f"{quote(address, safe='')}.json"

    def _read(self, path: Path) -> StateRecord:
        try:
            size = path.stat().st_size
        except OSError as e:
            raise StateError(f"Failed to stat state file {path}: {e}") from e

        if size > MAX_STATE_RECORD_SIZE_BYTES:
            raise StateError(
                f"State file exceeds maximum size of {MAX_STATE_RECORD_SIZE_BYTES} bytes: {path}"
            )

        try:
            return StateRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateError(f"Failed to read state file {path}: {e}") from e
        except ValidationError as e:
            raise StateError(f"Corrupt state file {path}: {e}") from e

    def get(self, address: str) -> StateRecord | None:
        path = self._path_for(address)
        if not path.exists():
            return None
        return self._read(path)

    def put(self, record: StateRecord) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path_for(record.address)
        payload = json.dumps(record.model_dump(mode="json"), indent=2, sort_keys=True)

        # Write to a sibling temp file, then atomically replace the record
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateError(f"Failed to write state for {record.address}: {e}") from e

    def delete(self, address: str) -> None:
        try:
            self._path_for(address).unlink(missing_ok=True)
        except OSError as e:
            raise StateError(f"Failed to delete state for {address}: {e}") from e

    def list(self) -> list[StateRecord]:
        if not self._directory.exists():
            return []
        records = [
            self._read(path)
            for path in sorted(self._directory.glob("*.json"))
            if not path.name.startswith(".")
        ]
        return sorted(records, key=lambda r: r.address)

    def acquire_lock(self, owner: str = "") -> None:
        """Take the directory lock.

        Raises:
            StateLockError: If the lock file already exists.
        """
        self._directory.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            holder = ""
            try:
                holder = self._lock_path.read_text(encoding="utf-8").strip()
            except OSError:
                holder = "unknown"
            raise StateLockError(
                f"State directory {self._directory} is locked by {holder or 'another run'}. "
                f"Remove {self._lock_path} if no other run is active."
            ) from e
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(owner or f"pid:{os.getpid()}")

    def release_lock(self) -> None:
        self._lock_path.unlink(missing_ok=True)

    @contextmanager
    def locked(self, owner: str = "") -> Iterator[None]:
        """Hold the directory lock for the duration of the block."""
        self.acquire_lock(owner)
        try:
            yield
        finally:
            self.release_lock()


class StateStore:
    """Async facade over a backend with per-record write serialization."""

    def __init__(self, backend: StateBackend) -> None:
        self._backend = backend
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def backend(self) -> StateBackend:
        return self._backend

    def _lock_for(self, address: str) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[address] = lock
        return lock

    def records(self) -> dict[str, StateRecord]:
        """Snapshot of every record, keyed by address."""
        return {record.address: record for record in self._backend.list()}

    def get(self, address: str) -> StateRecord | None:
        return self._backend.get(address)

    async def put(self, record: StateRecord) -> None:
        """Persist a record after a confirmed provider operation."""
        record = record.model_copy(update={"updated_at": datetime.now(UTC)})
        async with self._lock_for(record.address):
            await asyncio.to_thread(self._backend.put, record)
        logger.debug(
            "State record written",
            extra={"address": record.address, "external_id": record.external_id},
        )

    async def delete(self, address: str) -> None:
        """Remove a record after a confirmed deletion."""
        async with self._lock_for(address):
            await asyncio.to_thread(self._backend.delete, address)
        logger.debug("State record deleted", extra={"address": address})
