"""Built-in resource kinds.

null_resource
    Has no real-world counterpart. Useful for ordering and for forcing
    re-creation of dependents through ``triggers``.

local_file
    A file on the local filesystem. ``path`` is immutable (moving a file is a
    replace); ``content`` and ``file_permission`` are updated in place.

Both are registered by default; external kinds are added through provider
plugins (see registry.load_provider_plugins).
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any

from .provider import ProviderPermanentError, ResourceNotFoundError, SyncResourceProvider
from .registry import (
    AttributeMode,
    AttributeSchema,
    AttributeType,
    ResourceDescriptor,
    ResourceDescriptorRegistry,
)

logger = logging.getLogger(__name__)

DEFAULT_FILE_PERMISSION = "0644"

NULL_RESOURCE = ResourceDescriptor(
    kind="null_resource",
    description="Resource without a real-world counterpart",
    attributes={
        "triggers": AttributeSchema(
            type=AttributeType.MAP,
            immutable=True,
            description="Arbitrary values; any change forces replacement",
        ),
        "description": AttributeSchema(type=AttributeType.STRING),
        "id": AttributeSchema(type=AttributeType.STRING, mode=AttributeMode.COMPUTED),
    },
)

LOCAL_FILE = ResourceDescriptor(
    kind="local_file",
    description="File on the local filesystem",
    attributes={
        "path": AttributeSchema(type=AttributeType.STRING, required=True, immutable=True),
        "content": AttributeSchema(type=AttributeType.STRING, default=""),
        "file_permission": AttributeSchema(
            type=AttributeType.STRING, default=DEFAULT_FILE_PERMISSION
        ),
        "checksum": AttributeSchema(
            type=AttributeType.STRING,
            mode=AttributeMode.COMPUTED,
            description="SHA-256 of the file content",
        ),
        "size": AttributeSchema(type=AttributeType.NUMBER, mode=AttributeMode.COMPUTED),
    },
)


class NullResourceProvider(SyncResourceProvider):
    """Provider whose resources exist only in state."""

    def create_sync(self, inputs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        external_id = uuid.uuid4().hex
        return external_id, {"id": external_id}

    def read_sync(self, external_id: str) -> dict[str, Any]:
        return {"id": external_id}

    def update_sync(self, external_id: str, changed: dict[str, Any]) -> dict[str, Any]:
        return {"id": external_id}

    def delete_sync(self, external_id: str) -> None:
        return None


def _parse_permission(value: Any) -> int:
    try:
        mode = int(str(value), 8)
    except ValueError as e:
        raise ProviderPermanentError(f"file_permission must be an octal string: {value}") from e
    if not 0 <= mode <= 0o777:
        raise ProviderPermanentError(f"file_permission out of range: {value}")
    return mode


class LocalFileProvider(SyncResourceProvider):
    """Provider managing files on the local filesystem."""

    def _describe(self, path: Path) -> dict[str, Any]:
        data = path.read_bytes()
        return {
            "content": data.decode("utf-8"),
            "checksum": hashlib.sha256(data).hexdigest(),
            "size": len(data),
            "file_permission": format(path.stat().st_mode & 0o777, "04o"),
        }

    def _write(self, path: Path, content: str, permission: int) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_name, permission)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def create_sync(self, inputs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        path = Path(str(inputs["path"])).resolve()
        permission = _parse_permission(inputs.get("file_permission", DEFAULT_FILE_PERMISSION))
        self._write(path, str(inputs.get("content", "")), permission)
        logger.debug("Wrote local file", extra={"path": str(path)})
        return str(path), self._describe(path)

    def read_sync(self, external_id: str) -> dict[str, Any]:
        path = Path(external_id)
        if not path.is_file():
            raise ResourceNotFoundError(f"file not found: {external_id}")
        return self._describe(path)

    def update_sync(self, external_id: str, changed: dict[str, Any]) -> dict[str, Any]:
        path = Path(external_id)
        if not path.is_file():
            raise ResourceNotFoundError(f"file not found: {external_id}")

        current = self._describe(path)
        content = changed.get("content", current["content"])
        permission = _parse_permission(
            changed.get("file_permission") or current["file_permission"]
        )
        self._write(path, "" if content is None else str(content), permission)
        return self._describe(path)

    def delete_sync(self, external_id: str) -> None:
        try:
            Path(external_id).unlink()
        except FileNotFoundError as e:
            raise ResourceNotFoundError(f"file not found: {external_id}") from e


def register(registry: ResourceDescriptorRegistry) -> None:
    """Register the built-in kinds."""
    registry.register(NULL_RESOURCE, NullResourceProvider())
    registry.register(LOCAL_FILE, LocalFileProvider())


def default_registry() -> ResourceDescriptorRegistry:
    registry = ResourceDescriptorRegistry()
    register(registry)
    return registry
