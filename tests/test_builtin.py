"""Tests for the built-in resource kinds."""

from __future__ import annotations

import hashlib
import stat
from pathlib import Path

import pytest

from engine.builtin import LocalFileProvider, NullResourceProvider, default_registry
from engine.provider import ProviderPermanentError, ResourceNotFoundError


class TestNullResource:
    """Tests for null_resource."""

    @pytest.mark.asyncio
    async def test_lifecycle(self) -> None:
        provider = NullResourceProvider()

        external_id, outputs = await provider.create({"triggers": {"v": "1"}})

        assert outputs == {"id": external_id}
        assert await provider.read(external_id) == {"id": external_id}
        assert await provider.update(external_id, {"description": "x"}) == {"id": external_id}
        await provider.delete(external_id)

    def test_triggers_force_replacement(self) -> None:
        descriptor = default_registry().get("null_resource")
        assert descriptor.immutable_attributes() == {"triggers"}


class TestLocalFile:
    """Tests for local_file."""

    @pytest.mark.asyncio
    async def test_create_writes_file(self, tmp_path: Path) -> None:
        provider = LocalFileProvider()
        path = tmp_path / "conf" / "app.conf"

        external_id, outputs = await provider.create(
            {"path": str(path), "content": "port=80\n", "file_permission": "0600"}
        )

        assert external_id == str(path.resolve())
        assert path.read_text() == "port=80\n"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert outputs["checksum"] == hashlib.sha256(b"port=80\n").hexdigest()
        assert outputs["size"] == 8
        assert outputs["file_permission"] == "0600"
        assert [p.name for p in path.parent.iterdir()] == ["app.conf"]

    @pytest.mark.asyncio
    async def test_read_reports_content_drift(self, tmp_path: Path) -> None:
        provider = LocalFileProvider()
        external_id, _ = await provider.create({"path": str(tmp_path / "a.txt"), "content": "a"})
        Path(external_id).write_text("edited")

        current = await provider.read(external_id)

        assert current["content"] == "edited"
        assert current["size"] == 6
        assert "path" not in current

    @pytest.mark.asyncio
    async def test_update_in_place(self, tmp_path: Path) -> None:
        provider = LocalFileProvider()
        external_id, _ = await provider.create({"path": str(tmp_path / "a.txt"), "content": "a"})

        outputs = await provider.update(external_id, {"content": "b", "file_permission": "0640"})

        assert Path(external_id).read_text() == "b"
        assert outputs["file_permission"] == "0640"
        assert outputs["checksum"] == hashlib.sha256(b"b").hexdigest()

    @pytest.mark.asyncio
    async def test_update_keeps_unchanged_permission(self, tmp_path: Path) -> None:
        provider = LocalFileProvider()
        external_id, _ = await provider.create(
            {"path": str(tmp_path / "a.txt"), "content": "a", "file_permission": "0600"}
        )

        outputs = await provider.update(external_id, {"content": "b"})

        assert outputs["file_permission"] == "0600"

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path: Path) -> None:
        provider = LocalFileProvider()
        missing = str(tmp_path / "gone.txt")

        with pytest.raises(ResourceNotFoundError):
            await provider.read(missing)
        with pytest.raises(ResourceNotFoundError):
            await provider.update(missing, {"content": "x"})
        with pytest.raises(ResourceNotFoundError):
            await provider.delete(missing)

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path: Path) -> None:
        provider = LocalFileProvider()
        external_id, _ = await provider.create({"path": str(tmp_path / "a.txt")})

        await provider.delete(external_id)

        assert not Path(external_id).exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("permission", ["rw-r--r--", "1777", "9"])
    async def test_invalid_permission(self, tmp_path: Path, permission: str) -> None:
        provider = LocalFileProvider()

        with pytest.raises(ProviderPermanentError, match="file_permission"):
            await provider.create({"path": str(tmp_path / "a.txt"), "file_permission": permission})

        assert not (tmp_path / "a.txt").exists()


class TestDefaultRegistry:
    """Tests for built-in registration."""

    def test_kinds(self) -> None:
        assert default_registry().kinds() == ["local_file", "null_resource"]

    def test_path_is_immutable(self) -> None:
        descriptor = default_registry().get("local_file")
        assert descriptor.immutable_attributes() == {"path"}
        assert set(descriptor.computed_attributes()) == {"checksum", "size"}
