"""
Unit tests for local compose file storage.
"""

import os
import stat

import pytest

from deployment.config_storage import FileConfigStorage, env_file_for


@pytest.fixture
def storage():
    return FileConfigStorage()


def test_env_file_is_sibling():
    assert str(env_file_for("/stacks/immich/docker-compose.yml")) == "/stacks/immich/.env"


class TestFileConfigStorage:
    @pytest.mark.asyncio
    async def test_read_write_roundtrip(self, storage, compose_dir):
        path = compose_dir / "docker-compose.yml"

        assert not await storage.exists(path)
        await storage.write_text(path, "services:\n  app:\n    image: foo/app:v1\n")

        assert await storage.exists(path)
        assert await storage.read_text(str(path)) == "services:\n  app:\n    image: foo/app:v1\n"

    @pytest.mark.asyncio
    async def test_overwrite_keeps_mode(self, storage, compose_dir):
        path = compose_dir / ".env"
        path.write_text("IMMICH_VERSION=v1\n")
        os.chmod(path, 0o640)

        await storage.write_text(path, "IMMICH_VERSION=v2\n")

        assert path.read_text() == "IMMICH_VERSION=v2\n"
        assert stat.S_IMODE(path.stat().st_mode) == 0o640

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, storage, compose_dir):
        await storage.write_text(compose_dir / "docker-compose.yml", "a")
        await storage.write_text(compose_dir / "docker-compose.yml", "b")

        assert [p.name for p in compose_dir.iterdir()] == ["docker-compose.yml"]

    @pytest.mark.asyncio
    async def test_read_missing(self, storage, compose_dir):
        with pytest.raises(FileNotFoundError):
            await storage.read_text(compose_dir / "missing.yml")

    @pytest.mark.asyncio
    async def test_non_ascii_roundtrip(self, storage, compose_dir):
        path = compose_dir / "docker-compose.yml"
        content = "# Médiathèque – 家庭\nservices:\n  jellyfin:\n    image: jellyfin/jellyfin:10.10.0\n"

        await storage.write_text(path, content)

        assert path.read_bytes() == content.encode('utf-8')
        assert await storage.read_text(path) == content
