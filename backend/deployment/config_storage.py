"""
Local compose configuration storage.

Reads and writes compose files and their sibling .env files on the local
filesystem. Writes are atomic (temp file + rename) so a crash never leaves
a half-written compose file behind.
"""

import asyncio
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Union

import aiofiles

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def env_file_for(config_file: PathLike) -> Path:
    """The .env file docker compose reads next to a compose file"""
    return Path(config_file).parent / ".env"


async def _atomic_write_file(target_path: Path, content: str) -> None:
    """Write content atomically using temp file + rename pattern."""
    fd, temp_path = tempfile.mkstemp(dir=target_path.parent, suffix='.tmp')
    try:
        async with aiofiles.open(fd, 'w', encoding='utf-8', closefd=True) as f:
            await f.write(content)

        # mkstemp creates 0600, keep the original file's mode
        def _copy_mode():
            if target_path.exists():
                os.chmod(temp_path, stat.S_IMODE(target_path.stat().st_mode))

        await asyncio.to_thread(_copy_mode)
        # Use asyncio.to_thread to avoid blocking on slow filesystems (NFS)
        await asyncio.to_thread(Path(temp_path).replace, target_path)
    except Exception:
        await asyncio.to_thread(Path(temp_path).unlink, True)  # missing_ok=True
        raise


class FileConfigStorage:
    """Compose and .env file access on the local filesystem"""

    async def exists(self, path: PathLike) -> bool:
        return await asyncio.to_thread(Path(path).is_file)

    async def read_text(self, path: PathLike) -> str:
        """
        Raises:
            FileNotFoundError: if the file doesn't exist
        """
        async with aiofiles.open(Path(path), 'r', encoding='utf-8') as f:
            return await f.read()

    async def write_text(self, path: PathLike, content: str) -> None:
        target = Path(path)
        await _atomic_write_file(target, content)
        logger.debug(f"Wrote {len(content)} bytes to {target}")
