"""
Torrent Cache Store for Cross-Seeder
Content-addressed, per-instance storage of candidate .torrent blobs plus a
separate output folder for dry-run matches.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import aiofiles
import aiofiles.os

from .exceptions import InvalidHashError

logger = logging.getLogger(__name__)

CACHE_DIR_NAME = "cross-seed-cache"
OUTPUT_DIR_NAME = "cross-seeds"
TORRENT_SUFFIX = ".torrent"
MAX_OUTPUT_NAME_LENGTH = 200

_HASH_RE = re.compile(r"^[0-9a-fA-F]{8,64}$")
_UNSAFE_NAME_CHARS = re.compile(r'[<>:"/\\|?*]')


@dataclass
class CacheStats:
    """Statistics for one instance's cache folder."""
    count: int = 0
    total_size_bytes: int = 0


@dataclass
class OutputStats:
    """Statistics for one instance's dry-run output folder."""
    count: int = 0
    files: List[str] = field(default_factory=list)


def sanitize_output_name(name: str) -> str:
    """Replace filesystem-hostile characters and cap the length."""
    return _UNSAFE_NAME_CHARS.sub("_", name)[:MAX_OUTPUT_NAME_LENGTH]


def _normalize_hash(info_hash: str) -> str:
    if not info_hash or not _HASH_RE.match(info_hash):
        raise InvalidHashError(info_hash)
    return info_hash.lower()


class TorrentCache:
    """
    Stores torrent blobs under <data_path>/cross-seed-cache/<instance>/<hash>.torrent
    and dry-run output under <data_path>/cross-seeds/<instance>/.

    Entries are scoped per instance; the same info-hash cached for two
    instances yields two independent files.
    """

    def __init__(self, data_path: str):
        self.data_path = Path(data_path)
        self.cache_dir = self.data_path / CACHE_DIR_NAME
        self.output_dir = self.data_path / OUTPUT_DIR_NAME
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _instance_dir(self, root: Path, instance_id: int) -> Path:
        return root / str(int(instance_id))

    def _cache_path(self, instance_id: int, info_hash: str) -> Path:
        name = _normalize_hash(info_hash) + TORRENT_SUFFIX
        return self._instance_dir(self.cache_dir, instance_id) / name

    @staticmethod
    async def _torrent_files(directory: Path) -> List[Path]:
        if not await aiofiles.os.path.isdir(directory):
            return []
        files = []
        for name in sorted(await aiofiles.os.listdir(directory)):
            path = directory / name
            if name.endswith(TORRENT_SUFFIX) and await aiofiles.os.path.isfile(path):
                files.append(path)
        return files

    # -------------------------------------------------------------------------
    # Cache Operations
    # -------------------------------------------------------------------------

    async def put(self, instance_id: int, info_hash: str, data: bytes) -> Path:
        """Cache a torrent blob, overwriting any previous copy."""
        path = self._cache_path(instance_id, info_hash)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        logger.info(f"Cached torrent: {info_hash}")
        return path

    async def get(self, instance_id: int, info_hash: str) -> Optional[bytes]:
        """Return a cached blob, or None if absent."""
        path = self._cache_path(instance_id, info_hash)
        if not await aiofiles.os.path.isfile(path):
            return None
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def has(self, instance_id: int, info_hash: str) -> bool:
        """Check whether a blob is cached."""
        return await aiofiles.os.path.isfile(self._cache_path(instance_id, info_hash))

    async def delete(self, instance_id: int, info_hash: str) -> bool:
        """Delete a cached blob. Returns True if something was removed."""
        path = self._cache_path(instance_id, info_hash)
        if not await aiofiles.os.path.isfile(path):
            return False
        await aiofiles.os.remove(path)
        return True

    async def clear(self, instance_id: int) -> int:
        """Delete every cached blob for an instance. Returns count deleted."""
        files = await self._torrent_files(self._instance_dir(self.cache_dir, instance_id))
        for path in files:
            await aiofiles.os.remove(path)
        logger.info(f"Cleared {len(files)} cached torrents for instance {instance_id}")
        return len(files)

    async def stats(self, instance_id: int) -> CacheStats:
        """Count and total size of an instance's cached blobs."""
        stats = CacheStats()
        for path in await self._torrent_files(self._instance_dir(self.cache_dir, instance_id)):
            st = await aiofiles.os.stat(path)
            stats.count += 1
            stats.total_size_bytes += st.st_size
        return stats

    async def expire(
        self, instance_id: int, max_age_days: float = 30, now: Optional[float] = None
    ) -> int:
        """Delete cached blobs last modified before the cutoff. Returns count deleted."""
        cutoff = (now if now is not None else time.time()) - max_age_days * 86400
        deleted = 0

        for path in await self._torrent_files(self._instance_dir(self.cache_dir, instance_id)):
            st = await aiofiles.os.stat(path)
            if st.st_mtime < cutoff:
                await aiofiles.os.remove(path)
                deleted += 1

        if deleted:
            logger.info(f"Cleaned {deleted} expired cache files for instance {instance_id}")
        return deleted

    # -------------------------------------------------------------------------
    # Dry-Run Output Operations
    # -------------------------------------------------------------------------

    async def put_output(
        self, instance_id: int, name: str, info_hash: str, data: bytes
    ) -> Path:
        """Stage a matched torrent for manual review. Returns the written path."""
        short_hash = _normalize_hash(info_hash)[:8]
        filename = f"{sanitize_output_name(name)}[{short_hash}]{TORRENT_SUFFIX}"
        directory = self._instance_dir(self.output_dir, instance_id)
        path = directory / filename

        await aiofiles.os.makedirs(directory, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        logger.info(f"Saved torrent to output: {path}")
        return path

    async def clear_output(self, instance_id: int) -> int:
        """Delete every staged output torrent for an instance. Returns count deleted."""
        files = await self._torrent_files(self._instance_dir(self.output_dir, instance_id))
        for path in files:
            await aiofiles.os.remove(path)
        logger.info(f"Cleared {len(files)} output torrents for instance {instance_id}")
        return len(files)

    async def output_stats(self, instance_id: int) -> OutputStats:
        """Count and filenames of an instance's staged output torrents."""
        files = await self._torrent_files(self._instance_dir(self.output_dir, instance_id))
        return OutputStats(count=len(files), files=[p.name for p in files])
