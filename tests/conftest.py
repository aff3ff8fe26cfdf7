"""
Pytest configuration and shared fixtures.
"""

from typing import List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest

from cross_seeder import bencode
from cross_seeder.indexer_client import SearchResult
from cross_seeder.matcher import FileInfo
from cross_seeder.qbit_client import ClientTorrent


def make_torrent(
    name: str,
    files: List[Tuple[str, int]],
    single: bool = False,
    announce: str = "http://tracker.example/announce",
) -> bytes:
    """Build .torrent bytes with the given files."""
    if single:
        (file_name, length), = files
        info = {"name": file_name, "length": length, "piece length": 16384, "pieces": b"\x00" * 20}
    else:
        info = {
            "name": name,
            "piece length": 16384,
            "pieces": b"\x00" * 20,
            "files": [{"path": [name, f], "length": size} for f, size in files],
        }
    return bencode.encode({"announce": announce, "info": info})


def make_client_torrent(
    torrent_hash: str = "a" * 40,
    name: str = "Show.S01E01.1080p.WEB",
    size: int = 1020,
    category: str = "tv",
    save_path: str = "/downloads/tv",
    progress: float = 1.0,
) -> ClientTorrent:
    return ClientTorrent(
        hash=torrent_hash,
        name=name,
        size=size,
        category=category,
        save_path=save_path,
        progress=progress,
    )


def make_search_result(
    guid: str = "guid-1",
    title: str = "Show S01E01 1080p WEB-OTHER",
    size: Optional[int] = 1020,
    info_hash: Optional[str] = None,
) -> SearchResult:
    return SearchResult(
        guid=guid,
        title=title,
        size=size,
        indexer_id=7,
        download_url=f"http://indexer.example/dl/{guid}",
        info_hash=info_hash,
    )


@pytest.fixture
def sample_torrent():
    """Multi-file torrent with a video and a subtitle file."""
    return make_torrent("Show.S01E01.1080p.WEB", [("a.mkv", 1000), ("b.srt", 20)])


# ============================================================================
# Persistence Fixtures
# ============================================================================

@pytest.fixture
def temp_db_path(tmp_path):
    """Create a temporary database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
async def persistence_manager(temp_db_path):
    """Create an initialized persistence manager."""
    from cross_seeder.persistence import PersistenceManager

    manager = PersistenceManager(temp_db_path)
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def torrent_cache(tmp_path):
    """Create a torrent cache rooted in a temporary directory."""
    from cross_seeder.cache import TorrentCache

    return TorrentCache(str(tmp_path / "data"))


# ============================================================================
# Facade Fixtures
# ============================================================================

@pytest.fixture
def mock_qbit():
    """A torrent client facade with one completed torrent."""
    client = AsyncMock()
    client.login = AsyncMock(return_value=True)
    client.list_torrents = AsyncMock(return_value=[make_client_torrent()])
    client.list_files = AsyncMock(return_value=[
        FileInfo("Show.S01E01.1080p.WEB/a.mkv", 1000),
        FileInfo("Show.S01E01.1080p.WEB/b.srt", 20),
    ])
    client.add_torrent = AsyncMock(return_value=True)
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_indexer():
    """An indexer facade returning one renamed candidate."""
    blob = make_torrent("Show.S01E01.OTHER", [("show.mkv", 1000), ("show.srt", 20)])
    indexer = AsyncMock()
    indexer.search = AsyncMock(return_value=[make_search_result()])
    indexer.download = AsyncMock(return_value=blob)
    indexer.close = AsyncMock()
    indexer.blob = blob
    return indexer


@pytest.fixture
async def configured_instance(persistence_manager):
    """An instance owned by user 1 with an integration and a dry-run config."""
    from cross_seeder.persistence import InstanceRecord, IntegrationRecord, ScanConfig

    instance_id = await persistence_manager.save_instance(InstanceRecord(
        id=None, user_id=1, label="seedbox", url="http://qbit.local:8080",
        username="admin", password="secret",
    ))
    integration_id = await persistence_manager.save_integration(IntegrationRecord(
        id=None, user_id=1, label="prowlarr", url="http://prowlarr.local:9696",
        api_key="key",
    ))
    await persistence_manager.save_scan_config(ScanConfig(
        instance_id=instance_id, integration_id=integration_id, dry_run=True,
    ))
    return instance_id
