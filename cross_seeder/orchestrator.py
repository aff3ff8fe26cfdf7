"""
Cross-Seed Scan Orchestrator
Drives one end-to-end scan of a client instance: list completed torrents,
search the indexer, download and match candidates, then inject or stage them.
"""

import logging
import posixpath
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from . import bencode
from .cache import TorrentCache
from .exceptions import (
    InstanceNotFoundError,
    IntegrationNotFoundError,
    NotConfiguredError,
)
from .indexer_client import ProwlarrClient, SearchResult
from .logging_config import LogContext
from .matcher import FileInfo, match_by_sizes, pre_filter
from .persistence import (
    InstanceRecord,
    IntegrationRecord,
    PersistenceManager,
    ScanConfig,
)
from .qbit_client import ClientTorrent, QBittorrentClient
from .retry import RetryConfig

logger = logging.getLogger(__name__)

_BRACKETED = re.compile(r"\[.*?\]")
_PARENTHESIZED = re.compile(r"\(.*?\)")
_TRAILING_EXTENSION = re.compile(r"\.\w{2,4}$")
_SEPARATORS = re.compile(r"[._-]")


class ScanPhase(Enum):
    """Stages of a scan, attached to log records."""
    NOT_CONFIGURED = "not_configured"
    RESOLVE_INTEGRATION = "resolve_integration"
    LOGIN = "login"
    LIST_TORRENTS = "list_torrents"
    FETCH_FILES = "fetch_files"
    SEARCH = "search"
    PREFILTER = "prefilter"
    DEDUP_CHECK = "dedup_check"
    DOWNLOAD = "download"
    HASH = "hash"
    MATCH = "match"
    RECORD = "record"
    INJECT = "inject"
    STAGE = "stage"
    DONE = "done"


@dataclass
class ScanResult:
    """Aggregated outcome of one scan invocation."""
    instance_id: int
    dry_run: bool = True
    torrents_total: int = 0
    scanned: int = 0
    skipped: int = 0
    matches_found: int = 0
    added: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    def fail(self, message: str) -> "ScanResult":
        self.errors.append(message)
        self.completed_at = time.time()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "dryRun": self.dry_run,
            "torrentsTotal": self.torrents_total,
            "scanned": self.scanned,
            "skipped": self.skipped,
            "matchesFound": self.matches_found,
            "added": self.added,
            "errors": list(self.errors),
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }


def build_search_query(name: str) -> str:
    """Turn a release name into a free-text indexer query."""
    query = _BRACKETED.sub("", name)
    query = _PARENTHESIZED.sub("", query)
    query = _TRAILING_EXTENSION.sub("", query)
    query = _SEPARATORS.sub(" ", query)
    return query.strip()


def derive_category(source_category: str, suffix: str) -> str:
    """Category for an injected cross-seed, derived from its source torrent."""
    if source_category:
        return f"{source_category}{suffix}"
    return suffix[1:] if suffix.startswith("_") else suffix


def _default_client_factory(instance: InstanceRecord) -> QBittorrentClient:
    return QBittorrentClient(instance.url, instance.username, instance.password)


def _default_indexer_factory(integration: IntegrationRecord) -> ProwlarrClient:
    return ProwlarrClient(integration.url, integration.api_key)


class CrossSeedOrchestrator:
    """
    Runs cross-seed scans.

    Client and indexer connections are built per scan through the given
    factories, so tests and callers can substitute their own facades.
    """

    def __init__(
        self,
        persistence: PersistenceManager,
        cache: TorrentCache,
        client_factory: Optional[Callable[[InstanceRecord], Any]] = None,
        indexer_factory: Optional[Callable[[IntegrationRecord], Any]] = None,
    ):
        self.persistence = persistence
        self.cache = cache
        self.client_factory = client_factory or _default_client_factory
        self.indexer_factory = indexer_factory or _default_indexer_factory

    @classmethod
    def with_settings(
        cls,
        persistence: PersistenceManager,
        cache: TorrentCache,
        request_timeout: float,
        retry_config: RetryConfig,
    ) -> "CrossSeedOrchestrator":
        """Build an orchestrator whose real clients share timeout and retry settings."""
        return cls(
            persistence,
            cache,
            client_factory=lambda inst: QBittorrentClient(
                inst.url, inst.username, inst.password,
                timeout=request_timeout, retry_config=retry_config,
            ),
            indexer_factory=lambda integ: ProwlarrClient(
                integ.url, integ.api_key,
                timeout=request_timeout, retry_config=retry_config,
            ),
        )

    async def scan(
        self,
        instance_id: int,
        user_id: int,
        force: bool = False,
        dry_run_override: Optional[bool] = None,
    ) -> ScanResult:
        """
        Scan one instance for cross-seed opportunities.

        Never raises for client, indexer or data problems; every failure is
        reported through ScanResult.errors.
        """
        result = ScanResult(instance_id=instance_id)

        with LogContext(instance_id=instance_id):
            config = await self.persistence.get_scan_config(instance_id)
            if config is None:
                return result.fail(str(NotConfiguredError(instance_id)))

            result.dry_run = (
                dry_run_override if dry_run_override is not None else config.dry_run
            )

            with LogContext(phase=ScanPhase.RESOLVE_INTEGRATION.value):
                if not config.integration_id:
                    return result.fail(str(IntegrationNotFoundError(None)))

                integration = await self.persistence.get_integration(
                    config.integration_id, user_id
                )
                if integration is None:
                    return result.fail(str(IntegrationNotFoundError(config.integration_id)))

                instance = await self.persistence.get_instance(instance_id, user_id)
                if instance is None:
                    return result.fail(str(InstanceNotFoundError(instance_id)))

            logger.info(
                f"Starting scan for instance {instance.label} "
                f"(dry_run={result.dry_run}, force={force})"
            )

            client = self.client_factory(instance)
            indexer = self.indexer_factory(integration)
            try:
                finished = await self._run(result, config, client, indexer, force)
            finally:
                await client.close()
                await indexer.close()

            if not finished:
                return result
            await self.persistence.update_last_run(instance_id, result.completed_at)

            duration = result.completed_at - result.started_at
            logger.info(
                f"Scan complete for {instance.label}: {result.scanned} scanned, "
                f"{result.skipped} skipped, {result.matches_found} matches, "
                f"{result.added} added ({duration:.1f}s)"
            )
            return result

    async def _run(
        self, result: ScanResult, config: ScanConfig, client, indexer, force: bool
    ) -> bool:
        """Returns False when the scan was aborted before any torrent was processed."""
        instance_id = config.instance_id

        with LogContext(phase=ScanPhase.LOGIN.value):
            try:
                await client.login()
            except Exception as e:
                logger.error(f"qBittorrent login failed: {e}")
                result.fail(f"qBittorrent login failed: {e}")
                return False

        with LogContext(phase=ScanPhase.LIST_TORRENTS.value):
            try:
                torrents: List[ClientTorrent] = await client.list_torrents()
            except Exception as e:
                logger.error(f"Failed to list torrents: {e}")
                result.fail("Failed to fetch torrents from qBittorrent")
                return False

        result.torrents_total = len(torrents)
        completed = [t for t in torrents if t.is_complete]
        logger.info(f"Found {len(completed)} completed torrents out of {len(torrents)} total")

        known_searchees: Set[str] = set()
        if not force:
            known_searchees = await self.persistence.get_searchee_hashes(instance_id)

        held_hashes = {t.hash.lower() for t in torrents}

        for torrent in completed:
            if torrent.hash in known_searchees:
                result.skipped += 1
                continue

            result.scanned += 1
            with LogContext(torrent_hash=torrent.hash, torrent_name=torrent.name):
                try:
                    await self._process_torrent(
                        result, config, client, indexer, torrent, held_hashes
                    )
                except Exception as e:
                    logger.exception(f"Error processing {torrent.name}: {e}")
                    result.errors.append(f"Error processing {torrent.name}: {e}")

        result.completed_at = time.time()
        return True

    async def _process_torrent(
        self,
        result: ScanResult,
        config: ScanConfig,
        client,
        indexer,
        torrent: ClientTorrent,
        held_hashes: Set[str],
    ):
        instance_id = config.instance_id
        logger.info(f"Searching for: {torrent.name}")

        with LogContext(phase=ScanPhase.FETCH_FILES.value):
            try:
                files = await client.list_files(torrent.hash)
            except Exception as e:
                logger.warning(f"Could not list files for {torrent.name}: {e}")
                return
        if not files:
            logger.warning(f"No files found for torrent: {torrent.name}")
            return

        source_files = [FileInfo(posixpath.basename(f.name), f.size) for f in files]
        file_sizes = sorted(f.size for f in source_files)

        with LogContext(phase=ScanPhase.SEARCH.value):
            query = build_search_query(torrent.name)
            try:
                candidates: List[SearchResult] = await indexer.search(query)
            except Exception as e:
                result.errors.append(f"Search failed for {torrent.name}: {e}")
                logger.warning(f"Search failed for {torrent.name}: {e}")
                return
        logger.info(f"Found {len(candidates)} results for: {torrent.name}")

        survivors = []
        for candidate in candidates:
            check = pre_filter(torrent.name, torrent.size, candidate.title, candidate.size)
            if check.passed:
                survivors.append(candidate)
            else:
                logger.debug(f"Pre-filter rejected {candidate.title}: {check.reason}")
        logger.info(f"{len(survivors)} results passed pre-filter")

        existing = await self.persistence.get_searchee(instance_id, torrent.hash)
        searchee_id = existing.id if existing else None

        async def ensure_searchee() -> int:
            return await self.persistence.upsert_searchee(
                instance_id, torrent.hash, torrent.name, torrent.size,
                len(files), file_sizes,
            )

        for candidate in survivors:
            with LogContext(candidate=candidate.title):
                if candidate.info_hash and candidate.info_hash.lower() in held_hashes:
                    logger.info(f"Skipping {candidate.title} - already in client")
                    continue

                if searchee_id is not None:
                    decision = await self.persistence.get_decision(searchee_id, candidate.guid)
                    if decision is not None:
                        await self.persistence.touch_decision(searchee_id, candidate.guid)
                        if decision.decision.is_match:
                            continue

                with LogContext(phase=ScanPhase.DOWNLOAD.value):
                    try:
                        blob = await indexer.download(candidate)
                    except Exception as e:
                        logger.warning(f"Failed to download torrent for {candidate.title}: {e}")
                        continue
                if not blob:
                    logger.warning(f"Failed to download torrent for: {candidate.title}")
                    continue

                candidate_hash = bencode.info_hash(blob)
                if candidate_hash and candidate_hash in held_hashes:
                    logger.info(f"Skipping {candidate.title} - already in client (by infohash)")
                    continue

                candidate_files = bencode.extract_file_list(blob)
                if candidate_files is None:
                    logger.warning(f"Failed to parse torrent file for: {candidate.title}")
                    continue

                match = match_by_sizes(source_files, candidate_files)

                if candidate_hash:
                    await self.cache.put(instance_id, candidate_hash, blob)

                with LogContext(phase=ScanPhase.RECORD.value, decision=match.decision.value):
                    searchee_id = await ensure_searchee()
                    await self.persistence.upsert_decision(
                        searchee_id, candidate.guid, candidate_hash,
                        candidate.title, candidate.size, match.decision,
                    )

                if not match.matched:
                    continue

                result.matches_found += 1
                logger.info(f"MATCH: {torrent.name} -> {candidate.title} ({match.decision.value})")

                if result.dry_run:
                    with LogContext(phase=ScanPhase.STAGE.value):
                        logger.info(f"DRY RUN - Would add: {candidate.title}")
                        if candidate_hash:
                            await self.cache.put_output(
                                instance_id, candidate.title, candidate_hash, blob
                            )
                else:
                    with LogContext(phase=ScanPhase.INJECT.value):
                        await self._inject(
                            result, config, client, torrent, candidate, blob,
                            candidate_hash, held_hashes,
                        )
                break

        await ensure_searchee()

    async def _inject(
        self,
        result: ScanResult,
        config: ScanConfig,
        client,
        torrent: ClientTorrent,
        candidate: SearchResult,
        blob: bytes,
        candidate_hash: Optional[str],
        held_hashes: Set[str],
    ):
        try:
            added = await client.add_torrent(
                blob,
                save_path=torrent.save_path,
                category=derive_category(torrent.category, config.category_suffix),
                tags=config.tag or "cross-seed",
                skip_recheck=config.skip_recheck,
            )
        except Exception as e:
            logger.error(f"Failed to add torrent {candidate.title}: {e}")
            added = False

        if added:
            result.added += 1
            logger.info(f"Added torrent: {candidate.title}")
            if candidate_hash:
                held_hashes.add(candidate_hash)
        else:
            result.errors.append(f"Failed to add torrent: {candidate.title}")
