"""
Persistence Layer for Cross-Seeder
SQLite-based storage for client instances, indexer integrations, scan
configuration and the decision ledger.
"""

import asyncio
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set

import aiosqlite

from .exceptions import DatabaseConnectionError, InvalidIntervalError
from .matcher import DecisionKind

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_HOURS = 24
DEFAULT_CATEGORY_SUFFIX = "_cross-seed"
DEFAULT_TAG = "cross-seed"


@dataclass
class InstanceRecord:
    """A torrent client instance owned by a user."""
    id: Optional[int]
    user_id: int
    label: str
    url: str
    username: str = ""
    password: str = ""


@dataclass
class IntegrationRecord:
    """An indexer (Prowlarr) integration owned by a user."""
    id: Optional[int]
    user_id: int
    label: str
    url: str
    api_key: str = ""


@dataclass
class ScanConfig:
    """Cross-seed settings for one client instance."""
    instance_id: int
    enabled: bool = False
    interval_hours: int = DEFAULT_INTERVAL_HOURS
    dry_run: bool = True
    category_suffix: str = DEFAULT_CATEGORY_SUFFIX
    tag: str = DEFAULT_TAG
    skip_recheck: bool = False
    integration_id: Optional[int] = None
    last_run: Optional[float] = None
    next_run: Optional[float] = None


@dataclass
class Searchee:
    """A completed source torrent that has been searched for candidates."""
    id: int
    instance_id: int
    torrent_hash: str
    name: str
    total_size: int
    file_count: int
    file_sizes: List[int]
    first_searched: float
    last_searched: float
    decision_count: int = 0


@dataclass
class Decision:
    """Outcome recorded for one candidate of one searchee."""
    id: int
    searchee_id: int
    guid: str
    info_hash: Optional[str]
    candidate_name: str
    candidate_size: Optional[int]
    decision: DecisionKind
    first_seen: float
    last_seen: float


# SQL Schema
SCHEMA = """
CREATE TABLE IF NOT EXISTS instances (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    label TEXT NOT NULL,
    url TEXT NOT NULL,
    username TEXT DEFAULT '',
    password TEXT DEFAULT ''
);

CREATE TABLE IF NOT EXISTS integrations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    label TEXT NOT NULL,
    url TEXT NOT NULL,
    api_key TEXT DEFAULT ''
);

CREATE TABLE IF NOT EXISTS cross_seed_config (
    instance_id INTEGER PRIMARY KEY,
    enabled INTEGER DEFAULT 0,
    interval_hours INTEGER DEFAULT 24 CHECK (interval_hours >= 1),
    dry_run INTEGER DEFAULT 1,
    category_suffix TEXT DEFAULT '_cross-seed',
    tag TEXT DEFAULT 'cross-seed',
    skip_recheck INTEGER DEFAULT 0,
    integration_id INTEGER,
    last_run REAL,
    next_run REAL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS cross_seed_searchee (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id INTEGER NOT NULL,
    torrent_hash TEXT NOT NULL,
    torrent_name TEXT NOT NULL,
    total_size INTEGER NOT NULL,
    file_count INTEGER NOT NULL,
    file_sizes TEXT NOT NULL,
    first_searched REAL NOT NULL,
    last_searched REAL NOT NULL,
    UNIQUE (instance_id, torrent_hash)
);

CREATE TABLE IF NOT EXISTS cross_seed_decision (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    searchee_id INTEGER NOT NULL,
    guid TEXT NOT NULL,
    info_hash TEXT,
    candidate_name TEXT NOT NULL,
    candidate_size INTEGER,
    decision TEXT NOT NULL,
    first_seen REAL NOT NULL,
    last_seen REAL NOT NULL,
    UNIQUE (searchee_id, guid)
);

CREATE INDEX IF NOT EXISTS idx_searchee_instance ON cross_seed_searchee(instance_id);
CREATE INDEX IF NOT EXISTS idx_searchee_last ON cross_seed_searchee(last_searched DESC);
CREATE INDEX IF NOT EXISTS idx_decision_searchee ON cross_seed_decision(searchee_id);
CREATE INDEX IF NOT EXISTS idx_instances_user ON instances(user_id);
"""


def _now() -> float:
    return datetime.now().timestamp()


def _row_to_config(row) -> ScanConfig:
    return ScanConfig(
        instance_id=row["instance_id"],
        enabled=bool(row["enabled"]),
        interval_hours=row["interval_hours"],
        dry_run=bool(row["dry_run"]),
        category_suffix=row["category_suffix"],
        tag=row["tag"],
        skip_recheck=bool(row["skip_recheck"]),
        integration_id=row["integration_id"],
        last_run=row["last_run"],
        next_run=row["next_run"],
    )


def _row_to_searchee(row) -> Searchee:
    keys = row.keys()
    return Searchee(
        id=row["id"],
        instance_id=row["instance_id"],
        torrent_hash=row["torrent_hash"],
        name=row["torrent_name"],
        total_size=row["total_size"],
        file_count=row["file_count"],
        file_sizes=json.loads(row["file_sizes"]),
        first_searched=row["first_searched"],
        last_searched=row["last_searched"],
        decision_count=row["decision_count"] if "decision_count" in keys else 0,
    )


def _row_to_decision(row) -> Decision:
    return Decision(
        id=row["id"],
        searchee_id=row["searchee_id"],
        guid=row["guid"],
        info_hash=row["info_hash"],
        candidate_name=row["candidate_name"],
        candidate_size=row["candidate_size"],
        decision=DecisionKind(row["decision"]),
        first_seen=row["first_seen"],
        last_seen=row["last_seen"],
    )


class PersistenceManager:
    """
    Manages cross-seed state in SQLite.
    Provides async CRUD operations for all record types.
    """

    def __init__(self, db_path: str = "cross_seed.db"):
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Create database and tables if they don't exist."""
        async with self._lock:
            if self._initialized:
                return

            # Ensure directory exists
            db_dir = Path(self.db_path).parent
            if db_dir and str(db_dir) != ".":
                db_dir.mkdir(parents=True, exist_ok=True)

            try:
                async with aiosqlite.connect(self.db_path) as db:
                    await db.executescript(SCHEMA)
                    await db.commit()
            except sqlite3.Error as e:
                raise DatabaseConnectionError(
                    f"Cannot open database {self.db_path}", str(e)
                ) from e

            self._initialized = True
            logger.info(f"Persistence initialized: {self.db_path}")

    async def close(self) -> None:
        """Close the persistence manager."""
        self._initialized = False

    # -------------------------------------------------------------------------
    # Instance & Integration Operations
    # -------------------------------------------------------------------------

    async def save_instance(self, instance: InstanceRecord) -> int:
        """Insert or update a client instance. Returns its id."""
        async with aiosqlite.connect(self.db_path) as db:
            if instance.id is None:
                cursor = await db.execute("""
                    INSERT INTO instances (user_id, label, url, username, password)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    instance.user_id, instance.label, instance.url,
                    instance.username, instance.password,
                ))
                instance.id = cursor.lastrowid
            else:
                await db.execute("""
                    INSERT OR REPLACE INTO instances (id, user_id, label, url, username, password)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    instance.id, instance.user_id, instance.label, instance.url,
                    instance.username, instance.password,
                ))
            await db.commit()
            return instance.id

    async def get_instance(
        self, instance_id: int, user_id: Optional[int] = None
    ) -> Optional[InstanceRecord]:
        """Get an instance, optionally restricted to its owner."""
        query = "SELECT * FROM instances WHERE id = ?"
        params: list = [instance_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                row = await cursor.fetchone()
                if not row:
                    return None
                return InstanceRecord(
                    id=row["id"],
                    user_id=row["user_id"],
                    label=row["label"],
                    url=row["url"],
                    username=row["username"],
                    password=row["password"],
                )

    async def list_instances(self, user_id: Optional[int] = None) -> List[InstanceRecord]:
        """List instances, optionally only those owned by user_id."""
        query = "SELECT * FROM instances"
        params: list = []
        if user_id is not None:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY id ASC"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [InstanceRecord(
                    id=row["id"],
                    user_id=row["user_id"],
                    label=row["label"],
                    url=row["url"],
                    username=row["username"],
                    password=row["password"],
                ) for row in rows]

    async def save_integration(self, integration: IntegrationRecord) -> int:
        """Insert or update an indexer integration. Returns its id."""
        async with aiosqlite.connect(self.db_path) as db:
            if integration.id is None:
                cursor = await db.execute("""
                    INSERT INTO integrations (user_id, label, url, api_key)
                    VALUES (?, ?, ?, ?)
                """, (
                    integration.user_id, integration.label,
                    integration.url, integration.api_key,
                ))
                integration.id = cursor.lastrowid
            else:
                await db.execute("""
                    INSERT OR REPLACE INTO integrations (id, user_id, label, url, api_key)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    integration.id, integration.user_id, integration.label,
                    integration.url, integration.api_key,
                ))
            await db.commit()
            return integration.id

    async def get_integration(
        self, integration_id: int, user_id: Optional[int] = None
    ) -> Optional[IntegrationRecord]:
        """Get an integration, optionally restricted to its owner."""
        query = "SELECT * FROM integrations WHERE id = ?"
        params: list = [integration_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                row = await cursor.fetchone()
                if not row:
                    return None
                return IntegrationRecord(
                    id=row["id"],
                    user_id=row["user_id"],
                    label=row["label"],
                    url=row["url"],
                    api_key=row["api_key"],
                )

    # -------------------------------------------------------------------------
    # Scan Config Operations
    # -------------------------------------------------------------------------

    async def save_scan_config(self, config: ScanConfig) -> None:
        """
        Save or update the scan configuration of an instance.

        last_run and next_run are owned by the scheduler and are left
        untouched on an existing row.
        """
        if config.interval_hours is None or config.interval_hours < 1:
            raise InvalidIntervalError(config.interval_hours)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT INTO cross_seed_config
                (instance_id, enabled, interval_hours, dry_run, category_suffix, tag,
                 skip_recheck, integration_id, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(instance_id) DO UPDATE SET
                    enabled = excluded.enabled,
                    interval_hours = excluded.interval_hours,
                    dry_run = excluded.dry_run,
                    category_suffix = excluded.category_suffix,
                    tag = excluded.tag,
                    skip_recheck = excluded.skip_recheck,
                    integration_id = excluded.integration_id,
                    updated_at = excluded.updated_at
            """, (
                config.instance_id, int(config.enabled), config.interval_hours,
                int(config.dry_run), config.category_suffix, config.tag,
                int(config.skip_recheck), config.integration_id, _now(),
            ))
            await db.commit()

    async def get_scan_config(self, instance_id: int) -> Optional[ScanConfig]:
        """Get the scan configuration of an instance."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM cross_seed_config WHERE instance_id = ?", (instance_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_config(row) if row else None

    async def list_scan_configs(self) -> List[ScanConfig]:
        """Get every scan configuration."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM cross_seed_config ORDER BY instance_id ASC"
            ) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_config(row) for row in rows]

    async def update_last_run(self, instance_id: int, timestamp: Optional[float] = None) -> None:
        """Record when a scan last completed."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE cross_seed_config SET last_run = ?, updated_at = ? WHERE instance_id = ?",
                (timestamp if timestamp is not None else _now(), _now(), instance_id),
            )
            await db.commit()

    async def update_next_run(self, instance_id: int, timestamp: Optional[float]) -> None:
        """Record (or clear) when the next scheduled scan is due."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE cross_seed_config SET next_run = ?, updated_at = ? WHERE instance_id = ?",
                (timestamp, _now(), instance_id),
            )
            await db.commit()

    # -------------------------------------------------------------------------
    # Searchee Operations
    # -------------------------------------------------------------------------

    async def get_searchee(self, instance_id: int, torrent_hash: str) -> Optional[Searchee]:
        """Get a searchee by its (instance, hash) key."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM cross_seed_searchee WHERE instance_id = ? AND torrent_hash = ?",
                (instance_id, torrent_hash),
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_searchee(row) if row else None

    async def get_searchee_hashes(self, instance_id: int) -> Set[str]:
        """Get the torrent hashes of every searchee recorded for an instance."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT torrent_hash FROM cross_seed_searchee WHERE instance_id = ?",
                (instance_id,),
            ) as cursor:
                rows = await cursor.fetchall()
                return {row[0] for row in rows}

    async def upsert_searchee(
        self,
        instance_id: int,
        torrent_hash: str,
        name: str,
        total_size: int,
        file_count: int,
        file_sizes: List[int],
    ) -> int:
        """Insert a searchee, or refresh last_searched if it exists. Returns its id."""
        now = _now()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT INTO cross_seed_searchee
                (instance_id, torrent_hash, torrent_name, total_size, file_count,
                 file_sizes, first_searched, last_searched)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(instance_id, torrent_hash) DO UPDATE SET
                    last_searched = excluded.last_searched
            """, (
                instance_id, torrent_hash, name, total_size, file_count,
                json.dumps(sorted(file_sizes)), now, now,
            ))
            async with db.execute(
                "SELECT id FROM cross_seed_searchee WHERE instance_id = ? AND torrent_hash = ?",
                (instance_id, torrent_hash),
            ) as cursor:
                row = await cursor.fetchone()
            await db.commit()
            return row[0]

    async def list_searchees(
        self, instance_id: int, limit: int = 100, offset: int = 0
    ) -> List[Searchee]:
        """List searchees with their decision counts, most recently searched first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("""
                SELECT s.*, COUNT(d.id) AS decision_count
                FROM cross_seed_searchee s
                LEFT JOIN cross_seed_decision d ON s.id = d.searchee_id
                WHERE s.instance_id = ?
                GROUP BY s.id
                ORDER BY s.last_searched DESC
                LIMIT ? OFFSET ?
            """, (instance_id, limit, offset)) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_searchee(row) for row in rows]

    async def count_searchees(self, instance_id: int) -> int:
        """Count searchees recorded for an instance."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM cross_seed_searchee WHERE instance_id = ?",
                (instance_id,),
            ) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0

    async def get_searchee_by_id(self, searchee_id: int, instance_id: int) -> Optional[Searchee]:
        """Get a searchee by id, scoped to an instance."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM cross_seed_searchee WHERE id = ? AND instance_id = ?",
                (searchee_id, instance_id),
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_searchee(row) if row else None

    async def clear_history(self, instance_id: int) -> int:
        """Delete an instance's searchees and their decisions. Returns searchees deleted."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                DELETE FROM cross_seed_decision WHERE searchee_id IN (
                    SELECT id FROM cross_seed_searchee WHERE instance_id = ?
                )
            """, (instance_id,))
            cursor = await db.execute(
                "DELETE FROM cross_seed_searchee WHERE instance_id = ?", (instance_id,)
            )
            deleted = cursor.rowcount
            await db.commit()
            return deleted

    # -------------------------------------------------------------------------
    # Decision Operations
    # -------------------------------------------------------------------------

    async def get_decision(self, searchee_id: int, guid: str) -> Optional[Decision]:
        """Get the decision recorded for a (searchee, candidate guid) pair."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM cross_seed_decision WHERE searchee_id = ? AND guid = ?",
                (searchee_id, guid),
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_decision(row) if row else None

    async def touch_decision(self, searchee_id: int, guid: str) -> None:
        """Refresh last_seen of an existing decision."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE cross_seed_decision SET last_seen = ? WHERE searchee_id = ? AND guid = ?",
                (_now(), searchee_id, guid),
            )
            await db.commit()

    async def upsert_decision(
        self,
        searchee_id: int,
        guid: str,
        info_hash: Optional[str],
        candidate_name: str,
        candidate_size: Optional[int],
        decision: DecisionKind,
    ) -> None:
        """Insert a decision, or overwrite kind/info-hash and refresh last_seen."""
        now = _now()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT INTO cross_seed_decision
                (searchee_id, guid, info_hash, candidate_name, candidate_size,
                 decision, first_seen, last_seen)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(searchee_id, guid) DO UPDATE SET
                    info_hash = excluded.info_hash,
                    decision = excluded.decision,
                    last_seen = excluded.last_seen
            """, (
                searchee_id, guid, info_hash, candidate_name, candidate_size,
                decision.value, now, now,
            ))
            await db.commit()

    async def list_decisions(self, searchee_id: int) -> List[Decision]:
        """List a searchee's decisions, most recently seen first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM cross_seed_decision WHERE searchee_id = ? ORDER BY last_seen DESC",
                (searchee_id,),
            ) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_decision(row) for row in rows]

    # -------------------------------------------------------------------------
    # Utility Operations
    # -------------------------------------------------------------------------

    async def get_stats(self) -> Dict:
        """Get database statistics."""
        async with aiosqlite.connect(self.db_path) as db:
            stats = {}

            for table in ["instances", "integrations", "cross_seed_config",
                          "cross_seed_searchee", "cross_seed_decision"]:
                async with db.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
                    row = await cursor.fetchone()
                    stats[table] = row[0] if row else 0

            return stats
