"""Database utilities for persisting sync state."""

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import aiosqlite

from taskbridge.core.errors import PersistenceError
from taskbridge.core.models import MappingEntry

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_MAPPING_COLUMNS = (
    "identifier",
    "remote_uid",
    "remote_href",
    "revision_tag",
    "last_synced_at",
    "last_known_content_hash",
    "last_known_local_modified",
    "last_known_remote_modified",
)


class StateDB:
    """
    Manages the SQLite database holding the sync state.

    The database is a versioned record with two parts:
    - ``meta``: schema version and a JSON snapshot of the sync settings
    - ``task_mapping``: one row per task identifier linked to a remote entry

    ``write_snapshot`` replaces both parts in a single transaction so a crash
    mid-write leaves the previous snapshot intact.
    """

    def __init__(self, db_path: Path):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self.unreadable_identifiers: set[str] = set()

    async def initialize(self) -> None:
        """Create the schema if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS task_mapping (
                    identifier TEXT PRIMARY KEY,
                    remote_uid TEXT NOT NULL,
                    remote_href TEXT NOT NULL,
                    revision_tag TEXT,
                    last_synced_at REAL NOT NULL,
                    last_known_content_hash TEXT NOT NULL,
                    last_known_local_modified REAL,
                    last_known_remote_modified REAL
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_task_mapping_remote_uid
                ON task_mapping(remote_uid)
                """
            )
            await db.execute(
                "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            await db.commit()
            logger.debug(f"State database initialized at {self.db_path}")

    async def get_schema_version(self) -> int:
        """Return the schema version recorded in the database."""
        value = await self._get_meta("schema_version")
        return int(value) if value else 0

    async def load_settings(self) -> dict[str, Any]:
        """Return the settings snapshot from the last write, or an empty dict."""
        value = await self._get_meta("settings")
        if not value:
            return {}
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable settings snapshot: {e}")
            return {}

    async def load_mappings(self) -> list[MappingEntry]:
        """
        Return every readable stored mapping.

        Identifiers of rows that cannot be decoded are collected in
        ``unreadable_identifiers``; pass them to ``write_snapshot(keep=...)``
        so the next snapshot leaves those rows in place.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM task_mapping") as cursor:
                rows = await cursor.fetchall()

        mappings = []
        self.unreadable_identifiers = set()
        for row in rows:
            try:
                mappings.append(MappingEntry.from_row(row))
            except ValueError as e:
                self.unreadable_identifiers.add(row["identifier"])
                logger.warning(f"Unreadable mapping row kept as stored, not synced: {e}")
        return mappings

    async def count_mappings(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM task_mapping") as cursor:
                row = await cursor.fetchone()
                return int(row[0]) if row else 0

    async def write_snapshot(
        self,
        mappings: Iterable[MappingEntry],
        settings: dict[str, Any] | None = None,
        keep: Iterable[str] = (),
    ) -> None:
        """
        Replace the stored mappings (and settings snapshot) in one transaction.

        Args:
            mappings: Complete set of mappings to persist
            settings: Optional settings snapshot stored alongside the mappings
            keep: Identifiers of stored rows to leave untouched

        Raises:
            PersistenceError: If the transaction fails; the previous snapshot is kept
        """
        rows = [mapping.to_row() for mapping in mappings]
        kept = sorted(set(keep) - {row[0] for row in rows})
        placeholders = ", ".join("?" for _ in _MAPPING_COLUMNS)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                try:
                    await db.execute("BEGIN IMMEDIATE")
                    if kept:
                        marks = ", ".join("?" for _ in kept)
                        await db.execute(f"DELETE FROM task_mapping WHERE identifier NOT IN ({marks})", kept)
                    else:
                        await db.execute("DELETE FROM task_mapping")
                    await db.executemany(
                        f"INSERT INTO task_mapping ({', '.join(_MAPPING_COLUMNS)}) VALUES ({placeholders})",
                        rows,
                    )
                    if settings is not None:
                        await db.execute(
                            "INSERT OR REPLACE INTO meta (key, value) VALUES ('settings', ?)",
                            (json.dumps(settings, sort_keys=True),),
                        )
                    await db.execute(
                        "INSERT OR REPLACE INTO meta (key, value) VALUES ('schema_version', ?)",
                        (str(SCHEMA_VERSION),),
                    )
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
        except Exception as e:
            raise PersistenceError(f"Failed to write sync state to {self.db_path}: {e}") from e

        logger.debug(f"Wrote {len(rows)} mappings to {self.db_path}")

    async def _get_meta(self, key: str) -> str | None:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT value FROM meta WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
                return row[0] if row else None
