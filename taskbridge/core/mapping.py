"""In-memory mapping store with batched persistence."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from taskbridge.core.context import SyncContext
from taskbridge.core.models import MappingEntry
from taskbridge.utils.db import StateDB


class MappingStore:
    """
    Keyed map from task identifier to remote-entry linkage.

    ``put`` and ``remove`` only touch memory and mark the store dirty.
    ``flush`` is the single point of durable persistence: it writes the whole
    store in one transaction, so any number of puts between two flushes cost
    one write.

    The store is mutated only by the reconciliation engine, from a single
    logical thread of control.
    """

    def __init__(
        self,
        db: StateDB,
        context: SyncContext | None = None,
        settings_snapshot: Callable[[], dict[str, Any]] | None = None,
    ):
        """
        Args:
            db: Backing state database
            context: Logging context
            settings_snapshot: Returns the settings stored alongside the mappings
        """
        self.db = db
        self.context = context or SyncContext()
        self.settings_snapshot = settings_snapshot
        self._entries: dict[str, MappingEntry] = {}
        # Stored rows that could not be decoded; left in the database as they are
        self._unreadable: set[str] = set()
        self._dirty = False
        self.flush_count = 0

    async def load(self) -> None:
        """Replace the in-memory state with what is stored on disk."""
        await self.db.initialize()
        self._entries = {m.identifier: m for m in await self.db.load_mappings()}
        self._unreadable = set(self.db.unreadable_identifiers)
        self._dirty = False
        if self._unreadable:
            self.context.warning(
                "%s stored mappings are unreadable and will be skipped until forgotten or reset",
                len(self._unreadable),
            )
        self.context.debug("Loaded %s mappings", len(self._entries))

    def get(self, identifier: str | None) -> MappingEntry | None:
        if not identifier:
            return None
        return self._entries.get(identifier)

    def put(self, identifier: str, entry: MappingEntry) -> None:
        if identifier != entry.identifier:
            raise ValueError(f"Mapping key {identifier} does not match entry {entry.identifier}")
        self._entries[identifier] = entry
        self._dirty = True

    def remove(self, identifier: str) -> bool:
        """Explicitly drop one mapping (operator action, never automatic)."""
        unreadable = identifier in self._unreadable
        self._unreadable.discard(identifier)
        if self._entries.pop(identifier, None) is None and not unreadable:
            return False
        self._dirty = True
        return True

    def clear(self) -> None:
        if self._entries or self._unreadable:
            self._entries.clear()
            self._unreadable.clear()
            self._dirty = True

    def keys(self) -> frozenset[str]:
        return frozenset(self._entries)

    def values(self) -> list[MappingEntry]:
        return list(self._entries.values())

    def by_remote_uid(self) -> dict[str, MappingEntry]:
        return {entry.remote_uid: entry for entry in self._entries.values()}

    @property
    def dirty(self) -> bool:
        return self._dirty

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries

    async def flush(self) -> bool:
        """
        Persist the whole store if anything changed since the last flush.

        Returns:
            True if a write happened, False if the store was clean

        Raises:
            PersistenceError: If the write fails; the store stays dirty
        """
        self.flush_count += 1
        if not self._dirty:
            self.context.debug("Mapping store clean, nothing to flush")
            return False

        settings = self.settings_snapshot() if self.settings_snapshot else None
        await self.db.write_snapshot(self._entries.values(), settings, keep=self._unreadable)
        self._dirty = False
        self.context.debug("Flushed %s mappings", len(self._entries))
        return True
