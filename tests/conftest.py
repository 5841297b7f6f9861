# tests/conftest.py

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from taskbridge.core.config import SyncConfig
from taskbridge.core.context import SyncContext
from taskbridge.core.engine import ReconciliationEngine
from taskbridge.core.mapping import MappingStore
from taskbridge.utils.db import StateDB

from .fakes import FakeNoteStore, FakeTransport

NOW = datetime(2026, 1, 15, 9, 0, 0, tzinfo=timezone.utc)
TODAY = date(2026, 1, 15)

EngineFactory = Callable[..., Awaitable[ReconciliationEngine]]


@pytest.fixture()
def context() -> SyncContext:
    return SyncContext("DEBUG")


@pytest.fixture()
def state_db(tmp_path: Path) -> StateDB:
    return StateDB(tmp_path / "state.db")


@pytest.fixture()
def mapping_store(state_db: StateDB, context: SyncContext) -> MappingStore:
    """Real SQLite-backed store; call ``await mapping_store.load()`` before use."""
    return MappingStore(state_db, context, settings_snapshot=lambda: {"due_date_only": False})


@pytest.fixture()
def make_engine(mapping_store: MappingStore, context: SyncContext) -> EngineFactory:
    """
    Build an engine around fakes with a fixed clock.

    The mapping store is loaded (schema created) before the engine is returned.
    """

    async def factory(
        note_store: FakeNoteStore,
        transport: FakeTransport,
        config: SyncConfig | None = None,
        vault_name: str | None = None,
    ) -> ReconciliationEngine:
        await mapping_store.load()
        return ReconciliationEngine(
            note_store=note_store,
            transport=transport,
            mappings=mapping_store,
            config=config or SyncConfig(include_vault_link=False),
            context=context,
            vault_name=vault_name,
            clock=lambda: NOW,
            today=lambda: TODAY,
        )

    return factory
