# tests/test_engine.py

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from taskbridge.core.config import SyncConfig
from taskbridge.core.errors import SyncCycleError
from taskbridge.core.identity import extract, is_well_formed
from taskbridge.core.mapping import MappingStore
from taskbridge.core.models import CycleState, EntryFields, MappingEntry, TaskStatus
from taskbridge.core.vtodo import build_new, read_entry
from taskbridge.sources.caldav.errors import CalDAVAuthError, CalDAVNetworkError
from taskbridge.utils.db import StateDB

from .conftest import NOW, TODAY, EngineFactory
from .fakes import FakeNoteStore, FakeTransport

ID = "task-1b4e28ba-2fa1-4d3b-a3f5-ef19b5a7633b"

REMOTE_WITH_EXTRAS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Nextcloud//Tasks//EN",
        "BEGIN:VTODO",
        f"UID:{ID}",
        "CATEGORIES:Work,Finance",
        "SUMMARY:Old",
        "PRIORITY:2",
        "STATUS:NEEDS-ACTION",
        "LAST-MODIFIED:20260101T000000Z",
        "DTSTAMP:20260101T000000Z",
        "END:VTODO",
        "END:VCALENDAR",
        "",
    ]
)


def remote_text(summary: str, uid: str = ID, last_modified: str = "20260112T000000Z", extra: str = "") -> str:
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "BEGIN:VTODO",
        f"UID:{uid}",
        f"SUMMARY:{summary}",
        "STATUS:NEEDS-ACTION",
        f"LAST-MODIFIED:{last_modified}",
        f"DTSTAMP:{last_modified}",
    ]
    if extra:
        lines.append(extra)
    lines += ["END:VTODO", "END:VCALENDAR", ""]
    return "\r\n".join(lines)


def seed_mapping(
    store: MappingStore,
    href: str,
    revision_tag: str | None,
    content_hash: str = "stale-hash",
    remote_uid: str = ID,
    identifier: str = ID,
) -> MappingEntry:
    entry = MappingEntry(
        identifier=identifier,
        remote_uid=remote_uid,
        remote_href=href,
        revision_tag=revision_tag,
        last_synced_at=NOW - timedelta(days=5),
        last_known_content_hash=content_hash,
        last_known_local_modified=NOW - timedelta(days=5),
        last_known_remote_modified=NOW - timedelta(days=5),
    )
    store.put(identifier, entry)
    return entry


@pytest.mark.asyncio
async def test_create_scenario(make_engine: EngineFactory, mapping_store: MappingStore) -> None:
    note = FakeNoteStore.with_lines("- [ ] Buy milk 📅 2026-01-20")
    transport = FakeTransport()
    engine = await make_engine(note, transport)

    result = await engine.run_cycle()

    assert result.created == 1
    assert result.ok
    assert engine.state is CycleState.IDLE
    created = transport.created[0].split("\r\n")
    assert "SUMMARY:Buy milk" in created
    assert "DUE;VALUE=DATE:20260120" in created

    identifier = extract(note.line(1))
    assert is_well_formed(identifier)
    mapping = mapping_store.get(identifier)
    assert mapping is not None
    assert mapping.remote_uid == identifier
    assert mapping.revision_tag == transport.entries[identifier][1]
    assert mapping_store.flush_count == 1


@pytest.mark.asyncio
async def test_second_cycle_is_unchanged(make_engine: EngineFactory) -> None:
    note = FakeNoteStore.with_lines("- [ ] Buy milk 📅 2026-01-20")
    transport = FakeTransport()
    await (await make_engine(note, transport)).run_cycle()

    result = await (await make_engine(note, transport)).run_cycle()

    assert result.unchanged == 1
    assert result.created == result.updated == result.pulled == 0
    assert len(transport.created) == 1
    assert transport.updated == []


@pytest.mark.asyncio
async def test_thousand_tasks_flush_once(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
    state_db: StateDB,
) -> None:
    note = FakeNoteStore.with_lines(*(f"- [ ] Task {n}" for n in range(1, 1001)))
    transport = FakeTransport()
    engine = await make_engine(note, transport)

    result = await engine.run_cycle()

    assert result.created == 1000
    assert mapping_store.flush_count == 1
    assert await state_db.count_mappings() == 1000


@pytest.mark.asyncio
async def test_partial_failure_keeps_other_mappings(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
    state_db: StateDB,
) -> None:
    note = FakeNoteStore.with_lines(*(f"- [ ] Task {n}" for n in range(1, 1001)))
    transport = FakeTransport(fail_create_for={"Task 500"})
    engine = await make_engine(note, transport)

    result = await engine.run_cycle()

    assert result.created == 999
    assert result.errors == 1
    assert "Task 500" in result.error_messages[0]
    assert result.ok
    assert mapping_store.flush_count == 1

    persisted = {m.identifier for m in await state_db.load_mappings()}
    assert len(persisted) == 999
    failed_id = extract(note.line(500))
    assert failed_id not in persisted
    assert extract(note.line(499)) in persisted
    assert extract(note.line(501)) in persisted


@pytest.mark.asyncio
async def test_local_change_preserves_remote_properties(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
) -> None:
    transport = FakeTransport()
    entry = transport.add(REMOTE_WITH_EXTRAS)
    note = FakeNoteStore.with_lines(f"- [x] New ✅ 2026-01-14 ^{ID}")
    engine = await make_engine(note, transport)
    seed_mapping(mapping_store, entry.href, entry.revision_tag)

    result = await engine.run_cycle()

    assert result.updated == 1
    href, sent_tag, raw = transport.updated[0]
    assert href == entry.href
    assert sent_tag == entry.revision_tag
    lines = raw.split("\r\n")
    assert "SUMMARY:New" in lines
    assert "STATUS:COMPLETED" in lines
    assert not any(line.startswith("DUE") for line in lines)
    assert "CATEGORIES:Work,Finance" in lines
    assert "PRIORITY:2" in lines

    task = (await note.list_tasks())[0]
    mapping = mapping_store.get(ID)
    assert mapping.last_known_content_hash == task.content_hash()
    assert mapping.revision_tag == transport.entries[ID][1]


@pytest.mark.asyncio
async def test_remote_change_is_pulled(make_engine: EngineFactory, mapping_store: MappingStore) -> None:
    transport = FakeTransport()
    entry = transport.add(
        remote_text("Renamed remotely", extra="DUE;VALUE=DATE:20260201").replace(
            "STATUS:NEEDS-ACTION", "STATUS:COMPLETED"
        )
    )
    note = FakeNoteStore.with_lines(f"  - [ ] Old ^{ID}")
    engine = await make_engine(note, transport)
    current = (await note.list_tasks())[0]
    seed_mapping(mapping_store, entry.href, '"stale"', content_hash=current.content_hash())

    result = await engine.run_cycle()

    assert result.pulled == 1
    assert transport.updated == []
    assert note.line(1) == f"  - [x] Renamed remotely 📅 2026-02-01 ✅ {TODAY.isoformat()} ^{ID}\n"

    pulled = (await note.list_tasks())[0]
    assert pulled.status is TaskStatus.COMPLETED
    assert mapping_store.get(ID).last_known_content_hash == pulled.content_hash()
    assert mapping_store.get(ID).revision_tag == entry.revision_tag

    again = await (await make_engine(note, transport)).run_cycle()
    assert again.unchanged == 1


@pytest.mark.asyncio
async def test_remote_change_to_unmanaged_fields_leaves_line_alone(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
) -> None:
    transport = FakeTransport()
    entry = transport.add(remote_text("Same", extra="PRIORITY:1"))
    note = FakeNoteStore.with_lines(f"- [ ] Same ^{ID}")
    engine = await make_engine(note, transport)
    current = (await note.list_tasks())[0]
    seed_mapping(mapping_store, entry.href, '"old"', content_hash=current.content_hash())

    result = await engine.run_cycle()

    assert result.unchanged == 1
    assert note.rewrites == []
    assert mapping_store.get(ID).revision_tag == entry.revision_tag


@pytest.mark.asyncio
async def test_mismatch_without_change_markers_is_pulled(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
) -> None:
    # Stored LAST-MODIFIED equals the server's and no revision tag was recorded
    transport = FakeTransport()
    entry = transport.add(remote_text("Edited on server", last_modified="20260110T090000Z"))
    note = FakeNoteStore.with_lines(f"- [ ] Original ^{ID}")
    engine = await make_engine(note, transport)
    current = (await note.list_tasks())[0]
    seed_mapping(mapping_store, entry.href, None, content_hash=current.content_hash())

    result = await engine.run_cycle()

    assert result.pulled == 1
    assert transport.updated == []
    assert note.line(1) == f"- [ ] Edited on server ^{ID}\n"


@pytest.mark.asyncio
async def test_matching_values_without_change_markers_stay_unchanged(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
) -> None:
    transport = FakeTransport()
    entry = transport.add(remote_text("Original", last_modified="20260110T090000Z"))
    note = FakeNoteStore.with_lines(f"- [ ] Original ^{ID}")
    engine = await make_engine(note, transport)
    current = (await note.list_tasks())[0]
    seed_mapping(mapping_store, entry.href, None, content_hash=current.content_hash())

    result = await engine.run_cycle()

    assert result.unchanged == 1
    assert note.rewrites == []
    assert transport.updated == []


@pytest.mark.asyncio
async def test_older_remote_timestamp_is_not_a_remote_change(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
) -> None:
    # Server clock went back: LAST-MODIFIED is older than the stored value but
    # newer than the local edit, so treating it as a change would discard the edit
    transport = FakeTransport()
    entry = transport.add(remote_text("Server copy", last_modified="20260105T000000Z"))
    note = FakeNoteStore.with_lines(f"- [ ] Local edit ^{ID}")
    note.modified_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    engine = await make_engine(note, transport)
    seed_mapping(mapping_store, entry.href, None)

    result = await engine.run_cycle()

    assert result.updated == 1
    assert read_entry(transport.raw(ID)).fields.summary == "Local edit"
    assert note.line(1) == f"- [ ] Local edit ^{ID}\n"


@pytest.mark.parametrize(
    ("local_mtime", "expected"),
    [
        (datetime(2026, 1, 14, 12, 0, tzinfo=timezone.utc), "local"),
        (datetime(2026, 1, 11, 12, 0, tzinfo=timezone.utc), "remote"),
        (datetime(2026, 1, 12, 0, 0, 0, 900000, tzinfo=timezone.utc), "local"),
    ],
)
@pytest.mark.asyncio
async def test_conflict_last_write_wins(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
    local_mtime: datetime,
    expected: str,
) -> None:
    transport = FakeTransport()
    entry = transport.add(remote_text("Remote edit", last_modified="20260112T000000Z"))
    note = FakeNoteStore.with_lines(f"- [ ] Local edit ^{ID}")
    note.modified_at = local_mtime
    engine = await make_engine(note, transport)
    seed_mapping(mapping_store, entry.href, '"stale"')

    result = await engine.run_cycle()

    if expected == "local":
        assert result.updated == 1
        assert read_entry(transport.raw(ID)).fields.summary == "Local edit"
        assert note.line(1) == f"- [ ] Local edit ^{ID}\n"
    else:
        assert result.pulled == 1
        assert transport.updated == []
        assert note.line(1) == f"- [ ] Remote edit ^{ID}\n"


@pytest.mark.asyncio
async def test_missing_remote_entry_is_reported_not_recreated(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
) -> None:
    note = FakeNoteStore.with_lines(f"- [ ] Orphan ^{ID}")
    transport = FakeTransport()
    engine = await make_engine(note, transport)
    seed_mapping(mapping_store, f"/cal/{ID}.ics", '"1"')

    result = await engine.run_cycle()

    assert result.errors == 1
    assert "no longer exists" in result.error_messages[0]
    assert transport.created == []
    assert transport.refetched == [ID]
    assert mapping_store.get(ID) is not None


@pytest.mark.asyncio
async def test_unmapped_task_is_matched_by_summary(make_engine: EngineFactory, mapping_store: MappingStore) -> None:
    transport = FakeTransport()
    transport.add(build_new(EntryFields("Buy milk"), uid="remote-1", now=NOW - timedelta(days=3)))
    note = FakeNoteStore.with_lines("- [ ] Buy milk", "- [ ] buy MILK")
    engine = await make_engine(note, transport)

    result = await engine.run_cycle()

    assert result.linked == 1
    assert result.created == 1
    assert len(transport.created) == 1
    assert transport.updated == []

    linked_id = extract(note.line(1))
    assert mapping_store.get(linked_id).remote_uid == "remote-1"
    assert mapping_store.get(extract(note.line(2))).remote_uid != "remote-1"


@pytest.mark.asyncio
async def test_match_strategy_none_always_creates(make_engine: EngineFactory) -> None:
    transport = FakeTransport()
    transport.add(build_new(EntryFields("Buy milk"), uid="remote-1", now=NOW))
    note = FakeNoteStore.with_lines("- [ ] Buy milk")
    engine = await make_engine(note, transport, SyncConfig(match_strategy="none", include_vault_link=False))

    result = await engine.run_cycle()

    assert result.created == 1
    assert result.linked == 0


@pytest.mark.asyncio
async def test_interrupted_create_is_linked_by_uid(make_engine: EngineFactory, mapping_store: MappingStore) -> None:
    transport = FakeTransport()
    transport.add(build_new(EntryFields("Buy oat milk"), uid=ID, now=datetime(2026, 1, 1, tzinfo=timezone.utc)))
    note = FakeNoteStore.with_lines(f"- [ ] Buy milk ^{ID}")
    engine = await make_engine(note, transport, SyncConfig(match_strategy="uid", include_vault_link=False))

    result = await engine.run_cycle()

    assert result.linked == 1
    assert transport.created == []
    assert read_entry(transport.raw(ID)).fields.summary == "Buy milk"
    assert mapping_store.get(ID).remote_uid == ID


@pytest.mark.asyncio
async def test_duplicate_identifier_lines_are_reported(make_engine: EngineFactory) -> None:
    note = FakeNoteStore.with_lines(f"- [ ] First ^{ID}", f"- [ ] Copy ^{ID}")
    transport = FakeTransport()
    engine = await make_engine(note, transport)

    result = await engine.run_cycle()

    assert result.created == 1
    assert result.errors == 1
    assert "duplicate task identifier" in result.error_messages[0]


@pytest.mark.asyncio
async def test_invalid_entry_is_rebuilt_on_degraded_path(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
) -> None:
    not_a_todo = "BEGIN:VCALENDAR\r\nBEGIN:VEVENT\r\nUID:ev-1\r\nSUMMARY:Party\r\nEND:VEVENT\r\nEND:VCALENDAR\r\n"
    transport = FakeTransport()
    transport.entries["ev-1"] = ("/cal/ev-1.ics", '"e1"', not_a_todo)
    note = FakeNoteStore.with_lines(f"- [ ] Fix it ^{ID}")
    engine = await make_engine(note, transport)
    seed_mapping(mapping_store, "/cal/ev-1.ics", '"e1"', remote_uid="ev-1")

    result = await engine.run_cycle()

    assert result.degraded == 1
    assert result.updated == 1
    rebuilt = read_entry(transport.raw("ev-1"))
    assert rebuilt.uid == "ev-1"
    assert rebuilt.fields.summary == "Fix it"


@pytest.mark.asyncio
async def test_auth_error_aborts_cycle_after_flush(make_engine: EngineFactory, mapping_store: MappingStore) -> None:
    note = FakeNoteStore.with_lines(*(f"- [ ] Task {n}" for n in range(1, 21)))
    transport = FakeTransport(write_error=CalDAVAuthError("bad credentials", 401))
    engine = await make_engine(note, transport, SyncConfig(max_concurrency=4, include_vault_link=False))

    with pytest.raises(SyncCycleError) as excinfo:
        await engine.run_cycle()

    result = excinfo.value.result
    assert isinstance(result.fatal_error, CalDAVAuthError)
    assert result.errors == 4
    assert not result.ok
    assert mapping_store.flush_count == 1
    assert engine.state is CycleState.IDLE


@pytest.mark.asyncio
async def test_index_failure_aborts_before_touching_tasks(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
) -> None:
    note = FakeNoteStore.with_lines("- [ ] Buy milk")
    transport = FakeTransport(fetch_error=CalDAVNetworkError("server down"))
    engine = await make_engine(note, transport)

    with pytest.raises(SyncCycleError) as excinfo:
        await engine.run_cycle()

    assert isinstance(excinfo.value.cause, CalDAVNetworkError)
    assert note.rewrites == []
    assert mapping_store.flush_count == 1


@pytest.mark.asyncio
async def test_filtered_tasks_are_skipped(make_engine: EngineFactory) -> None:
    note = FakeNoteStore.with_lines("- [ ] Someday #someday", "- [ ] No date", "- [ ] Dated 📅 2026-02-01")
    transport = FakeTransport()
    config = SyncConfig(excluded_tags=["someday"], due_date_only=True, include_vault_link=False)
    engine = await make_engine(note, transport, config)

    result = await engine.run_cycle()

    assert result.skipped == 2
    assert result.created == 1
    assert read_entry(transport.created[0]).fields.due_date == date(2026, 2, 1)


@pytest.mark.asyncio
async def test_create_moves_links_and_adds_vault_link(make_engine: EngineFactory) -> None:
    note = FakeNoteStore.with_lines("- [ ] Read [docs](https://example.com/docs) today")
    transport = FakeTransport()
    config = SyncConfig(hyperlink_sync_mode="move", include_vault_link=True)
    engine = await make_engine(note, transport, config, vault_name="My Vault")

    await engine.run_cycle()

    parsed = read_entry(transport.created[0])
    identifier = extract(note.line(1))
    assert parsed.fields.summary == "Read docs today"
    assert parsed.description.startswith("Links:\n- docs: https://example.com/docs")
    assert f"Obsidian Link: obsidian://open?vault=My%20Vault&file=Tasks.md&block={identifier}" in parsed.description


@pytest.mark.asyncio
async def test_transport_calls_are_bounded(make_engine: EngineFactory) -> None:
    class SlowTransport(FakeTransport):
        in_flight = 0
        peak = 0

        async def create_entry(self, raw_text):
            SlowTransport.in_flight += 1
            SlowTransport.peak = max(SlowTransport.peak, SlowTransport.in_flight)
            await asyncio.sleep(0)
            try:
                return await super().create_entry(raw_text)
            finally:
                SlowTransport.in_flight -= 1

    note = FakeNoteStore.with_lines(*(f"- [ ] Task {n}" for n in range(30)))
    engine = await make_engine(note, SlowTransport(), SyncConfig(max_concurrency=3, include_vault_link=False))

    result = await engine.run_cycle()

    assert result.created == 30
    assert 1 < SlowTransport.peak <= 3


@pytest.mark.asyncio
async def test_cancelled_cycle_still_saves_completed_writes(
    make_engine: EngineFactory,
    mapping_store: MappingStore,
    state_db: StateDB,
) -> None:
    stalled = asyncio.Event()

    class StallingTransport(FakeTransport):
        async def create_entry(self, raw_text):
            if len(self.created) == 4:
                stalled.set()
                await asyncio.Event().wait()
            return await super().create_entry(raw_text)

    note = FakeNoteStore.with_lines(*(f"- [ ] Task {n}" for n in range(1, 21)))
    transport = StallingTransport()
    engine = await make_engine(note, transport, SyncConfig(max_concurrency=1, include_vault_link=False))

    cycle = asyncio.create_task(engine.run_cycle())
    await stalled.wait()
    cycle.cancel()
    with pytest.raises(asyncio.CancelledError):
        await cycle

    assert len(transport.created) == 4
    assert mapping_store.flush_count == 1
    assert engine.state is CycleState.IDLE
    persisted = {m.identifier for m in await state_db.load_mappings()}
    assert persisted == {extract(note.line(n)) for n in range(1, 5)}
