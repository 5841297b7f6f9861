"""Reconciliation engine for markdown tasks ↔ CalDAV VTODO entries."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from taskbridge.core import identity
from taskbridge.core.config import AppConfig, SyncConfig
from taskbridge.core.conflict import Winner, describe_conflict, resolve_conflict
from taskbridge.core.context import SyncContext
from taskbridge.core.errors import (
    ConfigurationError,
    MalformedEntryError,
    MissingRemoteEntryError,
    PersistenceError,
    SyncCycleError,
    TaskBridgeError,
)
from taskbridge.core.filters import SyncFilter
from taskbridge.core.hyperlinks import (
    build_entry_description,
    build_vault_uri,
    process_description,
)
from taskbridge.core.mapping import MappingStore
from taskbridge.core.models import (
    CycleState,
    EntryFields,
    MappingEntry,
    RemoteEntry,
    SyncResult,
    Task,
    TaskStatus,
)
from taskbridge.core.ports import NoteStore, Transport
from taskbridge.core.vtodo import ParsedEntry, apply_update, build_new, read_entry
from taskbridge.sources.vault.parser import format_task_line
from taskbridge.utils.datetime_utils import utc_now


class Action(str, Enum):
    CREATE = "create"
    SYNC = "sync"
    LINK = "link"
    MISSING = "missing"


class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    PULLED = "pulled"
    LINKED = "linked"
    UNCHANGED = "unchanged"


@dataclass
class PlannedTask:
    """What the engine decided to do with one task before any I/O."""

    task: Task
    action: Action
    mapping: MappingEntry | None = None
    remote: RemoteEntry | None = None


@dataclass
class TaskOutcome:
    outcome: Outcome
    mapping: MappingEntry | None = None
    degraded: bool = False
    notes: list[str] = field(default_factory=list)


class ReconciliationEngine:
    """
    Runs reconciliation cycles between a note store and a CalDAV transport.

    Cycle phases: ``IDLE → INDEXING → PER_TASK_LOOP → PERSISTING → IDLE``.

    1. INDEXING: every remote entry is fetched once and indexed by UID.
    2. PER_TASK_LOOP: tasks that pass the filter are planned in order
       (create, sync, link or missing), then executed in chunks of
       ``max_concurrency`` concurrent transport calls. Mapping updates are
       applied afterwards in task order, from this coroutine only.
    3. PERSISTING: the mapping store is flushed exactly once, on success
       and on failure.

    Per-task errors are logged and counted. Configuration errors (bad
    credentials, unreachable server) stop the loop; the cycle then flushes and
    raises ``SyncCycleError``.
    """

    def __init__(
        self,
        note_store: NoteStore,
        transport: Transport,
        mappings: MappingStore,
        config: SyncConfig | None = None,
        context: SyncContext | None = None,
        vault_name: str | None = None,
        clock: Callable[[], datetime] = utc_now,
        today: Callable[[], date] = date.today,
    ):
        """
        Initialize the engine.

        Args:
            note_store: Source of local tasks and line rewrites
            transport: Remote calendar access
            mappings: Mapping store (loaded by the caller)
            config: Sync settings (defaults apply when omitted)
            context: Logging context for this engine
            vault_name: Vault name for obsidian:// links in new entries
            clock: Returns the current UTC instant
            today: Returns the local date used by the filter and completion dates
        """
        self.note_store = note_store
        self.transport = transport
        self.mappings = mappings
        self.config = config or SyncConfig()
        self.context = context or mappings.context
        self.vault_name = vault_name
        self.clock = clock
        self.today = today
        self.filter = SyncFilter.from_config(self.config)
        self.state = CycleState.IDLE

    async def run_cycle(self) -> SyncResult:
        """
        Run one reconciliation cycle.

        Returns:
            SyncResult with per-outcome counts and per-task error messages

        Raises:
            SyncCycleError: If the cycle aborted; carries the partial result
        """
        result = SyncResult(started_at=self.clock())
        fatal: Exception | None = None
        self.context.info("Starting sync cycle")

        try:
            self.state = CycleState.INDEXING
            tasks, index = await self._index()

            self.state = CycleState.PER_TASK_LOOP
            fatal = await self._reconcile(tasks, index, result)
        except Exception as e:
            fatal = e
        except BaseException:
            # Cancelled or interrupted: keep the mappings of completed writes
            self.context.warning("Sync cycle interrupted, saving progress")
            error = await self._persist(result)
            if error is not None:
                self.context.error("Failed to save partial sync state: %s", error)
            raise

        error = await self._persist(result)
        if error is not None:
            if fatal is None:
                fatal = error
            else:
                self.context.error("Failed to save partial sync state: %s", error)

        if fatal is not None:
            result.fatal_error = fatal
            self.context.error("Sync cycle aborted: %s", fatal)
            raise SyncCycleError(fatal, result) from fatal

        self.context.info(
            "Sync cycle complete: %s created, %s updated, %s pulled, %s linked, "
            "%s unchanged, %s skipped, %s degraded, %s errors",
            result.created,
            result.updated,
            result.pulled,
            result.linked,
            result.unchanged,
            result.skipped,
            result.degraded,
            result.errors,
        )
        return result

    async def _persist(self, result: SyncResult) -> PersistenceError | None:
        """Flush the mapping store once and return the cycle to IDLE."""
        self.state = CycleState.PERSISTING
        try:
            await self.mappings.flush()
        except PersistenceError as e:
            return e
        finally:
            self.state = CycleState.IDLE
            result.finished_at = self.clock()
        return None

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def _index(self) -> tuple[list[Task], dict[str, RemoteEntry]]:
        entries = await self.transport.fetch_all_entries()
        index: dict[str, RemoteEntry] = {}
        for entry in entries:
            if entry.uid in index:
                self.context.warning("Duplicate remote UID %s, keeping the first entry", entry.uid)
                continue
            index[entry.uid] = entry
        self.context.debug("Indexed %s remote entries", len(index))

        tasks = await self.note_store.list_tasks()
        self.context.debug("Read %s local tasks", len(tasks))
        return tasks, index

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, tasks: list[Task], index: dict[str, RemoteEntry], result: SyncResult) -> list[PlannedTask]:
        """
        Decide an action for every eligible task.

        Remote entries already owned by a mapping, or matched earlier in this
        cycle, are never matched again. A second task line carrying an
        identifier seen earlier in the cycle is reported and skipped.
        """
        mapped_ids = self.mappings.keys()
        claimed = set(self.mappings.by_remote_uid())
        summary_index: dict[str, list[str]] | None = None
        seen_ids: set[str] = set()
        today = self.today()
        planned: list[PlannedTask] = []

        for task in tasks:
            if not self.filter.should_sync(task, mapped_ids, today=today):
                result.skipped += 1
                continue

            identifier = task.identifier if identity.is_well_formed(task.identifier) else None
            if identifier is not None:
                if identifier in seen_ids:
                    result.record_error(f"{task.location}: duplicate task identifier {identifier}")
                    self.context.error("Duplicate task identifier %s at %s", identifier, task.location)
                    continue
                seen_ids.add(identifier)

            mapping = self.mappings.get(identifier)
            if mapping is not None:
                remote = index.get(mapping.remote_uid)
                action = Action.SYNC if remote is not None else Action.MISSING
                planned.append(PlannedTask(task, action, mapping, remote))
                continue

            remote = None
            strategy = self.config.match_strategy
            if strategy in ("uid", "summary") and identifier and identifier in index and identifier not in claimed:
                remote = index[identifier]
            elif strategy == "summary":
                if summary_index is None:
                    summary_index = self._build_summary_index(index, claimed)
                remote = self._match_by_summary(task, summary_index, claimed, index)

            if remote is not None:
                claimed.add(remote.uid)
                self.context.debug("Matched %s to existing entry %s", task.location, remote.uid)
                planned.append(PlannedTask(task, Action.LINK, remote=remote))
            else:
                planned.append(PlannedTask(task, Action.CREATE))

        return planned

    def _build_summary_index(self, index: dict[str, RemoteEntry], claimed: set[str]) -> dict[str, list[str]]:
        by_summary: dict[str, list[str]] = {}
        for uid, entry in index.items():
            if uid in claimed:
                continue
            try:
                summary = read_entry(entry.raw_text).fields.summary
            except MalformedEntryError:
                continue
            by_summary.setdefault(summary.strip().casefold(), []).append(uid)
        return by_summary

    def _match_by_summary(
        self,
        task: Task,
        summary_index: dict[str, list[str]],
        claimed: set[str],
        index: dict[str, RemoteEntry],
    ) -> RemoteEntry | None:
        summary = process_description(task.description, self.config.hyperlink_sync_mode).summary
        for uid in summary_index.get(summary.strip().casefold(), []):
            if uid not in claimed:
                return index[uid]
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _reconcile(
        self,
        tasks: list[Task],
        index: dict[str, RemoteEntry],
        result: SyncResult,
    ) -> Exception | None:
        planned = self.plan(tasks, index, result)
        self.context.info("Reconciling %s tasks (%s skipped by filters)", len(planned), result.skipped)

        chunk_size = max(1, self.config.max_concurrency)
        for start in range(0, len(planned), chunk_size):
            chunk = planned[start : start + chunk_size]
            outcomes = await asyncio.gather(
                *(self._execute(item) for item in chunk),
                return_exceptions=True,
            )

            fatal: Exception | None = None
            for item, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, ConfigurationError):
                        fatal = fatal or outcome
                    elif not isinstance(outcome, Exception):
                        raise outcome
                    self._record_failure(item, outcome, result)
                else:
                    self._record_outcome(item, outcome, result)

            if fatal is not None:
                return fatal
        return None

    def _record_failure(self, item: PlannedTask, exc: BaseException, result: SyncResult) -> None:
        task = item.task
        if isinstance(exc, MissingRemoteEntryError):
            self.context.warning("%s (%s)", exc, task.location)
        elif isinstance(exc, TaskBridgeError):
            self.context.error("Failed to sync %s: %s", task.location, exc)
        else:
            self.context.error("Unexpected error syncing %s: %r", task.location, exc, exc_info=exc)
        result.record_error(f"{task.location}: {exc}")

    def _record_outcome(self, item: PlannedTask, outcome: TaskOutcome, result: SyncResult) -> None:
        if outcome.mapping is not None:
            self.mappings.put(outcome.mapping.identifier, outcome.mapping)
        if outcome.degraded:
            result.degraded += 1
        for note in outcome.notes:
            self.context.info(note)

        if outcome.outcome is Outcome.CREATED:
            result.created += 1
        elif outcome.outcome is Outcome.UPDATED:
            result.updated += 1
        elif outcome.outcome is Outcome.PULLED:
            result.pulled += 1
        elif outcome.outcome is Outcome.LINKED:
            result.linked += 1
        else:
            result.unchanged += 1

    async def _execute(self, item: PlannedTask) -> TaskOutcome:
        if item.action is Action.CREATE:
            return await self._create(item.task)
        if item.action is Action.LINK:
            return await self._link(item.task, item.remote)
        if item.action is Action.MISSING:
            remote = await self._refetch_missing(item.task, item.mapping)
            return await self._sync(item.task, item.mapping, remote)
        return await self._sync(item.task, item.mapping, item.remote)

    async def _ensure_identifier(self, task: Task) -> str:
        """Embed a fresh identifier in the task's line if it has none."""
        if identity.is_well_formed(task.identifier):
            return task.identifier
        identifier = identity.assign_identifier()
        await self.note_store.rewrite_task_line(task, identity.embed(task.raw_text, identifier))
        task.identifier = identifier
        self.context.debug("Assigned identifier %s to %s", identifier, task.location)
        return identifier

    def _entry_fields(self, task: Task) -> tuple[EntryFields, str]:
        processed = process_description(task.description, self.config.hyperlink_sync_mode)
        return EntryFields(processed.summary, task.status, task.due_date), processed.links_block

    def _vault_uri(self, task: Task, identifier: str) -> str | None:
        if not self.config.include_vault_link or not self.vault_name:
            return None
        try:
            return build_vault_uri(self.vault_name, task.file_path, identifier)
        except ValueError as e:
            self.context.warning("No vault link for %s: %s", task.location, e)
            return None

    async def _create(self, task: Task) -> TaskOutcome:
        identifier = await self._ensure_identifier(task)
        now = self.clock()
        fields, links_block = self._entry_fields(task)
        description = build_entry_description(links_block, self._vault_uri(task, identifier))

        raw = build_new(fields, uid=identifier, now=now, description=description)
        ref = await self.transport.create_entry(raw)
        self.context.debug("Created entry %s for %s", ref.uid, task.location)

        mapping = MappingEntry(
            identifier=identifier,
            remote_uid=ref.uid,
            remote_href=ref.href,
            revision_tag=ref.revision_tag,
            last_synced_at=now,
            last_known_content_hash=task.content_hash(),
            last_known_local_modified=task.modified_at,
            last_known_remote_modified=now,
        )
        return TaskOutcome(Outcome.CREATED, mapping)

    async def _refetch_missing(self, task: Task, mapping: MappingEntry) -> RemoteEntry:
        raw = await self.transport.fetch_entry_raw_text(mapping.remote_uid)
        if raw is None:
            raise MissingRemoteEntryError(mapping.identifier, mapping.remote_uid)
        self.context.debug("Entry %s missing from index but still on the server", mapping.remote_uid)
        return RemoteEntry(uid=mapping.remote_uid, href=mapping.remote_href, revision_tag=None, raw_text=raw)

    def _read_remote(self, remote: RemoteEntry) -> ParsedEntry | None:
        try:
            return read_entry(remote.raw_text)
        except MalformedEntryError as e:
            self.context.warning("Cannot read remote entry %s: %s", remote.uid, e)
            return None

    def _remote_changed(self, mapping: MappingEntry, remote: RemoteEntry, parsed: ParsedEntry | None) -> bool:
        if remote.revision_tag and mapping.revision_tag:
            return remote.revision_tag != mapping.revision_tag
        # No usable revision tags; compare LAST-MODIFIED instead
        if parsed is None or parsed.last_modified is None or mapping.last_known_remote_modified is None:
            return False
        # Whole seconds; servers drop sub-second precision. Only a newer stamp counts.
        return int(parsed.last_modified.timestamp()) > int(mapping.last_known_remote_modified.timestamp())

    def _fields_differ(self, task: Task, parsed: ParsedEntry) -> bool:
        expected = self._entry_fields(task)[0]
        remote = parsed.fields
        return (
            " ".join(remote.summary.split()) != expected.summary
            or remote.status is not expected.status
            or remote.due_date != expected.due_date
        )

    async def _sync(self, task: Task, mapping: MappingEntry, remote: RemoteEntry) -> TaskOutcome:
        parsed = self._read_remote(remote)
        local_changed = task.content_hash() != mapping.last_known_content_hash
        remote_changed = self._remote_changed(mapping, remote, parsed)

        if not local_changed and not remote_changed:
            if parsed is None or not self._fields_differ(task, parsed):
                return TaskOutcome(Outcome.UNCHANGED)
            # Neither detector fired but the values disagree (server kept LAST-MODIFIED)
            self.context.warning(
                "Data mismatch for %s: local %r (%s), remote %r (%s); pulling remote values",
                task.location,
                task.description,
                task.status.value,
                parsed.fields.summary,
                parsed.fields.status.value,
            )
            return await self._pull(task, mapping.identifier, remote, parsed, Outcome.PULLED)

        remote_modified = (parsed.last_modified if parsed else None) or mapping.last_known_remote_modified
        if local_changed and remote_changed:
            winner = resolve_conflict(task.modified_at, remote_modified)
            note = describe_conflict(task.description, winner, task.modified_at, remote_modified)
            self.context.info(note)
        else:
            winner = Winner.LOCAL if local_changed else Winner.REMOTE

        if winner is Winner.REMOTE and parsed is not None:
            return await self._pull(task, mapping.identifier, remote, parsed, Outcome.PULLED)
        return await self._push(task, mapping.identifier, remote, parsed, Outcome.UPDATED)

    async def _link(self, task: Task, remote: RemoteEntry) -> TaskOutcome:
        """Adopt an existing remote entry for a task that has no mapping yet."""
        identifier = await self._ensure_identifier(task)
        parsed = self._read_remote(remote)
        remote_modified = parsed.last_modified if parsed else None

        if parsed is not None and parsed.fields == self._entry_fields(task)[0]:
            now = self.clock()
            mapping = MappingEntry(
                identifier=identifier,
                remote_uid=remote.uid,
                remote_href=remote.href,
                revision_tag=remote.revision_tag,
                last_synced_at=now,
                last_known_content_hash=task.content_hash(),
                last_known_local_modified=task.modified_at,
                last_known_remote_modified=remote_modified,
            )
            return TaskOutcome(Outcome.LINKED, mapping)

        winner = resolve_conflict(task.modified_at, remote_modified)
        if winner is Winner.REMOTE and parsed is not None:
            return await self._pull(task, identifier, remote, parsed, Outcome.LINKED)
        return await self._push(task, identifier, remote, parsed, Outcome.LINKED)

    async def _push(
        self,
        task: Task,
        identifier: str,
        remote: RemoteEntry,
        parsed: ParsedEntry | None,
        outcome: Outcome,
    ) -> TaskOutcome:
        now = self.clock()
        fields, _ = self._entry_fields(task)
        degraded = False
        try:
            raw = apply_update(remote.raw_text, fields, now=now)
        except MalformedEntryError as e:
            self.context.warning(
                "Entry %s failed validation (%s); rebuilding it from scratch",
                remote.uid,
                "; ".join(e.violations) or e,
            )
            raw = build_new(
                fields,
                uid=remote.uid,
                now=now,
                description=parsed.description if parsed else None,
            )
            degraded = True

        new_tag = await self.transport.update_entry(remote.href, remote.revision_tag, raw)
        self.context.debug("Pushed %s to entry %s", task.location, remote.uid)

        mapping = MappingEntry(
            identifier=identifier,
            remote_uid=remote.uid,
            remote_href=remote.href,
            revision_tag=new_tag,
            last_synced_at=now,
            last_known_content_hash=task.content_hash(),
            last_known_local_modified=task.modified_at,
            last_known_remote_modified=now,
        )
        return TaskOutcome(outcome, mapping, degraded=degraded)

    async def _pull(
        self,
        task: Task,
        identifier: str,
        remote: RemoteEntry,
        parsed: ParsedEntry,
        outcome: Outcome,
    ) -> TaskOutcome:
        now = self.clock()
        today = self.today()
        fields = parsed.fields

        # Keep the local markdown (links, tags) when the summary only differs by link processing
        local_summary = self._entry_fields(task)[0].summary
        remote_summary = " ".join(fields.summary.split())
        if not remote_summary or remote_summary == local_summary:
            description = task.description
        else:
            description = remote_summary

        new_line = format_task_line(task, description, fields.status, fields.due_date, today=today)
        if new_line != task.raw_text:
            await self.note_store.rewrite_task_line(task, new_line)
            task.modified_at = now
            self.context.debug("Pulled entry %s into %s", remote.uid, task.location)
        elif outcome is Outcome.PULLED:
            # Only unmanaged properties changed on the server
            outcome = Outcome.UNCHANGED

        task.description = description
        task.due_date = fields.due_date
        if fields.status is TaskStatus.COMPLETED:
            task.completion_date = task.completion_date or today
        else:
            task.completion_date = None
        task.status = fields.status

        mapping = MappingEntry(
            identifier=identifier,
            remote_uid=remote.uid,
            remote_href=remote.href,
            revision_tag=remote.revision_tag,
            last_synced_at=now,
            last_known_content_hash=task.content_hash(),
            last_known_local_modified=task.modified_at,
            last_known_remote_modified=parsed.last_modified,
        )
        return TaskOutcome(outcome, mapping)


async def create_engine(config: AppConfig, context: SyncContext | None = None) -> ReconciliationEngine:
    """
    Wire a markdown vault, a CalDAV transport and the state database into an engine.

    Raises:
        ConfigurationError: If the vault path or CalDAV settings are missing
    """
    from taskbridge.sources.caldav.adapter import CalDAVTransport
    from taskbridge.sources.vault.markdown import MarkdownVault
    from taskbridge.utils.db import StateDB

    if config.vault.path is None:
        raise ConfigurationError("Vault path is not configured (vault.path)")
    if not config.caldav.server_url or not config.caldav.username:
        raise ConfigurationError("CalDAV server URL and username are required")
    password = config.caldav.get_password()
    if not password:
        raise ConfigurationError(
            "CalDAV password not found. Run 'taskbridge set-password' or set TASKBRIDGE_CALDAV__PASSWORD"
        )

    context = context or SyncContext(config.general.log_level)
    transport = CalDAVTransport(
        url=config.caldav.server_url,
        username=config.caldav.username,
        password=password,
        calendar=config.caldav.calendar_path,
        ssl_verify_cert=config.caldav.ssl_verify_cert,
        timeout=config.caldav.timeout_seconds,
    )
    mappings = MappingStore(
        StateDB(config.state_db_path),
        context=context,
        settings_snapshot=lambda: config.sync.model_dump(mode="json"),
    )
    await mappings.load()

    return ReconciliationEngine(
        note_store=MarkdownVault(config.vault.path),
        transport=transport,
        mappings=mappings,
        config=config.sync,
        context=context,
        vault_name=config.vault.vault_name,
    )
