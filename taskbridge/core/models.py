"""Data model for tasks, remote entries, mappings and cycle results."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping

from taskbridge.utils.datetime_utils import safe_fromtimestamp, to_timestamp


class TaskStatus(str, Enum):
    """Completion state of a task on either side."""

    OPEN = "open"
    COMPLETED = "completed"

    def to_vtodo(self) -> str:
        return "COMPLETED" if self is TaskStatus.COMPLETED else "NEEDS-ACTION"

    @classmethod
    def from_vtodo(cls, value: str | None) -> TaskStatus:
        if value and value.strip().upper() == "COMPLETED":
            return cls.COMPLETED
        return cls.OPEN


class CycleState(str, Enum):
    """Phases of a reconciliation cycle."""

    IDLE = "idle"
    INDEXING = "indexing"
    PER_TASK_LOOP = "per_task_loop"
    PERSISTING = "persisting"


@dataclass
class Task:
    """A task line read from the local note store."""

    description: str
    status: TaskStatus = TaskStatus.OPEN
    identifier: str | None = None
    due_date: date | None = None
    completion_date: date | None = None
    tags: set[str] = field(default_factory=set)
    file_path: str = ""
    line_number: int = 0  # 1-based
    raw_text: str = ""
    modified_at: datetime | None = None

    def content_hash(self) -> str:
        """Fingerprint of the synced fields (description, due date, status)."""
        due = self.due_date.isoformat() if self.due_date else ""
        payload = f"{self.description}|{due}|{self.status.value}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @property
    def location(self) -> str:
        return f"{self.file_path}:{self.line_number}"


@dataclass(frozen=True)
class EntryFields:
    """Values for the managed properties of a remote entry."""

    summary: str
    status: TaskStatus = TaskStatus.OPEN
    due_date: date | None = None


@dataclass
class RemoteEntry:
    """A VTODO resource as returned by the transport."""

    uid: str
    href: str
    revision_tag: str | None
    raw_text: str


@dataclass(frozen=True)
class EntryRef:
    """Location and revision of an entry after a successful write."""

    uid: str
    href: str
    revision_tag: str | None


@dataclass
class MappingEntry:
    """Linkage between a local task identifier and a remote entry."""

    identifier: str
    remote_uid: str
    remote_href: str
    revision_tag: str | None
    last_synced_at: datetime
    last_known_content_hash: str
    last_known_local_modified: datetime | None = None
    last_known_remote_modified: datetime | None = None

    def to_row(self) -> tuple:
        return (
            self.identifier,
            self.remote_uid,
            self.remote_href,
            self.revision_tag,
            to_timestamp(self.last_synced_at),
            self.last_known_content_hash,
            to_timestamp(self.last_known_local_modified),
            to_timestamp(self.last_known_remote_modified),
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> MappingEntry:
        last_synced = safe_fromtimestamp(row["last_synced_at"])
        if last_synced is None:
            raise ValueError(f"Mapping {row['identifier']} has no last_synced_at")
        return cls(
            identifier=row["identifier"],
            remote_uid=row["remote_uid"],
            remote_href=row["remote_href"],
            revision_tag=row["revision_tag"],
            last_synced_at=last_synced,
            last_known_content_hash=row["last_known_content_hash"],
            last_known_local_modified=safe_fromtimestamp(row["last_known_local_modified"]),
            last_known_remote_modified=safe_fromtimestamp(row["last_known_remote_modified"]),
        )


@dataclass
class SyncResult:
    """Aggregate outcome of one reconciliation cycle."""

    created: int = 0
    updated: int = 0
    pulled: int = 0
    linked: int = 0
    unchanged: int = 0
    skipped: int = 0
    degraded: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)
    fatal_error: Exception | None = None
    rejected: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def success_count(self) -> int:
        return self.created + self.updated + self.pulled + self.linked + self.unchanged

    @property
    def failure_count(self) -> int:
        return self.errors

    @property
    def ok(self) -> bool:
        return self.fatal_error is None and not self.rejected

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.error_messages.append(message)

    def as_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["error_messages"] = list(self.error_messages)
        data["fatal_error"] = str(self.fatal_error) if self.fatal_error else None
        data["success_count"] = self.success_count
        data["failure_count"] = self.failure_count
        return data
