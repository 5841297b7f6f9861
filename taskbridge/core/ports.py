"""
Collaborator interfaces consumed by the reconciliation engine.

The engine depends on these Protocols rather than on the markdown vault or
the caldav-backed transport, so tests can swap in in-memory fakes.
"""

from __future__ import annotations

from typing import Protocol

from taskbridge.core.models import EntryRef, RemoteEntry, Task


class NoteStore(Protocol):
    """Source of task records; accepts whole-line rewrites."""

    async def list_tasks(self) -> list[Task]: ...

    async def rewrite_task_line(self, task: Task, new_raw_text: str) -> None: ...


class Transport(Protocol):
    """Authenticated access to the remote task calendar."""

    async def fetch_all_entries(self) -> list[RemoteEntry]: ...

    async def create_entry(self, raw_text: str) -> EntryRef: ...

    async def update_entry(self, href: str, revision_tag: str | None, raw_text: str) -> str | None: ...

    async def fetch_entry_raw_text(self, uid: str) -> str | None: ...
