"""Sync eligibility rules for local tasks."""

from __future__ import annotations

from collections.abc import Collection, Iterable
from datetime import date

from taskbridge.core.identity import is_well_formed
from taskbridge.core.models import Task, TaskStatus


def normalize_tag(tag: str) -> str:
    """Lowercase a tag and drop its leading ``#``."""
    return tag.strip().lstrip("#").lower()


def normalize_folder(folder: str) -> str:
    """Turn a configured folder into a vault-relative, slash-separated prefix."""
    cleaned = folder.strip().replace("\\", "/").strip("/")
    return f"{cleaned}/" if cleaned else ""


class SyncFilter:
    """
    Decides which tasks take part in a sync cycle.

    Rules run in a fixed order and the first one that matches excludes the task:

    1. ``due_date_only`` is on, the task has no due date and no mapping.
    2. The task's file lies under an excluded folder.
    3. The task carries an excluded tag.
    4. The task is completed and its completion date is older than
       ``completed_task_age_days``.

    A task that already has a mapping skips rule 1 so established sync
    relationships survive a due date being removed.
    """

    def __init__(
        self,
        excluded_folders: Iterable[str] = (),
        excluded_tags: Iterable[str] = (),
        completed_task_age_days: int = 30,
        due_date_only: bool = False,
    ):
        self.excluded_folders = tuple(p for p in (normalize_folder(f) for f in excluded_folders) if p)
        self.excluded_tags = frozenset(t for t in (normalize_tag(t) for t in excluded_tags) if t)
        self.completed_task_age_days = completed_task_age_days
        self.due_date_only = due_date_only

    @classmethod
    def from_config(cls, config) -> SyncFilter:
        """Build a filter from a ``SyncConfig``."""
        return cls(
            excluded_folders=config.excluded_folders,
            excluded_tags=config.excluded_tags,
            completed_task_age_days=config.completed_task_age_days,
            due_date_only=config.due_date_only,
        )

    def should_sync(self, task: Task, mapped: Collection[str], today: date | None = None) -> bool:
        """
        Return True if ``task`` should be synced this cycle.

        Args:
            task: Task read from the note store
            mapped: Identifiers that already have a mapping entry
            today: Reference date for the completed-age rule (defaults to today)
        """
        if self.due_date_only and task.due_date is None and not self.has_mapping(task, mapped):
            return False
        if self.in_excluded_folder(task.file_path):
            return False
        if self.has_excluded_tag(task.tags):
            return False
        if self.is_completed_too_old(task, today or date.today()):
            return False
        return True

    @staticmethod
    def has_mapping(task: Task, mapped: Collection[str]) -> bool:
        # Malformed identifiers count as never synced
        return is_well_formed(task.identifier) and task.identifier in mapped

    def in_excluded_folder(self, file_path: str) -> bool:
        if not self.excluded_folders:
            return False
        path = file_path.replace("\\", "/").lstrip("/")
        return any(path.startswith(prefix) for prefix in self.excluded_folders)

    def has_excluded_tag(self, tags: Iterable[str]) -> bool:
        if not self.excluded_tags:
            return False
        return any(normalize_tag(tag) in self.excluded_tags for tag in tags)

    def is_completed_too_old(self, task: Task, today: date) -> bool:
        if task.status is not TaskStatus.COMPLETED:
            return False
        if self.completed_task_age_days <= 0:
            return False
        # Completed tasks without a date are treated as completed today
        completed_on = task.completion_date or today
        return (today - completed_on).days > self.completed_task_age_days


def should_sync(task: Task, config, mapped: Collection[str], today: date | None = None) -> bool:
    """Evaluate the sync rules for a single task against a ``SyncConfig``."""
    return SyncFilter.from_config(config).should_sync(task, mapped, today=today)
