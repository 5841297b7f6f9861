"""Last-write-wins conflict policy."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from taskbridge.utils.datetime_utils import ensure_utc


class Winner(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


def resolve_conflict(
    local_modified: datetime | None,
    remote_modified: datetime | None,
) -> Winner:
    """
    Pick the side whose last change is more recent.

    Timestamps are compared at whole-second precision since servers drop
    fractional seconds. Ties, and a missing local timestamp paired with a
    missing remote one, go to the local side. A side with no timestamp loses
    to a side with one.
    """
    if remote_modified is None:
        return Winner.LOCAL
    if local_modified is None:
        return Winner.REMOTE

    local_s = int(ensure_utc(local_modified).timestamp())
    remote_s = int(ensure_utc(remote_modified).timestamp())
    return Winner.REMOTE if remote_s > local_s else Winner.LOCAL


def describe_conflict(
    label: str,
    winner: Winner,
    local_modified: datetime | None,
    remote_modified: datetime | None,
) -> str:
    return (
        f"Conflict for '{label}': {winner.value} wins "
        f"(local={local_modified.isoformat() if local_modified else '-'}, "
        f"remote={remote_modified.isoformat() if remote_modified else '-'})"
    )
