"""Parsing and formatting of markdown task lines.

Supported format (Obsidian Tasks style)::

    - [ ] Pay rent #home 📅 2026-01-31 ^task-1b4e28ba-2fa1-4d3b-a3f5-ef19b5a7633b
    - [x] Ship release 📅 2026-01-10 ✅ 2026-01-12
"""

from __future__ import annotations

import re
from datetime import date, datetime

from taskbridge.core import identity
from taskbridge.core.models import Task, TaskStatus

TASK_LINE_RE = re.compile(r"^(?P<indent>\s*)(?P<bullet>[-*+])\s+\[(?P<mark>[ xX])\]\s?(?P<content>.*)$")
DUE_DATE_RE = re.compile(r"📅\s*(\d{4}-\d{2}-\d{2})")
DONE_DATE_RE = re.compile(r"✅\s*(\d{4}-\d{2}-\d{2})")
TAG_RE = re.compile(r"(?<!\S)#[\w-]+")

DUE_MARKER = "📅"
DONE_MARKER = "✅"


def _parse_date(match: re.Match | None) -> date | None:
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1))
    except ValueError:
        return None


def _split_terminator(line: str) -> tuple[str, str]:
    stripped = line.rstrip("\r\n")
    return stripped, line[len(stripped):]


def is_task_line(line: str) -> bool:
    return bool(TASK_LINE_RE.match(_split_terminator(line)[0]))


def clean_description(content: str) -> str:
    """Strip date markers and the identifier marker, collapsing whitespace."""
    text = identity.strip(content)
    text = DUE_DATE_RE.sub("", text)
    text = DONE_DATE_RE.sub("", text)
    return " ".join(text.split())


def parse_task_line(
    line: str,
    file_path: str = "",
    line_number: int = 0,
    modified_at: datetime | None = None,
) -> Task | None:
    """
    Parse one markdown line into a Task.

    Args:
        line: Line text (a trailing newline is ignored)
        file_path: Vault-relative path of the file holding the line
        line_number: 1-based line number
        modified_at: Last modification time of the file

    Returns:
        Task, or None if the line is not a task
    """
    text, _ = _split_terminator(line)
    match = TASK_LINE_RE.match(text)
    if not match:
        return None

    content = match.group("content")
    status = TaskStatus.OPEN if match.group("mark") == " " else TaskStatus.COMPLETED
    return Task(
        description=clean_description(content),
        status=status,
        identifier=identity.extract(text),
        due_date=_parse_date(DUE_DATE_RE.search(content)),
        completion_date=_parse_date(DONE_DATE_RE.search(content)),
        tags=set(TAG_RE.findall(content)),
        file_path=file_path,
        line_number=line_number,
        raw_text=line,
        modified_at=modified_at,
    )


def format_task_line(
    task: Task,
    description: str,
    status: TaskStatus,
    due_date: date | None,
    today: date | None = None,
) -> str:
    """
    Rebuild ``task``'s line with new values.

    Indentation, bullet, identifier and line terminator come from the
    existing line. A completed task keeps its completion date, or gets
    today's date when it has none.
    """
    text, terminator = _split_terminator(task.raw_text)
    match = TASK_LINE_RE.match(text)
    indent = match.group("indent") if match else ""
    bullet = match.group("bullet") if match else "-"

    mark = "x" if status is TaskStatus.COMPLETED else " "
    parts = [f"{indent}{bullet} [{mark}] {description}"]
    if due_date:
        parts.append(f"{DUE_MARKER} {due_date.isoformat()}")
    if status is TaskStatus.COMPLETED:
        completed_on = task.completion_date or today or date.today()
        parts.append(f"{DONE_MARKER} {completed_on.isoformat()}")

    line = " ".join(parts)
    if task.identifier and identity.is_well_formed(task.identifier):
        line = identity.embed(line, task.identifier)
    return line + terminator
