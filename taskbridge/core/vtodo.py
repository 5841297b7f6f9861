"""
VTODO text codec.

Remote entries are kept as raw iCalendar text. Updates go through a small
content-line parser instead of a full iCalendar round trip so that every
property the sync does not manage (CATEGORIES, PRIORITY, X-* fields,
VALARM sub-components, vendor parameters) is re-emitted exactly as the
server sent it, in its original order.

The managed properties are SUMMARY, STATUS, DUE, LAST-MODIFIED and DTSTAMP.
Fresh entries are built with ``icalendar``; existing entries are read with
``icalendar`` and rewritten with the line parser.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from icalendar import Calendar
from icalendar import Todo as VTodo

from taskbridge.core.errors import MalformedEntryError
from taskbridge.core.models import EntryFields, TaskStatus
from taskbridge.utils.datetime_utils import (
    as_date,
    ensure_utc,
    format_ical_date,
    format_ical_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

PRODID = "-//TaskBridge//Markdown Task Sync//EN"
MANAGED_PROPERTIES = ("SUMMARY", "STATUS", "DUE", "LAST-MODIFIED", "DTSTAMP")
CRLF = "\r\n"
MAX_LINE_OCTETS = 75

_LINE_SPLIT_RE = re.compile(r"\r\n|\n|\r")
_NEWLINE_RE = re.compile(r"\r\n|\n|\r")


# ---------------------------------------------------------------------------
# Text escaping
# ---------------------------------------------------------------------------


def escape_text(value: str) -> str:
    """Escape a TEXT value (backslash first, then ``;``, ``,`` and newlines)."""
    value = value.replace("\\", "\\\\")
    value = value.replace(";", "\\;")
    value = value.replace(",", "\\,")
    return _NEWLINE_RE.sub("\\\\n", value)


def unescape_text(value: str) -> str:
    """Reverse :func:`escape_text`."""
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        if nxt in ("n", "N"):
            out.append("\n")
        else:
            out.append(nxt)
    return "".join(out)


def fold_line(line: str) -> list[str]:
    """Split a logical line into physical lines of at most 75 octets."""
    if len(line.encode("utf-8")) <= MAX_LINE_OCTETS:
        return [line]

    physical: list[str] = []
    current = ""
    current_octets = 0
    limit = MAX_LINE_OCTETS
    for ch in line:
        width = len(ch.encode("utf-8"))
        if current_octets + width > limit:
            physical.append(current)
            current = " "
            current_octets = 1
        current += ch
        current_octets += width
    physical.append(current)
    return physical


# ---------------------------------------------------------------------------
# Content-line model
# ---------------------------------------------------------------------------


@dataclass
class ContentLine:
    """
    One logical property line.

    ``raw`` holds the original physical lines (without terminators) for lines
    read from the server and is None for lines produced by the codec.
    """

    name: str
    params: str
    value: str
    raw: list[str] | None = None

    @classmethod
    def build(cls, name: str, value: str, params: str = "") -> ContentLine:
        return cls(name=name.upper(), params=params, value=value)

    def physical_lines(self) -> list[str]:
        if self.raw is not None:
            return self.raw
        return fold_line(f"{self.name}{self.params}:{self.value}")


@dataclass
class EntryDocument:
    """An ordered sequence of content lines."""

    lines: list[ContentLine] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> EntryDocument:
        physical = _LINE_SPLIT_RE.split(text)
        if physical and physical[-1] == "":
            physical.pop()

        grouped: list[list[str]] = []
        for line in physical:
            if line[:1] in (" ", "\t") and grouped:
                grouped[-1].append(line)
            else:
                grouped.append([line])

        lines = []
        for raw in grouped:
            logical = raw[0] + "".join(part[1:] for part in raw[1:])
            lines.append(_parse_logical(logical, raw))
        return cls(lines)

    def serialize(self) -> str:
        out: list[str] = []
        for line in self.lines:
            out.extend(line.physical_lines())
        return CRLF.join(out) + CRLF

    def vtodo_span(self) -> tuple[int, int] | None:
        """Return indices of the first ``BEGIN:VTODO`` and its matching ``END:VTODO``."""
        begin = None
        depth = 0
        for index, line in enumerate(self.lines):
            if line.name == "BEGIN":
                if begin is None:
                    if line.value.strip().upper() == "VTODO":
                        begin = index
                        depth = 1
                else:
                    depth += 1
            elif line.name == "END" and begin is not None:
                depth -= 1
                if depth == 0:
                    if line.value.strip().upper() != "VTODO":
                        return None
                    return begin, index
        return None

    def direct_properties(self, span: tuple[int, int]) -> list[int]:
        """Indices of properties that belong to the VTODO itself, not to nested components."""
        begin, end = span
        indices = []
        depth = 0
        for index in range(begin + 1, end):
            name = self.lines[index].name
            if name == "BEGIN":
                depth += 1
            elif name == "END":
                depth -= 1
            elif depth == 0 and name:
                indices.append(index)
        return indices

    def count(self, span: tuple[int, int], name: str) -> int:
        return sum(1 for i in self.direct_properties(span) if self.lines[i].name == name)


def _parse_logical(text: str, raw: list[str]) -> ContentLine:
    in_quotes = False
    name_end = None
    colon = None
    for index, ch in enumerate(text):
        if ch == '"':
            in_quotes = not in_quotes
        elif not in_quotes and ch in ";:":
            if name_end is None:
                name_end = index
            if ch == ":":
                colon = index
                break
    if colon is None or name_end is None:
        # Not a property line; carried through untouched
        return ContentLine(name="", params="", value=text, raw=raw)
    return ContentLine(
        name=text[:name_end].strip().upper(),
        params=text[name_end:colon],
        value=text[colon + 1 :],
        raw=raw,
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def find_violations(text: str) -> list[str]:
    """Return the structural problems that make ``text`` unsafe to send."""
    doc = EntryDocument.parse(text)
    span = doc.vtodo_span()
    if span is None:
        return ["missing BEGIN:VTODO/END:VTODO pair"]

    violations = []
    for name, minimum, maximum in (
        ("UID", 1, 1),
        ("SUMMARY", 1, 1),
        ("STATUS", 1, 1),
        ("DUE", 0, 1),
    ):
        found = doc.count(span, name)
        if found < minimum or found > maximum:
            violations.append(f"{name} appears {found} time(s)")
    return violations


def validate(text: str) -> None:
    """
    Raise if ``text`` is not a well-formed entry.

    Raises:
        MalformedEntryError: If any structural check fails
    """
    violations = find_violations(text)
    if violations:
        raise MalformedEntryError(f"Invalid VTODO: {'; '.join(violations)}", violations)


# ---------------------------------------------------------------------------
# Managed-field rendering
# ---------------------------------------------------------------------------


def _managed_lines(fields: EntryFields, now: datetime) -> dict[str, ContentLine | None]:
    stamp = format_ical_utc(now)
    return {
        "SUMMARY": ContentLine.build("SUMMARY", escape_text(fields.summary)),
        "STATUS": ContentLine.build("STATUS", fields.status.to_vtodo()),
        "DUE": (
            ContentLine.build("DUE", format_ical_date(fields.due_date), ";VALUE=DATE")
            if fields.due_date
            else None
        ),
        "LAST-MODIFIED": ContentLine.build("LAST-MODIFIED", stamp),
        "DTSTAMP": ContentLine.build("DTSTAMP", stamp),
    }


def apply_update(existing: str, fields: EntryFields, now: datetime | None = None) -> str:
    """
    Rewrite the managed properties of ``existing`` and return the new text.

    Each managed property replaces the first occurrence of that property on
    the VTODO (later duplicates are dropped) or is inserted just before
    ``END:VTODO`` when absent. DUE is removed when ``fields.due_date`` is None.
    Every other line is copied unchanged and in order.

    Args:
        existing: Raw iCalendar text as stored on the server
        fields: Desired values for the managed properties
        now: Instant stamped into LAST-MODIFIED and DTSTAMP (defaults to now)

    Returns:
        CRLF-terminated iCalendar text

    Raises:
        MalformedEntryError: If the input has no VTODO or the result fails validation
    """
    doc = EntryDocument.parse(existing)
    span = doc.vtodo_span()
    if span is None:
        raise MalformedEntryError("Entry has no VTODO component", ["missing BEGIN:VTODO/END:VTODO pair"])

    replacements = _managed_lines(fields, ensure_utc(now or utc_now()))
    direct = set(doc.direct_properties(span))
    begin, end = span

    rebuilt: list[ContentLine] = []
    seen: set[str] = set()
    for index, line in enumerate(doc.lines):
        if index == end:
            for name in MANAGED_PROPERTIES:
                new_line = replacements[name]
                if name not in seen and new_line is not None:
                    rebuilt.append(new_line)
        if index in direct and line.name in replacements:
            if line.name not in seen:
                seen.add(line.name)
                new_line = replacements[line.name]
                if new_line is not None:
                    rebuilt.append(new_line)
            continue
        rebuilt.append(line)

    output = EntryDocument(rebuilt).serialize()
    validate(output)
    return output


def build_new(
    fields: EntryFields,
    uid: str,
    now: datetime | None = None,
    description: str | None = None,
) -> str:
    """
    Build a minimal VCALENDAR holding one VTODO.

    Args:
        fields: Summary, status and due date for the entry
        uid: UID for the new entry
        now: Instant used for CREATED, LAST-MODIFIED and DTSTAMP
        description: Optional DESCRIPTION text

    Returns:
        CRLF-terminated iCalendar text
    """
    stamp = ensure_utc(now or utc_now())

    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")

    todo = VTodo()
    todo.add("uid", uid)
    todo.add("dtstamp", stamp)
    todo.add("created", stamp)
    todo.add("last-modified", stamp)
    todo.add("summary", fields.summary)
    todo.add("status", fields.status.to_vtodo())
    if fields.due_date:
        todo.add("due", fields.due_date)
    if description:
        todo.add("description", description)
    cal.add_component(todo)

    output = cal.to_ical().decode("utf-8")
    validate(output)
    return output


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


@dataclass
class ParsedEntry:
    """Managed values read from a remote entry."""

    uid: str
    fields: EntryFields
    last_modified: datetime | None
    description: str | None = None


def read_entry(raw_text: str) -> ParsedEntry:
    """
    Read the managed values of an entry.

    Raises:
        MalformedEntryError: If the text cannot be parsed or has no VTODO
    """
    try:
        cal = Calendar.from_ical(raw_text)
    except ValueError as e:
        raise MalformedEntryError(f"Unparseable iCalendar data: {e}") from e

    vtodo = None
    for component in cal.walk():
        if component.name == "VTODO":
            vtodo = component
            break
    if vtodo is None:
        raise MalformedEntryError("No VTODO component found")

    due = vtodo.get("DUE")
    due_date = as_date(due.dt) if due is not None and hasattr(due, "dt") else None

    last_modified = vtodo.get("LAST-MODIFIED")
    if last_modified is not None and hasattr(last_modified, "dt"):
        value = last_modified.dt
        last_modified = ensure_utc(value) if isinstance(value, datetime) else None
    else:
        last_modified = None

    description = vtodo.get("DESCRIPTION")
    return ParsedEntry(
        uid=str(vtodo.get("UID", "")),
        fields=EntryFields(
            summary=str(vtodo.get("SUMMARY", "")),
            status=TaskStatus.from_vtodo(str(vtodo.get("STATUS", "NEEDS-ACTION"))),
            due_date=due_date,
        ),
        last_modified=last_modified,
        description=str(description) if description is not None else None,
    )
