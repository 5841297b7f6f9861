"""Stable task identifiers embedded in task text as ``^task-<uuid4>`` block ids."""

import re
import uuid

IDENTIFIER_PREFIX = "task-"

_UUID_PATTERN = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
_IDENTIFIER_RE = re.compile(rf"^{IDENTIFIER_PREFIX}{_UUID_PATTERN}$")
# A marker only counts when it is the last token on the line
_MARKER_RE = re.compile(rf"\s\^({IDENTIFIER_PREFIX}{_UUID_PATTERN})\s*$")


def assign_identifier() -> str:
    """Generate a new identifier from 128 random bits."""
    return f"{IDENTIFIER_PREFIX}{uuid.uuid4()}"


def is_well_formed(identifier: str | None) -> bool:
    """Return True if ``identifier`` is ``task-`` followed by a lowercase UUID."""
    if not identifier:
        return False
    return bool(_IDENTIFIER_RE.match(identifier))


def extract(raw_text: str) -> str | None:
    """
    Return the identifier embedded at the end of a task line.

    Malformed markers are treated as absent.
    """
    line = _split_terminator(raw_text)[0]
    match = _MARKER_RE.search(line)
    if not match:
        return None
    return match.group(1)


def embed(raw_text: str, identifier: str) -> str:
    """
    Append `` ^<identifier>`` to a task line.

    Returns the input unchanged when a well-formed identifier is already
    present. Trailing whitespace before the marker is dropped and the line
    terminator, if any, is kept.

    Raises:
        ValueError: If ``identifier`` is not well formed
    """
    if not is_well_formed(identifier):
        raise ValueError(f"Refusing to embed malformed identifier: {identifier!r}")
    if extract(raw_text) is not None:
        return raw_text

    line, terminator = _split_terminator(raw_text)
    return f"{line.rstrip()} ^{identifier}{terminator}"


def strip(raw_text: str) -> str:
    """Remove a trailing identifier marker, if any."""
    line, terminator = _split_terminator(raw_text)
    return _MARKER_RE.sub("", line).rstrip() + terminator


def _split_terminator(raw_text: str) -> tuple[str, str]:
    if raw_text.endswith("\r\n"):
        return raw_text[:-2], "\r\n"
    if raw_text.endswith("\n"):
        return raw_text[:-1], "\n"
    return raw_text, ""
