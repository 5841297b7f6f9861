"""Markdown hyperlink handling and vault deep links for remote entries."""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import quote

from taskbridge.core.identity import is_well_formed

HYPERLINK_RE = re.compile(r"\[([^\]]*)\]\((https?://[^)]+)\)")


@dataclass(frozen=True)
class Hyperlink:
    text: str
    url: str
    raw: str


@dataclass(frozen=True)
class ProcessedDescription:
    summary: str
    links_block: str = ""


def extract_hyperlinks(description: str) -> list[Hyperlink]:
    return [
        Hyperlink(text=m.group(1), url=m.group(2), raw=m.group(0))
        for m in HYPERLINK_RE.finditer(description)
    ]


def format_links_block(links: list[Hyperlink]) -> str:
    lines = [f"- {link.text or link.url}: {link.url}" for link in links]
    return "Links:\n" + "\n".join(lines)


def process_description(description: str, mode: str) -> ProcessedDescription:
    """
    Prepare a task description for use as a SUMMARY.

    ``keep`` leaves markdown links alone. ``remove`` replaces each link with
    its text. ``move`` does the same and also returns a ``Links:`` block for
    the DESCRIPTION. A summary that would end up empty is left unchanged.
    """
    if mode == "keep":
        return ProcessedDescription(summary=description)

    links = extract_hyperlinks(description)
    if not links:
        return ProcessedDescription(summary=description)

    summary = description
    for link in links:
        summary = summary.replace(link.raw, link.text, 1)
    summary = " ".join(summary.split())
    if not summary:
        return ProcessedDescription(summary=description)

    block = format_links_block(links) if mode == "move" else ""
    return ProcessedDescription(summary=summary, links_block=block)


def build_vault_uri(vault_name: str, file_path: str, identifier: str) -> str:
    """
    Build an ``obsidian://open`` deep link to a task's block.

    Raises:
        ValueError: If any part is empty or the identifier is malformed
    """
    if not vault_name or not vault_name.strip():
        raise ValueError("Vault name is required")
    if not file_path or not file_path.strip():
        raise ValueError("File path is required")
    if not is_well_formed(identifier):
        raise ValueError(f"Invalid task identifier: {identifier!r}")
    return (
        f"obsidian://open?vault={quote(vault_name, safe='')}"
        f"&file={quote(file_path, safe='')}"
        f"&block={identifier}"
    )


def build_entry_description(links_block: str = "", vault_uri: str | None = None) -> str | None:
    """Compose the DESCRIPTION for a newly created entry, or None when empty."""
    parts = []
    if links_block:
        parts.append(links_block)
    if vault_uri:
        parts.append(f"Obsidian Link: {vault_uri}")
    return "\n\n".join(parts) if parts else None
