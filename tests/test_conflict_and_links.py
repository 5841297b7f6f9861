# tests/test_conflict_and_links.py

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from taskbridge.core.conflict import Winner, describe_conflict, resolve_conflict
from taskbridge.core.hyperlinks import (
    build_entry_description,
    build_vault_uri,
    extract_hyperlinks,
    process_description,
)

T0 = datetime(2026, 1, 12, 8, 0, 0, tzinfo=timezone.utc)
ID = "task-1b4e28ba-2fa1-4d3b-a3f5-ef19b5a7633b"


def test_newer_side_wins() -> None:
    assert resolve_conflict(T0 + timedelta(seconds=5), T0) is Winner.LOCAL
    assert resolve_conflict(T0, T0 + timedelta(seconds=5)) is Winner.REMOTE


def test_ties_within_a_second_favor_local() -> None:
    assert resolve_conflict(T0, T0) is Winner.LOCAL
    assert resolve_conflict(T0, T0 + timedelta(milliseconds=900)) is Winner.LOCAL


def test_missing_timestamps() -> None:
    assert resolve_conflict(None, None) is Winner.LOCAL
    assert resolve_conflict(T0, None) is Winner.LOCAL
    assert resolve_conflict(None, T0) is Winner.REMOTE


def test_naive_timestamps_are_treated_as_utc() -> None:
    naive_later = (T0 + timedelta(hours=1)).replace(tzinfo=None)

    assert resolve_conflict(naive_later, T0) is Winner.LOCAL


def test_describe_conflict() -> None:
    text = describe_conflict("Pay rent", Winner.REMOTE, None, T0)

    assert "Pay rent" in text
    assert "remote wins" in text
    assert "local=-" in text


DESCRIPTION = "Review [docs](https://example.com/a) and [PR](http://example.com/b)"


def test_keep_mode_leaves_description() -> None:
    assert process_description(DESCRIPTION, "keep").summary == DESCRIPTION


def test_remove_mode_keeps_link_text() -> None:
    processed = process_description(DESCRIPTION, "remove")

    assert processed.summary == "Review docs and PR"
    assert processed.links_block == ""


def test_move_mode_builds_links_block() -> None:
    processed = process_description(DESCRIPTION, "move")

    assert processed.summary == "Review docs and PR"
    assert processed.links_block == "Links:\n- docs: https://example.com/a\n- PR: http://example.com/b"


def test_empty_summary_guard() -> None:
    only_link = "[](https://example.com)"

    assert process_description(only_link, "remove").summary == only_link


def test_non_http_links_are_ignored() -> None:
    assert extract_hyperlinks("See [[Wiki Page]] and [file](notes.md)") == []


def test_vault_uri_is_percent_encoded() -> None:
    uri = build_vault_uri("My Vault", "Projects/Q1 plan.md", ID)

    assert uri == f"obsidian://open?vault=My%20Vault&file=Projects%2FQ1%20plan.md&block={ID}"


@pytest.mark.parametrize(
    ("vault", "path", "identifier"),
    [("", "a.md", ID), ("Vault", " ", ID), ("Vault", "a.md", "task-bad")],
)
def test_vault_uri_rejects_bad_input(vault: str, path: str, identifier: str) -> None:
    with pytest.raises(ValueError):
        build_vault_uri(vault, path, identifier)


def test_entry_description_parts() -> None:
    assert build_entry_description() is None
    assert build_entry_description("Links:\n- a: https://a") == "Links:\n- a: https://a"
    assert build_entry_description("", "obsidian://x") == "Obsidian Link: obsidian://x"
    assert build_entry_description("Links:", "obsidian://x") == "Links:\n\nObsidian Link: obsidian://x"
