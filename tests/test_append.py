"""Tests for append.py"""

from dataclasses import replace
from datetime import timezone

import pytest

from omnisync.core.append import (
    Fragment,
    append_novel,
    dedup_key,
    first_line,
    sort_newest_first,
    split_fragments,
)
from omnisync.core.notes import FRAGMENT_DELIMITER
from omnisync.core.rendering import render_highlight
from omnisync.core.sync_state import SyncState
from omnisync.providers.note_store import NoteStoreError

from conftest import FakeNoteStore, make_highlight, make_ref, utc


def frag(source_id: str, quote: str, token: str) -> Fragment:
    return Fragment(source_id=source_id, text=f"> {quote}\n> ({token})")


class TestFragmentHelpers:
    def test_split_drops_blank_fragments(self):
        body = f"one{FRAGMENT_DELIMITER}  {FRAGMENT_DELIMITER}two"
        assert split_fragments(body) == ["one", "two"]

    def test_split_empty_body(self):
        assert split_fragments("") == []

    def test_first_line_skips_blank_lines(self):
        assert first_line("\n\n  > quote  \n> (2024-01-05 10:00)") == "> quote"

    def test_dedup_key_decodes(self):
        encoded = "> Fish &amp; Chips\n> (2024-01-05 10:00)"
        plain = "> Fish & Chips\n> (2024-01-05 10:00)"
        assert dedup_key(encoded) == dedup_key(plain) == ("2024-01-05 10:00", "> Fish & Chips")

    def test_sort_newest_first_is_stable(self):
        fragments = ["a (2024-01-05 10:00)", "untimed", "b (2024-01-05 12:00)", "c (2024-01-05 10:00)"]
        assert sort_newest_first(fragments) == [
            "b (2024-01-05 12:00)",
            "a (2024-01-05 10:00)",
            "c (2024-01-05 10:00)",
            "untimed",
        ]


@pytest.mark.asyncio
class TestAppendNovel:
    async def test_appends_to_empty_note_newest_first(self):
        store = FakeNoteStore()
        note = store.add_note("Omnivore Highlights 2024-01-05")
        ledger = SyncState()

        body = await append_novel(
            store,
            note,
            [frag("h1", "early", "2024-01-05 10:00"), frag("h2", "late", "2024-01-05 12:00")],
            ledger,
            "2024-01-05",
        )

        assert split_fragments(body) == ["> late\n> (2024-01-05 12:00)", "> early\n> (2024-01-05 10:00)"]
        assert store.notes[note.id].body == body
        assert note.body == body
        assert store.calls == [("update", note.id)]

    async def test_keeps_insertion_order_without_resort(self):
        store = FakeNoteStore()
        note = store.add_note("Omnivore Highlights - Article")

        body = await append_novel(
            store,
            note,
            [frag("h1", "early", "2024-01-05 10:00"), frag("h2", "late", "2024-01-05 12:00")],
            SyncState(),
            "a1",
            resort=False,
        )

        assert split_fragments(body)[0].startswith("> early")

    async def test_no_duplicates_across_calls(self):
        store = FakeNoteStore()
        note = store.add_note("Omnivore Highlights 2024-01-05")
        fragments = [frag("h1", "one", "2024-01-05 10:00"), frag("h2", "two", "2024-01-05 11:00")]

        await append_novel(store, note, fragments, SyncState(), "2024-01-05")
        await append_novel(store, note, fragments, SyncState(), "2024-01-05")
        body = await append_novel(store, note, fragments[:1], SyncState(), "2024-01-05")

        keys = [dedup_key(f) for f in split_fragments(body)]
        assert len(keys) == len(set(keys)) == 2

    async def test_nothing_novel_means_no_write(self):
        store = FakeNoteStore()
        existing = "> one\n> (2024-01-05 10:00)"
        note = store.add_note("Omnivore Highlights 2024-01-05", body=existing)

        body = await append_novel(store, note, [frag("h1", "one", "2024-01-05 10:00")], SyncState(), "2024-01-05")

        assert body == existing
        assert store.calls == []

    async def test_encoded_duplicate_is_recognized(self):
        store = FakeNoteStore()
        note = store.add_note("n", body="> Fish &amp; Chips\n> (2024-01-05 10:00)")

        await append_novel(store, note, [frag("h1", "Fish & Chips", "2024-01-05 10:00")], SyncState(), "2024-01-05")

        assert store.calls == []

    async def test_appended_fragments_are_stored_as_rendered(self):
        store = FakeNoteStore()
        note = store.add_note("n")

        body = await append_novel(store, note, [frag("h1", "100%25 a &amp; b", "2024-01-05 10:00")], SyncState(), "k")

        assert body == "> 100%25 a &amp; b\n> (2024-01-05 10:00)"

    async def test_percent_encoded_link_survives(self):
        store = FakeNoteStore()
        note = store.add_note("Omnivore Highlights 2024-01-05")
        ref = replace(make_ref(), original_article_url="https://example.com/a%20b%2Fc")
        text = render_highlight(make_highlight("h1", utc(2024, 1, 5, 10, 0), article=ref), "default", timezone.utc)

        body = await append_novel(store, note, [Fragment("h1", text)], SyncState(), "2024-01-05")

        assert "[Original](https://example.com/a%20b%2Fc)" in body
        assert store.notes[note.id].body == body

    async def test_same_minute_highlights_collapse_under_title_first_template(self):
        store = FakeNoteStore()
        note = store.add_note("Omnivore Highlights 2024-01-05")
        same_minute = [
            make_highlight("h1", utc(2024, 1, 5, 10, 0, 5), quote="first"),
            make_highlight("h2", utc(2024, 1, 5, 10, 0, 40), quote="second"),
        ]
        ledger = SyncState()

        body = await append_novel(
            store,
            note,
            [Fragment(hl.id, render_highlight(hl, "default", timezone.utc)) for hl in same_minute],
            ledger,
            "2024-01-05",
        )

        assert len(split_fragments(body)) == 1
        assert "> first" in body
        assert ledger.is_highlight_synced("2024-01-05", "h2")

    async def test_same_minute_highlights_kept_under_quote_only(self):
        store = FakeNoteStore()
        note = store.add_note("Omnivore Highlights 2024-01-05")
        same_minute = [
            make_highlight("h1", utc(2024, 1, 5, 10, 0, 5), quote="first"),
            make_highlight("h2", utc(2024, 1, 5, 10, 0, 40), quote="second"),
        ]

        body = await append_novel(
            store,
            note,
            [Fragment(hl.id, render_highlight(hl, "quoteOnly", timezone.utc)) for hl in same_minute],
            SyncState(),
            "2024-01-05",
        )

        assert len(split_fragments(body)) == 2

    async def test_ledger_records_all_candidates(self):
        store = FakeNoteStore()
        note = store.add_note("n", body="> one\n> (2024-01-05 10:00)")
        ledger = SyncState()

        await append_novel(
            store,
            note,
            [frag("h1", "one", "2024-01-05 10:00"), frag("h2", "two", "2024-01-05 11:00")],
            ledger,
            "2024-01-05",
        )

        assert ledger.is_highlight_synced("2024-01-05", "h1")
        assert ledger.is_highlight_synced("2024-01-05", "h2")

    async def test_failed_write_leaves_ledger_untouched(self):
        store = FakeNoteStore()
        note = store.add_note("n")
        ledger = SyncState()

        async def boom(*args, **kwargs):
            raise NoteStoreError("write failed")

        store.update_note = boom

        with pytest.raises(NoteStoreError):
            await append_novel(store, note, [frag("h1", "one", "2024-01-05 10:00")], ledger, "2024-01-05")

        assert ledger.highlight_count == 0
        assert note.body == ""
