"""Append newly rendered fragments to a note without duplicating content.

The note body is the only record of what a note contains (users can edit
notes in Joplin), so it is re-parsed on every append instead of keeping a
side index.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from omnisync.core.notes import FRAGMENT_DELIMITER
from omnisync.core.rendering import decode_artifacts
from omnisync.core.sync_state import SyncState
from omnisync.core.timestamp_token import extract_token
from omnisync.providers.note_store import Note, NoteStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fragment:
    """A rendered highlight and the id of the highlight it came from."""

    source_id: str
    text: str


def split_fragments(body: str) -> list[str]:
    """Split a note body into fragments, dropping blank ones."""
    if not body:
        return []
    return [part for part in body.split(FRAGMENT_DELIMITER) if part.strip()]


def join_fragments(fragments: list[str]) -> str:
    return FRAGMENT_DELIMITER.join(fragments)


def first_line(fragment: str) -> str:
    for line in fragment.splitlines():
        if line.strip():
            return line.strip()
    return ""


def dedup_key(fragment: str) -> tuple[str, str]:
    """(timestamp token, first non-empty line) of a fragment.

    Decoding applies to the key only; stored text is left as rendered.
    Under title-first templates (default, titleQuote) the first line is
    the article title, so two highlights of one article created in the
    same minute share a key and only the first is kept. quoteOnly keys
    on the quote itself.
    """
    normalized = decode_artifacts(fragment)
    return extract_token(normalized), first_line(normalized)


def sort_newest_first(fragments: list[str]) -> list[str]:
    # Stable; fragments without a token sink to the end
    return sorted(fragments, key=extract_token, reverse=True)


async def append_novel(
    store: NoteStore,
    note: Note,
    fragments: list[Fragment],
    ledger: SyncState,
    group_key: str,
    *,
    resort: bool = True,
) -> str:
    """Append the fragments not already in `note` and write it back.

    Every candidate's source id is recorded in the highlight ledger for
    `group_key`, including candidates found already present. With
    `resort` the whole note is ordered newest first by timestamp token;
    otherwise insertion order is kept. The note is written in a single
    update, and not at all when nothing was added.

    Returns the resulting body.
    """
    existing = split_fragments(note.body)
    seen = {dedup_key(fragment) for fragment in existing}
    logger.debug(f"Existing fragments in note {note.id}: {len(existing)}")

    added = 0
    for fragment in fragments:
        text = fragment.text.strip()
        key = dedup_key(text)
        if key in seen:
            logger.debug(f"Highlight {fragment.source_id} already in note {note.id}, skipping")
            continue
        existing.append(text)
        seen.add(key)
        added += 1

    if added:
        if resort:
            existing = sort_newest_first(existing)
        body = join_fragments(existing)
        await store.update_note(note.id, body=body)
        note.body = body
        logger.debug(f"Updated note {note.id}: {added} added, {len(existing)} total")

    # Ledger ids only once the note holds them
    for fragment in fragments:
        ledger.record_highlight_synced(group_key, fragment.source_id)
    return note.body
