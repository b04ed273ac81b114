"""Find, create, merge and relocate destination notes.

Titles are derived from group keys, so two passes (or a grouping change)
can leave several notes with the same title. They are reconciled by
merging into the first search result, never by avoiding the collision.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from omnisync.providers.note_store import Folder, Note, NoteStore

logger = logging.getLogger(__name__)

FRAGMENT_DELIMITER = "\n\n---\n\n"

# Folder get-or-create retry (delay = base * 2**attempt)
FOLDER_MAX_ATTEMPTS = 5
FOLDER_BASE_DELAY = 1.0


class FolderResolutionError(Exception):
    """The target folder could not be found or created."""


class NoteCache:
    """Notes resolved during one sync pass, keyed by group key.

    Created at pass start and dropped at pass end; never shared between passes.
    """

    def __init__(self) -> None:
        self._notes: dict[str, Note] = {}

    def get(self, key: str) -> Note | None:
        return self._notes.get(key)

    def put(self, key: str, note: Note) -> None:
        self._notes[key] = note

    def __contains__(self, key: str) -> bool:
        return key in self._notes

    def __len__(self) -> int:
        return len(self._notes)


async def merge_notes(
    store: NoteStore,
    notes: list[Note],
    target_folder_id: str | None = None,
) -> Note:
    """Merge notes into the first one and delete the rest.

    Bodies are joined with the fragment delimiter in the given order. The
    survivor keeps its title and is moved to `target_folder_id` if given.
    """
    survivor = notes[0]
    merged_body = FRAGMENT_DELIMITER.join(note.body for note in notes)
    parent_id = target_folder_id or survivor.parent_id

    await store.update_note(
        survivor.id, title=survivor.title, body=merged_body, parent_id=parent_id
    )
    for note in notes[1:]:
        await store.delete_note(note.id)

    survivor.body = merged_body
    survivor.parent_id = parent_id
    logger.info(f"Merged {len(notes)} notes for {survivor.title}")
    return survivor


async def resolve_note(store: NoteStore, title: str, target_folder_id: str) -> Note:
    """Return the single note titled `title` in the target folder.

    Creates it when missing, relocates it when it sits in another folder,
    and merges duplicates when several notes share the title.
    """
    matches = await store.search_notes_by_title(title)

    if not matches:
        note = await store.create_note(title, "", target_folder_id)
        logger.debug(f"Created note {note.id} for {title}")
        return note

    if len(matches) > 1:
        return await merge_notes(store, matches, target_folder_id)

    note = matches[0]
    if note.parent_id != target_folder_id:
        await store.update_note(note.id, parent_id=target_folder_id)
        note.parent_id = target_folder_id
        logger.debug(f"Moved note {note.id} ({title}) to folder {target_folder_id}")
    return note


async def resolve_cached_note(
    store: NoteStore,
    cache: NoteCache,
    key: str,
    title: str,
    target_folder_id: str,
) -> Note:
    """`resolve_note`, at most once per group key per pass."""
    note = cache.get(key)
    if note is not None:
        logger.debug(f"Using cached note for {key}")
        return note
    note = await resolve_note(store, title, target_folder_id)
    cache.put(key, note)
    return note


async def consolidate(
    store: NoteStore,
    title_prefix: str,
    target_folder_id: str | None = None,
) -> int:
    """Merge prefixed notes that collided on title.

    Returns the number of notes removed by merging.
    """
    notes = await store.search_notes_by_prefix(title_prefix)
    if not notes:
        logger.debug("No highlight notes found to consolidate")
        return 0

    buckets: dict[str, list[Note]] = defaultdict(list)
    for note in notes:
        buckets[note.title[len(title_prefix):].strip()].append(note)

    removed = 0
    for suffix, bucket in buckets.items():
        if len(bucket) > 1:
            await merge_notes(store, bucket, target_folder_id)
            removed += len(bucket) - 1

    logger.info(f"Consolidation checked {len(notes)} notes, removed {removed} duplicates")
    return removed


def _find_folder(folders: list[Folder], name: str) -> Folder | None:
    wanted = name.casefold()
    for folder in folders:
        if folder.title.casefold() == wanted:
            return folder
    return None


async def resolve_folder(
    store: NoteStore,
    name: str,
    *,
    max_attempts: int = FOLDER_MAX_ATTEMPTS,
    base_delay: float = FOLDER_BASE_DELAY,
) -> Folder:
    """Get or create the folder called `name` (case-insensitive).

    A freshly created folder may not show up in listings right away, so
    listing is retried with exponential backoff before creating again.

    Raises:
        FolderResolutionError: If the folder is still missing after all attempts.
    """
    created: Folder | None = None

    for attempt in range(max_attempts):
        folder = _find_folder(await store.list_folders(), name)
        if folder is not None:
            return folder

        if created is None:
            created = await store.create_folder(name)
            logger.info(f"Created folder {name} ({created.id})")

        delay = base_delay * 2 ** attempt
        logger.debug(
            f"Folder {name} not listed yet, retrying in {delay:.1f}s "
            f"(attempt {attempt + 1}/{max_attempts})"
        )
        await asyncio.sleep(delay)

    raise FolderResolutionError(f"Folder {name} not available after {max_attempts} attempts")
