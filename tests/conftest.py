"""Shared fixtures: in-memory note store, fake Omnivore fetcher, highlight factories."""

import sqlite3
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from omnisync.core.storage import DB, connect
from omnisync.providers.content_types import Article, ArticleRef, Highlight
from omnisync.providers.note_store import Folder, Note, NoteStore


class FakeNoteStore(NoteStore):
    """Dict-backed NoteStore. Search results come back in creation order.

    Every mutating call is appended to `calls`, so tests can assert on
    exactly what a pass wrote.
    """

    def __init__(self) -> None:
        self.notes: dict[str, Note] = {}
        self.folders: list[Folder] = []
        self.tags: dict[str, list[str]] = {}
        self.calls: list[tuple] = []
        self.searches = 0
        self._next_id = 0

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}{self._next_id}"

    def add_note(self, title: str, body: str = "", parent_id: str = "", source_url: str | None = None) -> Note:
        note = Note(id=self._new_id("n"), title=title, body=body, parent_id=parent_id, source_url=source_url)
        self.notes[note.id] = note
        return replace(note)

    def add_folder(self, title: str) -> Folder:
        folder = Folder(id=self._new_id("f"), title=title)
        self.folders.append(folder)
        return folder

    def notes_titled(self, title: str) -> list[Note]:
        return [n for n in self.notes.values() if n.title == title]

    async def get_note(self, note_id: str) -> Note:
        return replace(self.notes[note_id])

    async def create_note(self, title, body, parent_id, *, source_url=None, author=None) -> Note:
        self.calls.append(("create", title))
        note = Note(id=self._new_id("n"), title=title, body=body, parent_id=parent_id, source_url=source_url)
        self.notes[note.id] = note
        return replace(note)

    async def update_note(self, note_id, *, title=None, body=None, parent_id=None) -> None:
        self.calls.append(("update", note_id))
        note = self.notes[note_id]
        if title is not None:
            note.title = title
        if body is not None:
            note.body = body
        if parent_id is not None:
            note.parent_id = parent_id

    async def delete_note(self, note_id: str) -> None:
        self.calls.append(("delete", note_id))
        del self.notes[note_id]

    async def search_notes_by_title(self, title: str) -> list[Note]:
        self.searches += 1
        return [replace(n) for n in self.notes.values() if n.title == title]

    async def search_notes_by_prefix(self, prefix: str) -> list[Note]:
        self.searches += 1
        return [replace(n) for n in self.notes.values() if n.title.startswith(prefix)]

    async def list_folders(self) -> list[Folder]:
        return list(self.folders)

    async def create_folder(self, title: str) -> Folder:
        self.calls.append(("create_folder", title))
        return self.add_folder(title)

    async def add_tags(self, note_id: str, tags: list[str]) -> None:
        self.calls.append(("tag", note_id, tuple(tags)))
        self.tags.setdefault(note_id, []).extend(tags)


class FakeFetcher:
    """Returns canned items and records the watermark each fetch was called with."""

    def __init__(self, articles=None, highlights=None) -> None:
        self.articles = list(articles or [])
        self.highlights = list(highlights or [])
        self.article_calls: list[datetime | None] = []
        self.highlight_calls: list[datetime] = []

    async def fetch_articles(self, since, labels=None):
        self.article_calls.append(since)
        return list(self.articles)

    async def fetch_highlights(self, since, lookback_days, labels=None):
        self.highlight_calls.append(since)
        return list(self.highlights)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_ref(article_id: str = "a1", title: str = "Article One", slug: str | None = "article-one") -> ArticleRef:
    return ArticleRef(
        id=article_id,
        title=title,
        url=f"https://example.com/{article_id}",
        slug=slug,
        author="Jane Doe",
    )


def make_highlight(
    highlight_id: str,
    created_at: datetime,
    *,
    article: ArticleRef | None = None,
    quote: str | None = None,
    position: float | None = None,
    annotation: str | None = None,
) -> Highlight:
    return Highlight(
        id=highlight_id,
        article=article or make_ref(),
        quote=quote or f"Quote {highlight_id}",
        created_at=created_at,
        annotation=annotation,
        position_percent=position,
    )


def make_article(article_id: str, saved_at: datetime, title: str | None = None, labels=()) -> Article:
    return Article(
        id=article_id,
        title=title or f"Article {article_id}",
        url=f"https://example.com/{article_id}",
        saved_at=saved_at,
        content=f"<p>Body of {article_id}</p>",
        labels=tuple(labels),
    )


@pytest.fixture
def note_store():
    return FakeNoteStore()


@pytest.fixture
def db():
    """In-memory DB with schema."""
    database = DB(conn=connect(":memory:"))
    database.init()
    return database


@pytest.fixture
def db_conn(db) -> sqlite3.Connection:
    return db.conn
