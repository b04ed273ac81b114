"""Sync job management.

Provides:
- SyncJob and SyncJobStore for job state management
- run_sync_job() async generator that runs one sync pass for SSE streaming
- run_consolidation() for the standalone consolidation pass
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol

from omnisync.core.append import Fragment, append_novel
from omnisync.core.grouping import group_highlights, group_key, note_title
from omnisync.core.notes import NoteCache, consolidate, resolve_cached_note, resolve_folder
from omnisync.core.rendering import decode_artifacts, render_article, render_highlight
from omnisync.core.settings import GroupingPolicy, Settings, SyncConfig
from omnisync.core.sync_state import SyncState
from omnisync.providers.content_types import Article, Highlight
from omnisync.providers.joplin import JoplinClient
from omnisync.providers.note_store import Folder, NoteStore, NoteStoreUnavailableError
from omnisync.providers.omnivore import OmnivoreClient

if TYPE_CHECKING:
    from omnisync.core.storage import DB

logger = logging.getLogger(__name__)

ARTICLE_AUTHOR = "Omnivore Sync"

_pass_lock = asyncio.Lock()


class ItemFetcher(Protocol):
    async def fetch_articles(self, since: datetime | None, labels: list[str] | None = None) -> list[Article]:
        ...

    async def fetch_highlights(
        self, since: datetime, lookback_days: int, labels: list[str] | None = None
    ) -> list[Highlight]:
        ...


class SyncStatus(str, Enum):
    """Status of a sync job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncEventType(str, Enum):
    """Types of events emitted during a sync pass."""

    STARTED = "started"
    PHASE = "phase"
    ITEM_SYNCED = "item_synced"
    ITEM_FAILED = "item_failed"
    NOTE_UPDATED = "note_updated"
    CONSOLIDATED = "consolidated"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncEvent:
    """Event emitted during a sync job for SSE streaming."""

    type: SyncEventType
    job_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        import json

        event_data = {
            "type": self.type.value,
            "job_id": self.job_id,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }
        return f"event: {self.type.value}\ndata: {json.dumps(event_data)}\n\n"


@dataclass
class SyncJob:
    """Tracks state of one sync pass."""

    id: str
    status: SyncStatus
    trigger: str = "manual"
    articles_synced: int = 0
    highlights_synced: int = 0
    notes_updated: int = 0
    notes_merged: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: str | None = None

    def touch(self) -> None:
        """Update last_activity timestamp."""
        self.last_activity = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "status": self.status.value,
            "trigger": self.trigger,
            "articles_synced": self.articles_synced,
            "highlights_synced": self.highlights_synced,
            "notes_updated": self.notes_updated,
            "notes_merged": self.notes_merged,
            "items_skipped": self.items_skipped,
            "items_failed": self.items_failed,
            "started_at": self.started_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "error": self.error,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SyncJob:
        """Create SyncJob from database row."""
        return cls(
            id=row["id"],
            status=SyncStatus(row["status"]),
            trigger=row["trigger"],
            articles_synced=row["articles_synced"],
            highlights_synced=row["highlights_synced"],
            notes_updated=row["notes_updated"],
            notes_merged=row["notes_merged"],
            items_skipped=row["items_skipped"],
            items_failed=row["items_failed"],
            started_at=datetime.fromisoformat(row["started_at"]),
            last_activity=datetime.fromisoformat(row["last_activity"]),
            error=row["error"],
        )


JOB_COLUMNS = """id, status, trigger, articles_synced, highlights_synced, notes_updated,
               notes_merged, items_skipped, items_failed, started_at, last_activity, error"""


class SyncJobStore:
    """Store for SyncJobs with DB persistence. Thread-safe."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._jobs: dict[str, SyncJob] = {}
        self._lock = threading.Lock()
        self._load_from_db()

    def _load_from_db(self) -> None:
        """Load unfinished jobs. Jobs left running by a dead process are failed."""
        cur = self._conn.execute(
            f"""
            SELECT {JOB_COLUMNS}
            FROM sync_jobs
            WHERE status IN ('pending', 'running')
            ORDER BY started_at DESC
            """
        )
        for row in cur.fetchall():
            job = SyncJob.from_row(row)
            if job.status == SyncStatus.RUNNING:
                job.status = SyncStatus.FAILED
                job.error = "Interrupted"
                with self._lock:
                    self._persist(job)
                continue
            self._jobs[job.id] = job

    def create(self, trigger: str = "manual") -> SyncJob:
        """Create a new pending SyncJob and persist to DB."""
        job = SyncJob(id=str(uuid.uuid4()), status=SyncStatus.PENDING, trigger=trigger)
        with self._lock:
            self._jobs[job.id] = job
            self._persist(job)
        return job

    def _persist(self, job: SyncJob) -> None:
        """Save or update job in DB. Must be called within lock."""
        self._conn.execute(
            f"""
            INSERT INTO sync_jobs ({JOB_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                articles_synced = excluded.articles_synced,
                highlights_synced = excluded.highlights_synced,
                notes_updated = excluded.notes_updated,
                notes_merged = excluded.notes_merged,
                items_skipped = excluded.items_skipped,
                items_failed = excluded.items_failed,
                last_activity = excluded.last_activity,
                error = excluded.error
            """,
            (
                job.id,
                job.status.value,
                job.trigger,
                job.articles_synced,
                job.highlights_synced,
                job.notes_updated,
                job.notes_merged,
                job.items_skipped,
                job.items_failed,
                job.started_at.isoformat(),
                job.last_activity.isoformat(),
                job.error,
            ),
        )
        self._conn.commit()

    def get(self, job_id: str) -> SyncJob | None:
        """Get job by ID, or None if not found."""
        with self._lock:
            return self._jobs.get(job_id)

    def update(self, job: SyncJob) -> None:
        """Update job in store and persist to DB."""
        job.touch()
        with self._lock:
            self._jobs[job.id] = job
            self._persist(job)

    def get_running(self) -> SyncJob | None:
        """Get the currently running job, if any."""
        with self._lock:
            for job in self._jobs.values():
                if job.status == SyncStatus.RUNNING:
                    return job
            return None

    def list_recent(self, limit: int = 10) -> list[SyncJob]:
        """List recent jobs from DB (including finished), newest first."""
        cur = self._conn.execute(
            f"""
            SELECT {JOB_COLUMNS}
            FROM sync_jobs
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [SyncJob.from_row(row) for row in cur.fetchall()]


@dataclass
class SyncPass:
    """Everything one sync pass works with. Discarded when the pass ends."""

    config: SyncConfig
    fetcher: ItemFetcher
    notes: NoteStore
    state: SyncState
    job: SyncJob
    folder: Folder
    cache: NoteCache = field(default_factory=NoteCache)
    synced_at: list[datetime] = field(default_factory=list)
    failed_at: list[datetime] = field(default_factory=list)

    def watermark_candidate(self) -> datetime | None:
        """Latest synced timestamp, held back to the earliest failure so it is retried."""
        if not self.synced_at:
            return None
        candidate = max(self.synced_at)
        if self.failed_at:
            candidate = min(candidate, min(self.failed_at))
        return candidate


async def _write_article(ctx: SyncPass, article: Article) -> bool:
    """Create the note for an article. Returns False if it already exists."""
    title = decode_artifacts(article.title)
    for note in await ctx.notes.search_notes_by_title(title):
        if note.source_url == article.url:
            logger.debug(f"Note for article {article.id} already exists: {note.id}")
            return False

    note = await ctx.notes.create_note(
        title,
        render_article(article),
        ctx.folder.id,
        source_url=article.url,
        author=ARTICLE_AUTHOR,
    )
    if article.labels:
        await ctx.notes.add_tags(note.id, list(article.labels))
    return True


async def _sync_articles(ctx: SyncPass) -> AsyncIterator[SyncEvent]:
    articles = await ctx.fetcher.fetch_articles(
        ctx.state.get_watermark(), list(ctx.config.article_labels)
    )
    logger.info(f"Retrieved {len(articles)} articles from Omnivore")

    for article in articles:
        if ctx.state.is_article_synced(article.id):
            ctx.job.items_skipped += 1
            continue

        try:
            created = await _write_article(ctx, article)
        except NoteStoreUnavailableError:
            raise
        except Exception as e:
            logger.warning(f"Failed to sync article {article.id} ({article.title[:50]}): {e}")
            ctx.job.items_failed += 1
            ctx.failed_at.append(article.saved_at)
            yield SyncEvent(
                type=SyncEventType.ITEM_FAILED,
                job_id=ctx.job.id,
                data={"kind": "article", "item_id": article.id, "title": article.title[:50], "error": str(e)},
            )
            continue

        ctx.state.record_article_synced(article.id, article.saved_at)
        ctx.synced_at.append(article.saved_at)
        ctx.job.articles_synced += 1
        yield SyncEvent(
            type=SyncEventType.ITEM_SYNCED,
            job_id=ctx.job.id,
            data={"kind": "article", "item_id": article.id, "title": article.title[:50], "created": created},
        )

    ctx.state.prune_articles(ctx.config.article_retention_days)


def _render_group(ctx: SyncPass, items: list[Highlight]) -> tuple[list[Fragment], list[Highlight]]:
    """Render each highlight; a highlight that fails to render is skipped."""
    fragments: list[Fragment] = []
    failed: list[Highlight] = []
    for hl in items:
        try:
            text = render_highlight(hl, ctx.config.highlight_template, ctx.config.timezone)
        except Exception as e:
            logger.warning(f"Failed to render highlight {hl.id}: {e}")
            failed.append(hl)
            continue
        fragments.append(Fragment(source_id=hl.id, text=text))
    return fragments, failed


async def _sync_highlights(ctx: SyncPass) -> AsyncIterator[SyncEvent]:
    config = ctx.config
    highlights = await ctx.fetcher.fetch_highlights(
        ctx.state.get_watermark(),
        config.highlight_sync_period_days,
        list(config.highlight_labels),
    )
    logger.info(f"Retrieved {len(highlights)} highlights from Omnivore")

    pending = [
        hl for hl in highlights
        if not ctx.state.is_highlight_synced(group_key(hl, config.grouping, config.timezone), hl.id)
    ]
    ctx.job.items_skipped += len(highlights) - len(pending)

    groups = group_highlights(pending, config.grouping, config.timezone)
    for key, items in groups.items():
        title = note_title(
            config.highlight_title_prefix,
            key,
            config.grouping,
            decode_artifacts(items[0].article.title),
        )
        fragments, render_failed = _render_group(ctx, items)
        written = [hl for hl in items if hl not in render_failed]

        try:
            note = await resolve_cached_note(ctx.notes, ctx.cache, key, title, ctx.folder.id)
            before = note.body
            await append_novel(
                ctx.notes,
                note,
                fragments,
                ctx.state,
                key,
                resort=config.grouping == GroupingPolicy.BY_DATE,
            )
        except NoteStoreUnavailableError:
            raise
        except Exception as e:
            logger.warning(f"Failed to write {len(items)} highlights to {title}: {e}")
            render_failed = items
            written = []
            yield SyncEvent(
                type=SyncEventType.ITEM_FAILED,
                job_id=ctx.job.id,
                data={"kind": "highlight_group", "group": key, "title": title, "error": str(e)},
            )
        else:
            if note.body != before:
                ctx.job.notes_updated += 1
                yield SyncEvent(
                    type=SyncEventType.NOTE_UPDATED,
                    job_id=ctx.job.id,
                    data={"group": key, "title": title, "note_id": note.id, "highlights": len(written)},
                )

        ctx.job.items_failed += len(render_failed)
        ctx.failed_at.extend(hl.created_at for hl in render_failed)
        ctx.job.highlights_synced += len(written)
        ctx.synced_at.extend(hl.created_at for hl in written)


async def run_sync_job(
    job: SyncJob,
    db: "DB",
    store: SyncJobStore,
    config: SyncConfig,
    fetcher: ItemFetcher,
    notes: NoteStore,
) -> AsyncIterator[SyncEvent]:
    """Run one sync pass, yielding events for SSE streaming.

    State is loaded once at the start and saved once at the end. If the
    pass aborts, persisted state is left as it was.

    Args:
        job: The SyncJob to run
        db: Database instance holding the sync state
        store: SyncJobStore for persistence
        config: Settings frozen for this pass
        fetcher: Omnivore client (or anything with the same fetch methods)
        notes: Destination note store

    Yields:
        SyncEvent for each significant action
    """
    job.status = SyncStatus.RUNNING
    store.update(job)

    try:
        yield SyncEvent(type=SyncEventType.STARTED, job_id=job.id, data={"sync_type": config.sync_type.value})

        state = db.load_sync_state()
        logger.info(
            f"Last sync date: {state.get_watermark().isoformat()}, "
            f"{len(state.articles)} synced articles, sync type: {config.sync_type.value}"
        )
        folder = await resolve_folder(notes, config.target_folder)
        ctx = SyncPass(config=config, fetcher=fetcher, notes=notes, state=state, job=job, folder=folder)

        if config.syncs_articles:
            yield SyncEvent(type=SyncEventType.PHASE, job_id=job.id, data={"phase": "articles"})
            async for event in _sync_articles(ctx):
                yield event
            store.update(job)

        if config.syncs_highlights:
            yield SyncEvent(type=SyncEventType.PHASE, job_id=job.id, data={"phase": "highlights"})
            async for event in _sync_highlights(ctx):
                yield event
            state.prune_highlights(config.highlight_retention_days)
            store.update(job)

        candidate = ctx.watermark_candidate()
        if candidate is not None:
            state.advance_watermark(candidate)
        db.save_sync_state(state)
        logger.info(
            f"Sync completed. New last sync date: {state.get_watermark().isoformat()}. "
            f"Synced {job.articles_synced} articles and {job.highlights_synced} highlights."
        )

        if config.syncs_highlights and config.consolidate_after_sync:
            job.notes_merged += await consolidate(notes, config.highlight_title_prefix, folder.id)
            yield SyncEvent(
                type=SyncEventType.CONSOLIDATED,
                job_id=job.id,
                data={"notes_merged": job.notes_merged},
            )

        job.status = SyncStatus.COMPLETED
        store.update(job)
        yield SyncEvent(type=SyncEventType.COMPLETED, job_id=job.id, data=job.to_dict())

    except Exception as e:
        logger.exception(f"Sync job {job.id} failed")
        job.status = SyncStatus.FAILED
        job.error = str(e)
        store.update(job)
        yield SyncEvent(
            type=SyncEventType.FAILED,
            job_id=job.id,
            data={"error": str(e), **job.to_dict()},
        )

    finally:
        # Consumer went away mid-pass (client disconnect, task cancelled)
        if job.status == SyncStatus.RUNNING:
            logger.warning(f"Sync job {job.id} cancelled before completion")
            job.status = SyncStatus.FAILED
            job.error = "Cancelled"
            store.update(job)


async def run_configured_sync_job(
    job: SyncJob,
    db: "DB",
    store: SyncJobStore,
    settings: Settings,
) -> AsyncIterator[SyncEvent]:
    """`run_sync_job` with clients built from settings.

    Only one pass runs per process; a second caller fails its job
    instead of waiting.
    """
    if _pass_lock.locked():
        job.status = SyncStatus.FAILED
        job.error = "Another sync pass is running"
        store.update(job)
        yield SyncEvent(type=SyncEventType.FAILED, job_id=job.id, data={"error": job.error, **job.to_dict()})
        return

    async with _pass_lock:
        try:
            config = settings.sync_config()
            async with OmnivoreClient(settings.omnivore_api_key, settings.omnivore_base_url) as fetcher, \
                    JoplinClient(settings.joplin_token, settings.joplin_base_url) as notes, \
                    aclosing(run_sync_job(job, db, store, config, fetcher, notes)) as events:
                async for event in events:
                    yield event
        except ValueError as e:
            # Raised before the pass starts: bad settings or missing credentials
            logger.error(f"Invalid sync settings: {e}")
            job.status = SyncStatus.FAILED
            job.error = str(e)
            store.update(job)
            yield SyncEvent(type=SyncEventType.FAILED, job_id=job.id, data={"error": str(e), **job.to_dict()})


def is_pass_running() -> bool:
    return _pass_lock.locked()


async def run_consolidation(settings: Settings) -> int:
    """Standalone consolidation pass. Returns the number of notes merged away."""
    config = settings.sync_config()
    async with JoplinClient(settings.joplin_token, settings.joplin_base_url) as notes:
        folder = await resolve_folder(notes, config.target_folder)
        return await consolidate(notes, config.highlight_title_prefix, folder.id)


# Global store instance
_store: SyncJobStore | None = None


def init_sync_store(conn: sqlite3.Connection) -> None:
    """Initialize the global SyncJobStore with DB connection."""
    global _store
    _store = SyncJobStore(conn)


def get_sync_store() -> SyncJobStore:
    """Get the global SyncJobStore. Must call init_sync_store first."""
    if _store is None:
        raise RuntimeError("SyncJobStore not initialized. Call init_sync_store first.")
    return _store
