from __future__ import annotations

import json
import logging
from contextlib import aclosing
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, StreamingResponse
from jinja2 import Environment, FileSystemLoader, select_autoescape

from omnisync.core.notes import FolderResolutionError
from omnisync.core.scheduler import SyncScheduler
from omnisync.core.settings import Settings
from omnisync.core.storage import get_db, init_db
from omnisync.core.sync_job import (
    SyncStatus,
    get_sync_store,
    is_pass_running,
    run_configured_sync_job,
    run_consolidation,
)
from omnisync.providers.note_store import NoteStoreError

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"

jinja = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)

app = FastAPI(title="omnisync")

_scheduler: SyncScheduler | None = None


@app.on_event("startup")
async def _startup() -> None:
    global _scheduler
    s = Settings.from_env()
    logging.basicConfig(
        level=s.log_level.to_logging(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db(s)
    _scheduler = SyncScheduler(s)
    _scheduler.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _scheduler is not None:
        await _scheduler.stop()


def render(template_name: str, **ctx) -> HTMLResponse:
    template = jinja.get_template(template_name)
    return HTMLResponse(template.render(**ctx))


@app.get("/", response_class=HTMLResponse)
def home(request: Request):
    s = Settings.from_env()
    state = get_db().load_sync_state()
    jobs = get_sync_store().list_recent(limit=10)
    return render(
        "home.html",
        request=request,
        settings=s,
        state=state.to_dict(),
        jobs=[j.to_dict() for j in jobs],
        scheduled=s.sync_interval_minutes > 0,
    )


@app.post("/api/sync/start")
def api_sync_start():
    """Start a new sync pass.

    Returns job ID for SSE stream connection.
    """
    store = get_sync_store()

    running = store.get_running()
    if running:
        return {"error": "A sync pass is already running", "job_id": running.id}
    if is_pass_running():
        return {"error": "A sync pass is already running"}

    job = store.create(trigger="manual")
    return {"job_id": job.id}


@app.get("/api/sync/{job_id}/status")
def api_sync_status(job_id: str):
    """Get current status of a sync job."""
    store = get_sync_store()
    job = store.get(job_id)

    if not job:
        return {"error": "Job not found"}

    return job.to_dict()


@app.get("/api/sync/{job_id}/stream")
async def api_sync_stream(job_id: str):
    """SSE stream for sync progress.

    Connect after starting a job; the pass runs while the stream is open.
    """
    store = get_sync_store()
    job = store.get(job_id)

    if not job:
        return {"error": "Job not found"}

    if job.status != SyncStatus.PENDING:
        return {"error": f"Job is not pending (status: {job.status.value})"}

    db = get_db()
    settings = Settings.from_env()

    async def event_generator():
        """Generate SSE events from sync job."""
        try:
            async with aclosing(run_configured_sync_job(job, db, store, settings)) as events:
                async for event in events:
                    yield event.to_sse()
        except Exception as e:
            yield f"event: error\ndata: {json.dumps({'error': str(e)})}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/api/sync/jobs")
def api_sync_jobs(limit: int = 10):
    """Get list of recent sync jobs."""
    store = get_sync_store()
    jobs = store.list_recent(limit=limit)

    return {"jobs": [j.to_dict() for j in jobs]}


@app.get("/api/sync/state")
def api_sync_state():
    """Watermark and ledger sizes."""
    return get_db().load_sync_state().to_dict()


@app.post("/api/sync/reset")
def api_sync_reset(confirm: bool = False):
    """Clear the watermark and both ledgers so the next pass re-syncs everything.

    Notes in Joplin and data in Omnivore are not touched.
    """
    if not confirm:
        return {"error": "Reset requires confirm=true"}

    if get_sync_store().get_running() or is_pass_running():
        return {"error": "Cannot reset while a sync pass is running"}

    db = get_db()
    db.reset_sync_state()
    return {"status": "reset", "state": db.load_sync_state().to_dict()}


@app.post("/api/sync/consolidate")
async def api_sync_consolidate():
    """Merge highlight notes that ended up with the same title."""
    if get_sync_store().get_running() or is_pass_running():
        return {"error": "Cannot consolidate while a sync pass is running"}

    try:
        removed = await run_consolidation(Settings.from_env())
    except (ValueError, NoteStoreError, FolderResolutionError) as e:
        logger.error(f"Consolidation failed: {e}")
        return {"error": str(e)}

    return {"notes_merged": removed, "message": f"Merged away {removed} duplicate notes"}
