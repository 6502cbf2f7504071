"""FastAPI service layer for the publish engine."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from api.auth import resolve_user
from api.models import (
    BulkOperationResponse,
    BulkRequest,
    BulkSubmitResponse,
    CreateScheduleRequest,
    RescheduleRequest,
    SchedulePostRequest,
    UpdatePostRequest,
    UpdateScheduleRequest,
)
from clients.content import RssArticleGenerator
from clients.sites import SiteRegistry
from core.config import Settings
from core.errors import InvalidTransitionError, ScheduleValidationError
from core.event_bus import EventBus
from scheduler.automation_manager import AutomationScheduleManager
from scheduler.bulk_runner import BulkOperationRunner, _make_event
from scheduler.models import (
    BULK_TERMINAL,
    AutomationSchedule,
    BulkAction,
    BulkStatus,
    PostStatus,
)
from scheduler.post_dispatcher import ScheduledPostDispatcher
from scheduler.registry import TriggerRegistry
from store.bulk_store import BulkOperationStore
from store.database import Database
from store.post_store import ScheduledPostStore
from store.schedule_store import AutomationStore

logger = logging.getLogger(__name__)

# ── Singletons ────────────────────────────────────────────────────────────────
# Built at import time so tests can swap them before the first request.

_settings = Settings.from_env()
_db = Database(_settings.database_url)
_bulk_store = BulkOperationStore(_db.engine)
_post_store = ScheduledPostStore(_db.engine)
_automation_store = AutomationStore(_db.engine)
_sites = SiteRegistry.from_file(_settings.sites_file) if _settings.sites_file else SiteRegistry()
_event_bus = EventBus()
_registry = TriggerRegistry()
_generator = RssArticleGenerator(model=_settings.generator_model)

_bulk_runner = BulkOperationRunner(
    _bulk_store,
    _sites,
    event_bus=_event_bus,
    concurrency=_settings.bulk_concurrency,
    item_delay=_settings.bulk_item_delay_seconds,
    max_errors=_settings.bulk_max_errors,
)
_dispatcher = ScheduledPostDispatcher(
    _post_store,
    _sites,
    _registry,
    interval_seconds=_settings.dispatcher_interval_seconds,
    concurrency=_settings.dispatch_concurrency,
    max_retries=_settings.post_max_retries,
    backoff_seconds=_settings.retry_backoff_seconds,
    stale_claim_seconds=_settings.stale_claim_seconds,
)
_automation = AutomationScheduleManager(_automation_store, _sites, _registry, _generator)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _db.init()
    _registry.start()
    await _dispatcher.start()
    await _automation.start()
    await _bulk_runner.recover()
    yield
    _dispatcher.stop()
    _automation.stop()
    await _bulk_runner.shutdown()
    _registry.shutdown()
    await _db.dispose()


app = FastAPI(
    title="Publish Engine API",
    description="Bulk operations, scheduled posts and automation schedules for WordPress sites.",
    version="0.1.0",
    lifespan=lifespan,
)


# ── Error mapping ─────────────────────────────────────────────────────────────

@app.exception_handler(InvalidTransitionError)
async def _invalid_transition(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ScheduleValidationError)
async def _invalid_schedule(request: Request, exc: ScheduleValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def _invalid_record(request: Request, exc: ValidationError):
    errors = exc.errors(include_url=False, include_context=False)
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(errors)})


# ── Helpers ───────────────────────────────────────────────────────────────────

async def current_user(request: Request) -> str:
    return resolve_user(request, _settings)


def _not_found(e: KeyError) -> HTTPException:
    return HTTPException(404, detail=e.args[0] if e.args else "Not found")


def _check_site(site_id: str, user: str) -> None:
    try:
        _sites.ensure_owned(site_id, user)
    except KeyError as e:
        raise _not_found(e)


_PAGE = Query(1, ge=1)
_PER_PAGE = Query(20, ge=1, le=100)


@app.get("/health")
async def health():
    return {"status": "ok", "timers": len(_registry.keys())}


# ── Bulk operation routes ─────────────────────────────────────────────────────

_BULK_ACTIONS = {
    "publish": BulkAction.PUBLISH,
    "unpublish": BulkAction.UNPUBLISH,
    "delete": BulkAction.DELETE,
    "update-metadata": BulkAction.UPDATE_METADATA,
}


@app.post("/bulk-operations/{action}", response_model=BulkSubmitResponse, status_code=202)
async def submit_bulk_operation(action: str, req: BulkRequest, user: str = Depends(current_user)):
    """Queue one action over many posts. Returns the operation ID immediately."""
    if action not in _BULK_ACTIONS:
        raise HTTPException(404, detail=f"Unknown bulk action '{action}'")
    _check_site(req.site_id, user)
    try:
        op = await _bulk_runner.submit(
            user, req.site_id, _BULK_ACTIONS[action], req.target_ids,
            target_type=req.target_type, fields=req.fields,
        )
    except ValueError as e:
        raise HTTPException(422, detail=str(e))
    return BulkSubmitResponse(operation_id=op.id, status=op.status)


@app.get("/bulk-operations")
async def list_bulk_operations(
    site_id: str | None = None,
    status: BulkStatus | None = None,
    page: int = _PAGE,
    per_page: int = _PER_PAGE,
    user: str = Depends(current_user),
):
    result = await _bulk_runner.list(user, site_id, status, page, per_page)
    result.items = [BulkOperationResponse.of(op) for op in result.items]
    return result


@app.get("/bulk-operations/{op_id}", response_model=BulkOperationResponse)
async def get_bulk_operation(op_id: str, user: str = Depends(current_user)):
    """Status, counters and per-item errors."""
    try:
        op = await _bulk_runner.get_status(op_id, user)
    except KeyError as e:
        raise _not_found(e)
    return BulkOperationResponse.of(op)


_SSE_TERMINAL = {s.value for s in BULK_TERMINAL}
_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@app.get("/bulk-operations/{op_id}/stream")
async def stream_bulk_operation(op_id: str, user: str = Depends(current_user)):
    """Stream progress as Server-Sent Events until the operation finishes.

    Sends the current snapshot first, then one event per processed item.
    A ``: heartbeat`` comment goes out every 30 s of silence.
    """
    try:
        await _bulk_runner.get_status(op_id, user)
    except KeyError as e:
        raise _not_found(e)

    async def generator():
        # Subscribe before the snapshot so no event falls in between
        q = _event_bus.subscribe(op_id)
        try:
            op = await _bulk_runner.get_status(op_id)
            snapshot = _make_event("snapshot", op)
            yield f"data: {json.dumps(snapshot)}\n\n"
            if snapshot["status"] in _SSE_TERMINAL:
                return
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=30.0)
                    yield f"data: {json.dumps(event)}\n\n"
                    if event.get("status") in _SSE_TERMINAL:
                        return
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
        finally:
            _event_bus.unsubscribe(op_id, q)

    return StreamingResponse(generator(), media_type="text/event-stream", headers=_SSE_HEADERS)


# ── Scheduled post routes ─────────────────────────────────────────────────────

@app.post("/scheduled-posts", status_code=201)
async def create_scheduled_post(req: SchedulePostRequest, user: str = Depends(current_user)):
    _check_site(req.site_id, user)
    return await _dispatcher.schedule(
        user, req.site_id, req.payload, req.scheduled_for,
        timezone=req.timezone, max_retries=req.max_retries,
    )


@app.get("/scheduled-posts")
async def list_scheduled_posts(
    site_id: str | None = None,
    status: PostStatus | None = None,
    page: int = _PAGE,
    per_page: int = _PER_PAGE,
    user: str = Depends(current_user),
):
    return await _dispatcher.list(user, site_id, status, page, per_page)


@app.get("/scheduled-posts/{post_id}")
async def get_scheduled_post(post_id: str, user: str = Depends(current_user)):
    try:
        return await _dispatcher.get(post_id, user)
    except KeyError as e:
        raise _not_found(e)


@app.put("/scheduled-posts/{post_id}")
async def update_scheduled_post(post_id: str, req: UpdatePostRequest, user: str = Depends(current_user)):
    """Edit payload and/or time. Only pending posts can be edited."""
    try:
        return await _dispatcher.update(
            post_id, user, payload=req.payload,
            scheduled_for=req.scheduled_for, timezone=req.timezone,
        )
    except KeyError as e:
        raise _not_found(e)


@app.delete("/scheduled-posts/{post_id}", status_code=204)
async def delete_scheduled_post(post_id: str, user: str = Depends(current_user)):
    try:
        await _dispatcher.delete(post_id, user)
    except KeyError as e:
        raise _not_found(e)


@app.post("/scheduled-posts/{post_id}/reschedule")
async def reschedule_post(post_id: str, req: RescheduleRequest, user: str = Depends(current_user)):
    try:
        return await _dispatcher.reschedule(post_id, user, req.scheduled_for, req.timezone)
    except KeyError as e:
        raise _not_found(e)


@app.post("/scheduled-posts/{post_id}/publish-now")
async def publish_post_now(post_id: str, user: str = Depends(current_user)):
    """Publish immediately through the same claim path as the dispatcher tick."""
    try:
        return await _dispatcher.publish_now(post_id, user)
    except KeyError as e:
        raise _not_found(e)


@app.post("/scheduled-posts/{post_id}/cancel")
async def cancel_post(post_id: str, user: str = Depends(current_user)):
    try:
        return await _dispatcher.cancel(post_id, user)
    except KeyError as e:
        raise _not_found(e)


# ── Automation schedule routes ────────────────────────────────────────────────

@app.post("/automation-schedules", status_code=201)
async def create_automation_schedule(req: CreateScheduleRequest, user: str = Depends(current_user)):
    """Create a schedule; active schedules get a live timer straight away."""
    _check_site(req.site_id, user)
    schedule = AutomationSchedule(owner=user, **req.model_dump())
    return await _automation.create(schedule)


@app.get("/automation-schedules")
async def list_automation_schedules(
    site_id: str | None = None,
    is_active: bool | None = None,
    page: int = _PAGE,
    per_page: int = _PER_PAGE,
    user: str = Depends(current_user),
):
    return await _automation.list(user, site_id, is_active, page, per_page)


@app.get("/automation-schedules/stats")
async def automation_stats(site_id: str | None = None, user: str = Depends(current_user)):
    return await _automation.stats(user, site_id)


@app.get("/automation-schedules/{schedule_id}")
async def get_automation_schedule(schedule_id: str, user: str = Depends(current_user)):
    try:
        return await _automation.get(schedule_id, user)
    except KeyError as e:
        raise _not_found(e)


@app.put("/automation-schedules/{schedule_id}")
async def update_automation_schedule(
    schedule_id: str, req: UpdateScheduleRequest, user: str = Depends(current_user),
):
    try:
        return await _automation.update(schedule_id, user, req.model_dump(exclude_unset=True))
    except KeyError as e:
        raise _not_found(e)


@app.delete("/automation-schedules/{schedule_id}", status_code=204)
async def delete_automation_schedule(schedule_id: str, user: str = Depends(current_user)):
    """Delete a schedule, its timer and its execution history."""
    try:
        await _automation.delete(schedule_id, user)
    except KeyError as e:
        raise _not_found(e)


@app.post("/automation-schedules/{schedule_id}/pause")
async def pause_automation_schedule(schedule_id: str, user: str = Depends(current_user)):
    try:
        return await _automation.pause(schedule_id, user)
    except KeyError as e:
        raise _not_found(e)


@app.post("/automation-schedules/{schedule_id}/resume")
async def resume_automation_schedule(schedule_id: str, user: str = Depends(current_user)):
    try:
        return await _automation.resume(schedule_id, user)
    except KeyError as e:
        raise _not_found(e)


@app.post("/automation-schedules/{schedule_id}/run-now", status_code=202)
async def run_automation_now(schedule_id: str, user: str = Depends(current_user)):
    """Start an execution in the background and return it while it runs."""
    try:
        return await _automation.run_now(schedule_id, user)
    except KeyError as e:
        raise _not_found(e)


@app.get("/automation-schedules/{schedule_id}/executions")
async def list_automation_executions(
    schedule_id: str,
    page: int = _PAGE,
    per_page: int = _PER_PAGE,
    user: str = Depends(current_user),
):
    try:
        return await _automation.list_executions(schedule_id, user, page, per_page)
    except KeyError as e:
        raise _not_found(e)


@app.get("/automation-schedules/{schedule_id}/articles")
async def list_generated_articles(
    schedule_id: str,
    page: int = _PAGE,
    per_page: int = _PER_PAGE,
    user: str = Depends(current_user),
):
    try:
        return await _automation.list_articles(schedule_id, user, page, per_page)
    except KeyError as e:
        raise _not_found(e)
