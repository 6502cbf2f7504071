"""Automation schedule manager: cron-driven generate-and-publish runs."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from clients.base import PostPayload, RemoteActionClient
from core.errors import GenerationError, RemoteActionError, ScheduleValidationError
from core.logging_config import bind_job
from scheduler.cron import (
    build_trigger,
    next_fire_time,
    once_trigger,
    resolve_cron,
    to_utc,
    validate_timezone,
)
from scheduler.models import (
    ArticleStatus,
    AutomationExecution,
    AutomationSchedule,
    ExecutionStatus,
    ExecutionTrigger,
    GeneratedArticle,
    Page,
    ScheduleKind,
    ScheduleStats,
    utc_now,
)
from scheduler.registry import automation_key

if TYPE_CHECKING:
    from clients.base import ContentGenerator
    from clients.sites import SiteRegistry
    from scheduler.registry import TriggerRegistry
    from store.schedule_store import AutomationStore

logger = logging.getLogger(__name__)

INTERRUPTED = "interrupted by restart"

# Columns a client may change through update()
_EDITABLE = frozenset({
    "name", "description", "source_ref", "kind", "cron_expression", "run_at",
    "timezone", "is_active", "auto_publish", "publish_status", "max_articles",
})


class AutomationScheduleManager:
    """Owns one live timer per active schedule and runs the pipeline on each fire."""

    def __init__(
        self,
        store: AutomationStore,
        sites: SiteRegistry,
        registry: TriggerRegistry,
        generator: ContentGenerator,
    ):
        self.store = store
        self.sites = sites
        self.registry = registry
        self.generator = generator
        # One execution at a time per schedule
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tasks: set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> int:
        """Close interrupted executions and re-register every active schedule."""
        closed = await self.store.fail_stale_executions(timedelta(0), INTERRUPTED)
        if closed:
            logger.warning("Closed interrupted executions", extra={"count": closed})

        active = await self.store.list_active()
        for schedule in active:
            self._register(schedule)
            await self.store.update(schedule.id, next_run_at=self._next_run(schedule))
        logger.info("Automation schedules registered", extra={"count": len(active)})
        return len(active)

    def stop(self) -> None:
        """Drop every automation timer. Executions in flight are left to finish."""
        for key in self.registry.keys("automation:"):
            self.registry.unregister(key)

    async def drain(self) -> None:
        """Wait for every background execution started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Schedule management ──────────────────────────────────────────────────

    async def create(self, schedule: AutomationSchedule) -> AutomationSchedule:
        self._normalise(schedule, schedule.cron_expression)
        schedule.next_run_at = self._next_run(schedule)
        await self.store.create(schedule)
        if schedule.is_active:
            self._register(schedule)
        logger.info(
            "Schedule created",
            extra={"schedule_id": schedule.id, "kind": schedule.kind.value, "cron": schedule.cron_expression},
        )
        return schedule

    async def get(self, schedule_id: str, owner: str | None = None) -> AutomationSchedule:
        return await self.store.load(schedule_id, owner)

    async def list(
        self,
        owner: str,
        site_id: str | None = None,
        is_active: bool | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Page:
        return await self.store.list_page(owner, site_id, is_active, page, per_page)

    async def update(self, schedule_id: str, owner: str, changes: dict[str, Any]) -> AutomationSchedule:
        """Apply *changes*, re-resolve the cron expression and re-register the timer."""
        current = await self.store.load(schedule_id, owner)
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ScheduleValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")

        data = current.model_dump()
        data.update(changes)
        schedule = AutomationSchedule.model_validate(data)

        custom_cron = changes.get("cron_expression")
        if custom_cron is None and current.kind == ScheduleKind.CUSTOM:
            custom_cron = current.cron_expression
        self._normalise(schedule, custom_cron)
        schedule.next_run_at = self._next_run(schedule)

        self.registry.unregister(automation_key(schedule_id))
        await self.store.update(
            schedule_id,
            **{name: getattr(schedule, name) for name in _EDITABLE | {"next_run_at"}},
        )
        if schedule.is_active:
            self._register(schedule)
        logger.info("Schedule updated", extra={"schedule_id": schedule_id})
        return await self.store.load(schedule_id)

    async def delete(self, schedule_id: str, owner: str) -> None:
        await self.store.load(schedule_id, owner)   # raises KeyError if missing
        self.registry.unregister(automation_key(schedule_id))
        await self.store.delete(schedule_id)
        self._locks.pop(schedule_id, None)
        logger.info("Schedule deleted", extra={"schedule_id": schedule_id})

    async def pause(self, schedule_id: str, owner: str) -> AutomationSchedule:
        """Cancel the timer. An execution already in flight is left to finish."""
        await self.store.load(schedule_id, owner)
        self.registry.unregister(automation_key(schedule_id))
        await self.store.set_active(schedule_id, False, None)
        logger.info("Schedule paused", extra={"schedule_id": schedule_id})
        return await self.store.load(schedule_id)

    async def resume(self, schedule_id: str, owner: str) -> AutomationSchedule:
        schedule = await self.store.load(schedule_id, owner)
        schedule.is_active = True
        await self.store.set_active(schedule_id, True, self._next_run(schedule))
        self._register(schedule)
        logger.info("Schedule resumed", extra={"schedule_id": schedule_id})
        return await self.store.load(schedule_id)

    async def run_now(self, schedule_id: str, owner: str) -> AutomationExecution:
        """Record a running execution and start it in the background."""
        await self.store.load(schedule_id, owner)
        execution = AutomationExecution(schedule_id=schedule_id, trigger=ExecutionTrigger.MANUAL)
        await self.store.add_execution(execution)

        task = asyncio.create_task(self._run_bg(schedule_id, execution))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return execution

    async def list_executions(
        self, schedule_id: str, owner: str, page: int = 1, per_page: int = 20,
    ) -> Page:
        await self.store.load(schedule_id, owner)
        return await self.store.list_executions(schedule_id, page, per_page)

    async def list_articles(
        self, schedule_id: str, owner: str, page: int = 1, per_page: int = 20,
    ) -> Page:
        await self.store.load(schedule_id, owner)
        return await self.store.list_articles(schedule_id, page, per_page)

    async def stats(self, owner: str, site_id: str | None = None) -> ScheduleStats:
        return await self.store.stats(owner, site_id)

    def next_run_time(self, schedule_id: str) -> datetime | None:
        return self.registry.next_run_time(automation_key(schedule_id))

    # ── Timer callback ───────────────────────────────────────────────────────

    async def _fire(self, schedule_id: str) -> None:
        """Invoked by the registry. Re-reads the record before doing anything."""
        try:
            schedule = await self.store.load(schedule_id)
        except KeyError:
            logger.warning("Fired schedule not found in store", extra={"schedule_id": schedule_id})
            self.registry.unregister(automation_key(schedule_id))
            return
        if not schedule.is_active:
            logger.info("Fired schedule is paused; skipping", extra={"schedule_id": schedule_id})
            self.registry.unregister(automation_key(schedule_id))
            return

        once = schedule.kind == ScheduleKind.ONCE
        execution = AutomationExecution(
            schedule_id=schedule_id,
            trigger=ExecutionTrigger.ONCE if once else ExecutionTrigger.CRON,
        )
        await self.store.add_execution(execution)
        if once:
            # A one-shot schedule is spent as soon as it fires
            await self.store.set_active(schedule_id, False, None)
        await self._run_bg(schedule_id, execution)

    # ── Execution ────────────────────────────────────────────────────────────

    async def _run_bg(self, schedule_id: str, execution: AutomationExecution) -> None:
        try:
            await self.execute(schedule_id, execution)
        except Exception:
            logger.exception(
                "Background execution error",
                extra={"schedule_id": schedule_id, "execution_id": execution.id},
            )

    async def execute(self, schedule_id: str, execution: AutomationExecution) -> AutomationExecution:
        """Run the pipeline for one recorded execution and update the schedule."""
        async with self._locks[schedule_id]:
            with bind_job("automation", execution.id):
                try:
                    schedule = await self.store.load(schedule_id)
                except KeyError:
                    logger.warning("Schedule deleted before execution", extra={"schedule_id": schedule_id})
                    return execution

                logger.info("Execution started", extra={"schedule_id": schedule_id, "trigger": execution.trigger.value})
                try:
                    error = await self._pipeline(schedule, execution)
                except RemoteActionError as e:
                    error = str(e)
                except Exception as e:
                    logger.exception("Execution pipeline error")
                    error = str(e) or type(e).__name__

                execution.finished_at = utc_now()
                execution.status = ExecutionStatus.FAILED if error else ExecutionStatus.SUCCESS
                execution.error = error
                await self.store.finish_execution(execution)

                # Re-read: the schedule may have been edited while we ran
                try:
                    latest = await self.store.load(schedule_id)
                except KeyError:
                    return execution
                await self.store.record_run(
                    schedule_id,
                    ran_at=utc_now(),
                    next_run_at=self._next_run(latest),
                    success=error is None,
                )
                log = logger.info if error is None else logger.warning
                log(
                    "Execution finished",
                    extra={
                        "schedule_id": schedule_id,
                        "status": execution.status.value,
                        "generated": execution.articles_generated,
                        "published": execution.articles_published,
                        "duration_s": execution.duration_seconds,
                    },
                )
                return execution

    async def _pipeline(self, schedule: AutomationSchedule, execution: AutomationExecution) -> str | None:
        """Generate, record and optionally publish. Returns the first error, if any."""
        client: RemoteActionClient | None = None
        if schedule.auto_publish:
            # Fails before anything is generated
            client = self.sites.client_for(schedule.site_id)

        first_error: str | None = None
        exclude = await self.store.seen_sources(schedule.id)
        try:
            articles = await self.generator.generate(schedule.source_ref, schedule.max_articles, exclude)
        except GenerationError as e:
            articles = e.articles
            first_error = str(e)
        execution.articles_generated = len(articles)

        for article in articles:
            record = GeneratedArticle(
                schedule_id=schedule.id,
                execution_id=execution.id,
                source_url=article.source_url,
                title=article.title,
                content=article.content,
                excerpt=article.excerpt,
            )
            if client is not None:
                payload = PostPayload(
                    title=article.title,
                    content=article.content,
                    excerpt=article.excerpt,
                    status=schedule.publish_status,
                )
                try:
                    result = await client.publish(payload, key=f"article-{record.id}")
                except RemoteActionError as e:
                    record.status = ArticleStatus.FAILED
                    record.error = str(e)
                    first_error = first_error or str(e)
                else:
                    record.status = ArticleStatus.PUBLISHED
                    record.remote_id = result.remote_id
                    record.remote_link = result.link
                    execution.articles_published += 1
            await self.store.add_article(record)
        return first_error

    # ── Internal ─────────────────────────────────────────────────────────────

    def _normalise(self, schedule: AutomationSchedule, cron_expression: str | None) -> None:
        """Validate zone and times; resolve ``kind`` into a cron expression."""
        validate_timezone(schedule.timezone)
        schedule.cron_expression = resolve_cron(schedule.kind, cron_expression)
        if schedule.kind == ScheduleKind.ONCE:
            if schedule.run_at is None:
                raise ScheduleValidationError("run_at is required for once schedules")
            schedule.run_at = to_utc(schedule.run_at, schedule.timezone)
        else:
            schedule.run_at = None

    def _next_run(self, schedule: AutomationSchedule) -> datetime | None:
        if not schedule.is_active:
            return None
        if schedule.kind == ScheduleKind.ONCE:
            return schedule.run_at
        return next_fire_time(schedule.cron_expression, schedule.timezone)

    def _register(self, schedule: AutomationSchedule) -> None:
        if schedule.kind == ScheduleKind.ONCE:
            trigger = once_trigger(schedule.run_at)
        else:
            trigger = build_trigger(schedule.cron_expression, schedule.timezone)
        self.registry.register(
            automation_key(schedule.id),
            self._fire,
            trigger,
            kwargs={"schedule_id": schedule.id},
        )
