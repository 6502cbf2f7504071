"""AutomationStore: schedules, their execution history and generated articles."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from scheduler.models import (
    ArticleStatus,
    AutomationExecution,
    AutomationSchedule,
    ExecutionStatus,
    GeneratedArticle,
    Page,
    ScheduleStats,
    utc_now,
)
from store.schema import automation_executions as _executions
from store.schema import automation_schedules as _schedules
from store.schema import generated_articles as _articles
from store.schema import row_values


def _schedule(row) -> AutomationSchedule:
    return AutomationSchedule.model_validate(dict(row._mapping))


def _execution(row) -> AutomationExecution:
    return AutomationExecution.model_validate(dict(row._mapping))


class AutomationStore:
    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    # ── Schedules ────────────────────────────────────────────────────────────

    async def create(self, schedule: AutomationSchedule) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.insert(_schedules).values(**row_values(schedule, _schedules))
            )

    async def load(self, schedule_id: str, owner: str | None = None) -> AutomationSchedule:
        """Load a schedule. Raises KeyError if missing (or owned by someone else)."""
        query = sa.select(_schedules).where(_schedules.c.id == schedule_id)
        if owner is not None:
            query = query.where(_schedules.c.owner == owner)
        async with self._engine.connect() as conn:
            row = (await conn.execute(query)).fetchone()
        if row is None:
            raise KeyError(f"Schedule '{schedule_id}' not found")
        return _schedule(row)

    async def update(self, schedule_id: str, **values: Any) -> None:
        """Write the given definition columns (never the run bookkeeping)."""
        values = {k: getattr(v, "value", v) for k, v in values.items()}
        values["updated_at"] = utc_now()
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_schedules).where(_schedules.c.id == schedule_id).values(**values)
            )
        if result.rowcount != 1:
            raise KeyError(f"Schedule '{schedule_id}' not found")

    async def set_active(self, schedule_id: str, active: bool, next_run_at: datetime | None) -> None:
        await self.update(schedule_id, is_active=active, next_run_at=next_run_at)

    async def delete(self, schedule_id: str) -> None:
        """Delete a schedule together with its history and articles."""
        async with self._engine.begin() as conn:
            await conn.execute(sa.delete(_articles).where(_articles.c.schedule_id == schedule_id))
            await conn.execute(sa.delete(_executions).where(_executions.c.schedule_id == schedule_id))
            result = await conn.execute(sa.delete(_schedules).where(_schedules.c.id == schedule_id))
        if result.rowcount != 1:
            raise KeyError(f"Schedule '{schedule_id}' not found")

    async def list_active(self) -> list[AutomationSchedule]:
        query = sa.select(_schedules).where(_schedules.c.is_active.is_(True))
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_schedule(r) for r in rows]

    async def list_page(
        self,
        owner: str,
        site_id: str | None = None,
        is_active: bool | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Page:
        """Most recently created first."""
        where = [_schedules.c.owner == owner]
        if site_id:
            where.append(_schedules.c.site_id == site_id)
        if is_active is not None:
            where.append(_schedules.c.is_active.is_(is_active))

        query = (
            sa.select(_schedules).where(*where)
            .order_by(_schedules.c.created_at.desc())
            .offset((page - 1) * per_page).limit(per_page)
        )
        count = sa.select(sa.func.count()).select_from(_schedules).where(*where)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
            total = (await conn.execute(count)).scalar_one()
        return Page(items=[_schedule(r) for r in rows], total=total, page=page, per_page=per_page)

    async def record_run(
        self,
        schedule_id: str,
        ran_at: datetime,
        next_run_at: datetime | None,
        success: bool,
    ) -> None:
        """Bookkeeping after an execution: only run columns are touched."""
        counter = _schedules.c.successful_runs if success else _schedules.c.failed_runs
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.update(_schedules)
                .where(_schedules.c.id == schedule_id)
                .values({
                    _schedules.c.last_run_at: ran_at,
                    _schedules.c.next_run_at: next_run_at,
                    _schedules.c.total_runs: _schedules.c.total_runs + 1,
                    counter: counter + 1,
                    _schedules.c.updated_at: utc_now(),
                })
            )

    async def stats(self, owner: str, site_id: str | None = None) -> ScheduleStats:
        where = [_schedules.c.owner == owner]
        if site_id:
            where.append(_schedules.c.site_id == site_id)
        query = sa.select(
            sa.func.count(),
            sa.func.coalesce(sa.func.sum(sa.case((_schedules.c.is_active.is_(True), 1), else_=0)), 0),
            sa.func.coalesce(sa.func.sum(_schedules.c.total_runs), 0),
            sa.func.coalesce(sa.func.sum(_schedules.c.successful_runs), 0),
            sa.func.coalesce(sa.func.sum(_schedules.c.failed_runs), 0),
        ).where(*where)
        async with self._engine.connect() as conn:
            count, active, runs, ok, failed = (await conn.execute(query)).one()
        return ScheduleStats(
            total_schedules=count,
            active_schedules=active,
            total_runs=runs,
            successful_runs=ok,
            failed_runs=failed,
            success_rate=round(ok * 100 / runs) if runs else 0,
        )

    # ── Executions ───────────────────────────────────────────────────────────

    async def add_execution(self, execution: AutomationExecution) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.insert(_executions).values(**row_values(execution, _executions))
            )

    async def load_execution(self, execution_id: str) -> AutomationExecution:
        query = sa.select(_executions).where(_executions.c.id == execution_id)
        async with self._engine.connect() as conn:
            row = (await conn.execute(query)).fetchone()
        if row is None:
            raise KeyError(f"Execution '{execution_id}' not found")
        return _execution(row)

    async def finish_execution(self, execution: AutomationExecution) -> bool:
        """running → success/failed. Finished rows are never written again."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_executions)
                .where(
                    _executions.c.id == execution.id,
                    _executions.c.status == ExecutionStatus.RUNNING.value,
                )
                .values(
                    status=execution.status.value,
                    finished_at=execution.finished_at,
                    articles_generated=execution.articles_generated,
                    articles_published=execution.articles_published,
                    error=execution.error,
                )
            )
        return result.rowcount == 1

    async def list_executions(self, schedule_id: str, page: int = 1, per_page: int = 20) -> Page:
        """Newest first."""
        where = _executions.c.schedule_id == schedule_id
        query = (
            sa.select(_executions).where(where)
            .order_by(_executions.c.started_at.desc())
            .offset((page - 1) * per_page).limit(per_page)
        )
        count = sa.select(sa.func.count()).select_from(_executions).where(where)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
            total = (await conn.execute(count)).scalar_one()
        return Page(items=[_execution(r) for r in rows], total=total, page=page, per_page=per_page)

    async def fail_stale_executions(self, older_than: timedelta, error: str) -> int:
        """Close running executions started before ``now - older_than`` as failed."""
        now = utc_now()
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_executions)
                .where(
                    _executions.c.status == ExecutionStatus.RUNNING.value,
                    _executions.c.started_at < now - older_than,
                )
                .values(status=ExecutionStatus.FAILED.value, finished_at=now, error=error)
            )
        return result.rowcount

    # ── Generated articles ───────────────────────────────────────────────────

    async def add_article(self, article: GeneratedArticle) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(sa.insert(_articles).values(**row_values(article, _articles)))

    async def list_articles(self, schedule_id: str, page: int = 1, per_page: int = 20) -> Page:
        where = _articles.c.schedule_id == schedule_id
        query = (
            sa.select(_articles).where(where)
            .order_by(_articles.c.created_at.desc())
            .offset((page - 1) * per_page).limit(per_page)
        )
        count = sa.select(sa.func.count()).select_from(_articles).where(where)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
            total = (await conn.execute(count)).scalar_one()
        items = [GeneratedArticle.model_validate(dict(r._mapping)) for r in rows]
        return Page(items=items, total=total, page=page, per_page=per_page)

    async def seen_sources(self, schedule_id: str) -> set[str]:
        """Source URLs already turned into a kept article for this schedule."""
        query = (
            sa.select(_articles.c.source_url)
            .where(
                _articles.c.schedule_id == schedule_id,
                _articles.c.source_url.is_not(None),
                _articles.c.status.in_([ArticleStatus.GENERATED.value, ArticleStatus.PUBLISHED.value]),
            )
        )
        async with self._engine.connect() as conn:
            return set((await conn.execute(query)).scalars())
