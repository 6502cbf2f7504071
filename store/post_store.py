"""ScheduledPostStore: scheduled-post rows and their compare-and-set transitions."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from scheduler.models import Page, PostStatus, ScheduledPost, utc_now
from store.schema import row_values
from store.schema import scheduled_posts as _posts


def _to_record(row) -> ScheduledPost:
    return ScheduledPost.model_validate(dict(row._mapping))


class ScheduledPostStore:
    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    async def create(self, post: ScheduledPost) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(sa.insert(_posts).values(**row_values(post, _posts)))

    async def load(self, post_id: str, owner: str | None = None) -> ScheduledPost:
        """Load a post. Raises KeyError if missing (or owned by someone else)."""
        query = sa.select(_posts).where(_posts.c.id == post_id)
        if owner is not None:
            query = query.where(_posts.c.owner == owner)
        async with self._engine.connect() as conn:
            row = (await conn.execute(query)).fetchone()
        if row is None:
            raise KeyError(f"Scheduled post '{post_id}' not found")
        return _to_record(row)

    async def list_page(
        self,
        owner: str,
        site_id: str | None = None,
        status: PostStatus | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Page:
        """Soonest first."""
        where = [_posts.c.owner == owner]
        if site_id:
            where.append(_posts.c.site_id == site_id)
        if status:
            where.append(_posts.c.status == status.value)

        query = (
            sa.select(_posts).where(*where)
            .order_by(_posts.c.scheduled_for.asc())
            .offset((page - 1) * per_page).limit(per_page)
        )
        count = sa.select(sa.func.count()).select_from(_posts).where(*where)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
            total = (await conn.execute(count)).scalar_one()
        return Page(items=[_to_record(r) for r in rows], total=total, page=page, per_page=per_page)

    async def list_due(self, now: datetime, limit: int = 100) -> list[str]:
        """IDs of pending posts whose time has come, oldest first."""
        query = (
            sa.select(_posts.c.id)
            .where(
                _posts.c.status == PostStatus.PENDING.value,
                _posts.c.scheduled_for <= now,
            )
            .order_by(_posts.c.scheduled_for.asc())
            .limit(limit)
        )
        async with self._engine.connect() as conn:
            return list((await conn.execute(query)).scalars())

    # ── Transitions ──────────────────────────────────────────────────────────

    async def _transition(
        self,
        post_id: str,
        expected: PostStatus,
        **values: Any,
    ) -> bool:
        values["updated_at"] = utc_now()
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_posts)
                .where(_posts.c.id == post_id, _posts.c.status == expected.value)
                .values(**values)
            )
        return result.rowcount == 1

    async def claim(self, post_id: str, now: datetime) -> ScheduledPost | None:
        """pending → publishing. Returns the claimed row, or None if another worker won."""
        won = await self._transition(
            post_id, PostStatus.PENDING,
            status=PostStatus.PUBLISHING.value, claimed_at=now,
        )
        if not won:
            return None
        return await self.load(post_id)

    async def mark_published(self, post_id: str, remote_id: str, remote_link: str | None) -> bool:
        now = utc_now()
        return await self._transition(
            post_id, PostStatus.PUBLISHING,
            status=PostStatus.PUBLISHED.value,
            remote_id=remote_id,
            remote_link=remote_link,
            published_at=now,
            claimed_at=None,
            last_error=None,
        )

    async def release_for_retry(
        self, post_id: str, retry_count: int, run_at: datetime, error: str,
    ) -> bool:
        """publishing → pending, pushed back to *run_at*."""
        return await self._transition(
            post_id, PostStatus.PUBLISHING,
            status=PostStatus.PENDING.value,
            retry_count=retry_count,
            scheduled_for=run_at,
            claimed_at=None,
            last_error=error,
        )

    async def mark_failed(self, post_id: str, error: str) -> bool:
        return await self._transition(
            post_id, PostStatus.PUBLISHING,
            status=PostStatus.FAILED.value, claimed_at=None, last_error=error,
        )

    async def update_pending(self, post_id: str, **values: Any) -> bool:
        """Edit a post's payload / time; only succeeds while it is pending."""
        return await self._transition(post_id, PostStatus.PENDING, **values)

    async def cancel(self, post_id: str) -> bool:
        return await self._transition(
            post_id, PostStatus.PENDING, status=PostStatus.CANCELLED.value,
        )

    async def delete(self, post_id: str) -> bool:
        """Delete unless a dispatcher currently holds the claim."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.delete(_posts).where(
                    _posts.c.id == post_id,
                    _posts.c.status != PostStatus.PUBLISHING.value,
                )
            )
        return result.rowcount == 1

    async def recover_stale_claims(self, older_than: timedelta) -> list[str]:
        """Return publishing rows claimed before ``now - older_than`` to pending."""
        cutoff = utc_now() - older_than
        stale = (
            sa.select(_posts.c.id)
            .where(
                _posts.c.status == PostStatus.PUBLISHING.value,
                sa.or_(_posts.c.claimed_at.is_(None), _posts.c.claimed_at < cutoff),
            )
        )
        recovered = []
        async with self._engine.connect() as conn:
            candidates = list((await conn.execute(stale)).scalars())
        for post_id in candidates:
            # Re-check the claim time so a fresh claim made meanwhile is left alone
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    sa.update(_posts)
                    .where(
                        _posts.c.id == post_id,
                        _posts.c.status == PostStatus.PUBLISHING.value,
                        sa.or_(_posts.c.claimed_at.is_(None), _posts.c.claimed_at < cutoff),
                    )
                    .values(
                        status=PostStatus.PENDING.value,
                        claimed_at=None,
                        last_error="Recovered from a stale publishing claim",
                        updated_at=utc_now(),
                    )
                )
            if result.rowcount == 1:
                recovered.append(post_id)
        return recovered
