"""BulkOperationStore: durable bulk-operation records."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from scheduler.models import BulkOperation, BulkStatus, Page, utc_now
from store.schema import bulk_operations as _ops
from store.schema import row_values


def _to_record(row) -> BulkOperation:
    return BulkOperation.model_validate(dict(row._mapping))


class BulkOperationStore:
    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    async def create(self, op: BulkOperation) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(sa.insert(_ops).values(**row_values(op, _ops)))

    async def load(self, op_id: str, owner: str | None = None) -> BulkOperation:
        """Load an operation. Raises KeyError if missing (or owned by someone else)."""
        query = sa.select(_ops).where(_ops.c.id == op_id)
        if owner is not None:
            query = query.where(_ops.c.owner == owner)
        async with self._engine.connect() as conn:
            row = (await conn.execute(query)).fetchone()
        if row is None:
            raise KeyError(f"Bulk operation '{op_id}' not found")
        return _to_record(row)

    async def list_page(
        self,
        owner: str,
        site_id: str | None = None,
        status: BulkStatus | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Page:
        """Most recent first."""
        where = [_ops.c.owner == owner]
        if site_id:
            where.append(_ops.c.site_id == site_id)
        if status:
            where.append(_ops.c.status == status.value)

        query = (
            sa.select(_ops).where(*where)
            .order_by(_ops.c.created_at.desc())
            .offset((page - 1) * per_page).limit(per_page)
        )
        count = sa.select(sa.func.count()).select_from(_ops).where(*where)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
            total = (await conn.execute(count)).scalar_one()
        return Page(items=[_to_record(r) for r in rows], total=total, page=page, per_page=per_page)

    async def list_by_status(self, *statuses: BulkStatus) -> list[BulkOperation]:
        query = (
            sa.select(_ops)
            .where(_ops.c.status.in_([s.value for s in statuses]))
            .order_by(_ops.c.created_at)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_to_record(r) for r in rows]

    # ── Transitions ──────────────────────────────────────────────────────────

    async def claim(self, op_id: str) -> bool:
        """queued → running. Only one caller can win."""
        now = utc_now()
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_ops)
                .where(_ops.c.id == op_id, _ops.c.status == BulkStatus.QUEUED.value)
                .values(status=BulkStatus.RUNNING.value, started_at=now, updated_at=now)
            )
        return result.rowcount == 1

    async def save_progress(self, op: BulkOperation) -> None:
        """Persist counters, errors and processed ids of a running operation."""
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.update(_ops)
                .where(_ops.c.id == op.id, _ops.c.status == BulkStatus.RUNNING.value)
                .values(
                    processed=op.processed,
                    succeeded=op.succeeded,
                    failed=op.failed,
                    errors=[e.model_dump() for e in op.errors],
                    errors_truncated=op.errors_truncated,
                    processed_ids=list(op.processed_ids),
                    updated_at=utc_now(),
                )
            )

    async def finish(self, op: BulkOperation, status: BulkStatus) -> datetime:
        """running → terminal, writing the final counters."""
        now = utc_now()
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.update(_ops)
                .where(_ops.c.id == op.id, _ops.c.status == BulkStatus.RUNNING.value)
                .values(
                    status=status.value,
                    processed=op.processed,
                    succeeded=op.succeeded,
                    failed=op.failed,
                    errors=[e.model_dump() for e in op.errors],
                    errors_truncated=op.errors_truncated,
                    processed_ids=list(op.processed_ids),
                    finished_at=now,
                    updated_at=now,
                )
            )
        return now
