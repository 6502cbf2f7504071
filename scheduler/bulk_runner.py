"""Bulk operation runner: one action applied to many remote posts."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from clients.base import RemoteActionClient
from core.errors import MissingCredentialsError, RemoteActionError
from core.logging_config import bind_job
from scheduler.models import BulkAction, BulkOperation, BulkStatus, ItemError, Page

if TYPE_CHECKING:
    from clients.sites import SiteRegistry
    from core.event_bus import EventBus
    from store.bulk_store import BulkOperationStore

logger = logging.getLogger(__name__)

INTERRUPTED = "interrupted by restart"


class BulkOperationRunner:
    def __init__(
        self,
        store: BulkOperationStore,
        sites: SiteRegistry,
        event_bus: EventBus | None = None,
        concurrency: int = 5,
        max_in_flight: int | None = None,
        item_delay: float = 0.0,
        max_errors: int = 100,
    ):
        self.store = store
        self.sites = sites
        self.event_bus = event_bus
        self.concurrency = concurrency
        self.item_delay = item_delay
        self.max_errors = max_errors
        # Shared by every operation: caps concurrent calls against the remote API
        self._gate = asyncio.Semaphore(max_in_flight or concurrency)
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Public API ───────────────────────────────────────────────────────────

    async def submit(
        self,
        owner: str,
        site_id: str,
        action: BulkAction,
        target_ids: list[str],
        target_type: str = "post",
        fields: dict[str, Any] | None = None,
    ) -> BulkOperation:
        """Persist a queued operation and start it in the background."""
        targets = list(dict.fromkeys(str(t) for t in target_ids))
        if not targets:
            raise ValueError("target_ids must not be empty")
        if action == BulkAction.UPDATE_METADATA and not fields:
            raise ValueError("update_metadata requires a non-empty fields payload")

        op = BulkOperation(
            owner=owner,
            site_id=site_id,
            target_type=target_type,
            action=action,
            target_ids=targets,
            fields=fields,
            total=len(targets),
        )
        await self.store.create(op)
        logger.info(
            "Bulk operation queued",
            extra={"operation_id": op.id, "action": action.value, "total": op.total},
        )
        self._spawn(op.id)
        return op

    async def get_status(self, op_id: str, owner: str | None = None) -> BulkOperation:
        return await self.store.load(op_id, owner)

    async def list(
        self,
        owner: str,
        site_id: str | None = None,
        status: BulkStatus | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Page:
        return await self.store.list_page(owner, site_id, status, page, per_page)

    async def wait(self, op_id: str) -> None:
        """Block until the background task for *op_id* (if any) finishes."""
        task = self._tasks.get(op_id)
        if task:
            await asyncio.gather(task, return_exceptions=True)

    async def recover(self) -> tuple[int, int]:
        """Startup pass: finalise interrupted runs, restart queued ones.

        Targets of a ``running`` operation that never got an outcome are
        recorded as failed rather than executed again.
        """
        finalised = 0
        for op in await self.store.list_by_status(BulkStatus.RUNNING):
            done = set(op.processed_ids)
            for target in op.target_ids:
                if target not in done:
                    self._record(op, target, INTERRUPTED)
            await self._finish(op, _final_status(op))
            finalised += 1

        queued = await self.store.list_by_status(BulkStatus.QUEUED)
        for op in queued:
            self._spawn(op.id)

        if finalised or queued:
            logger.info(
                "Bulk operations recovered",
                extra={"finalised": finalised, "restarted": len(queued)},
            )
        return finalised, len(queued)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── Execution ────────────────────────────────────────────────────────────

    def _spawn(self, op_id: str) -> None:
        task = asyncio.create_task(self._run_bg(op_id))
        self._tasks[op_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(op_id, None))

    async def _run_bg(self, op_id: str) -> None:
        try:
            await self.run(op_id)
        except Exception:
            logger.exception("Background bulk operation error", extra={"operation_id": op_id})

    async def run(self, op_id: str) -> BulkOperation:
        """Claim and execute a queued operation to completion."""
        with bind_job("bulk", op_id):
            if not await self.store.claim(op_id):
                logger.info("Bulk operation already claimed", extra={"operation_id": op_id})
                return await self.store.load(op_id)

            op = await self.store.load(op_id)
            await self._emit("progress", op)

            try:
                client = self.sites.client_for(op.site_id)
            except MissingCredentialsError as e:
                op.errors = [ItemError(target_id=None, error=str(e))]
                logger.warning("Bulk operation precondition failed: %s", e)
                return await self._finish(op, BulkStatus.FAILED)

            await self._execute(op, client)
            return await self._finish(op, _final_status(op))

    async def _execute(self, op: BulkOperation, client: RemoteActionClient) -> None:
        queue: asyncio.Queue[str] = asyncio.Queue()
        for target in op.target_ids:
            queue.put_nowait(target)
        # Serialises the counter update + persist so readers see monotonic progress
        progress_lock = asyncio.Lock()

        async def worker() -> None:
            while True:
                try:
                    target = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return

                error = None
                try:
                    async with self._gate:
                        await self._apply(client, op, target)
                except RemoteActionError as e:
                    error = str(e)
                except Exception as e:
                    logger.exception("Unexpected error on target %s", target)
                    error = str(e) or type(e).__name__

                async with progress_lock:
                    self._record(op, target, error)
                    await self.store.save_progress(op)
                    await self._emit("progress", op)

                if self.item_delay:
                    await asyncio.sleep(self.item_delay)

        workers = min(self.concurrency, len(op.target_ids))
        await asyncio.gather(*(worker() for _ in range(workers)))

    async def _apply(self, client: RemoteActionClient, op: BulkOperation, target: str) -> None:
        if op.action == BulkAction.PUBLISH:
            await client.publish_existing(target)
        elif op.action == BulkAction.UNPUBLISH:
            await client.unpublish(target)
        elif op.action == BulkAction.DELETE:
            await client.delete(target)
        elif op.action == BulkAction.UPDATE_METADATA:
            await client.update_metadata(target, op.fields or {})

    def _record(self, op: BulkOperation, target: str, error: str | None) -> None:
        op.processed += 1
        op.processed_ids.append(target)
        if error is None:
            op.succeeded += 1
            return
        op.failed += 1
        if len(op.errors) < self.max_errors:
            op.errors.append(ItemError(target_id=target, error=error))
        else:
            op.errors_truncated = True

    async def _finish(self, op: BulkOperation, status: BulkStatus) -> BulkOperation:
        op.finished_at = await self.store.finish(op, status)
        op.status = status
        await self._emit("finished", op)
        log = logger.info if status == BulkStatus.COMPLETED else logger.warning
        log(
            "Bulk operation finished",
            extra={
                "operation_id": op.id,
                "status": status.value,
                "succeeded": op.succeeded,
                "failed": op.failed,
            },
        )
        return op

    async def _emit(self, kind: str, op: BulkOperation) -> None:
        if self.event_bus and self.event_bus.has_subscribers(op.id):
            await self.event_bus.publish(op.id, _make_event(kind, op))


def _final_status(op: BulkOperation) -> BulkStatus:
    return BulkStatus.COMPLETED if op.failed == 0 else BulkStatus.COMPLETED_WITH_ERRORS


def _make_event(kind: str, op: BulkOperation) -> dict:
    """Serialise an operation's progress into an SSE-friendly dict."""
    return {
        "type": kind,
        "operation_id": op.id,
        "status": op.status.value,
        "total": op.total,
        "processed": op.processed,
        "succeeded": op.succeeded,
        "failed": op.failed,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
