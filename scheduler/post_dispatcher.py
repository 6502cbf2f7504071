"""Scheduled post dispatcher: a fixed-interval tick that publishes due posts.

Every post goes pending → publishing through a compare-and-set claim before
the remote call, so overlapping ticks (or a tick racing ``publish_now``)
publish it at most once.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.triggers.interval import IntervalTrigger

from clients.base import PostPayload
from core.errors import InvalidTransitionError, RemoteActionError
from core.logging_config import bind_job
from scheduler.cron import to_utc, validate_timezone
from scheduler.models import Page, PostContent, PostStatus, ScheduledPost, utc_now
from scheduler.registry import DISPATCHER_KEY

if TYPE_CHECKING:
    from clients.sites import SiteRegistry
    from scheduler.registry import TriggerRegistry
    from store.post_store import ScheduledPostStore

logger = logging.getLogger(__name__)


def publish_key(post_id: str) -> str:
    """Remote idempotency key: every attempt for one post reuses it."""
    return f"scheduled-post-{post_id}"


class ScheduledPostDispatcher:
    def __init__(
        self,
        store: ScheduledPostStore,
        sites: SiteRegistry,
        registry: TriggerRegistry,
        interval_seconds: float = 60.0,
        concurrency: int = 5,
        max_retries: int = 3,
        backoff_seconds: float = 60.0,
        stale_claim_seconds: float = 600.0,
        batch_size: int = 100,
    ):
        self.store = store
        self.sites = sites
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.stale_claim = timedelta(seconds=stale_claim_seconds)
        self.batch_size = batch_size

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Recover stale claims, then register the tick timer."""
        await self.recover_stale_claims()
        self.registry.register(
            DISPATCHER_KEY,
            self._tick_job,
            IntervalTrigger(seconds=self.interval_seconds),
        )
        logger.info("Dispatcher started", extra={"interval_s": self.interval_seconds})

    def stop(self) -> None:
        self.registry.unregister(DISPATCHER_KEY)
        logger.info("Dispatcher stopped")

    # ── Record management ────────────────────────────────────────────────────

    async def schedule(
        self,
        owner: str,
        site_id: str,
        payload: PostContent,
        scheduled_for: datetime,
        timezone: str = "UTC",
        max_retries: int | None = None,
    ) -> ScheduledPost:
        """Create a pending post. A naive *scheduled_for* is read in *timezone*."""
        validate_timezone(timezone)
        post = ScheduledPost(
            owner=owner,
            site_id=site_id,
            payload=payload,
            scheduled_for=to_utc(scheduled_for, timezone),
            timezone=timezone,
            max_retries=self.max_retries if max_retries is None else max_retries,
        )
        await self.store.create(post)
        logger.info(
            "Post scheduled",
            extra={"post_id": post.id, "scheduled_for": post.scheduled_for.isoformat()},
        )
        return post

    async def get(self, post_id: str, owner: str | None = None) -> ScheduledPost:
        return await self.store.load(post_id, owner)

    async def list(
        self,
        owner: str,
        site_id: str | None = None,
        status: PostStatus | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Page:
        return await self.store.list_page(owner, site_id, status, page, per_page)

    async def update(
        self,
        post_id: str,
        owner: str,
        payload: PostContent | None = None,
        scheduled_for: datetime | None = None,
        timezone: str | None = None,
    ) -> ScheduledPost:
        return await self._edit("update", post_id, owner, payload, scheduled_for, timezone)

    async def reschedule(
        self,
        post_id: str,
        owner: str,
        scheduled_for: datetime,
        timezone: str | None = None,
    ) -> ScheduledPost:
        return await self._edit("reschedule", post_id, owner, None, scheduled_for, timezone)

    async def cancel(self, post_id: str, owner: str) -> ScheduledPost:
        await self._require_pending(post_id, owner, "cancel")
        if not await self.store.cancel(post_id):
            await self._raise_transition(post_id, "cancel")
        logger.info("Post cancelled", extra={"post_id": post_id})
        return await self.store.load(post_id)

    async def delete(self, post_id: str, owner: str) -> None:
        """Delete in any status except publishing."""
        await self.store.load(post_id, owner)   # raises KeyError if missing
        if not await self.store.delete(post_id):
            await self._raise_transition(post_id, "delete")
        logger.info("Post deleted", extra={"post_id": post_id})

    async def publish_now(self, post_id: str, owner: str) -> ScheduledPost:
        """Claim and publish one pending post immediately, bypassing the tick."""
        await self._require_pending(post_id, owner, "publish")
        post = await self.store.claim(post_id, utc_now())
        if post is None:
            await self._raise_transition(post_id, "publish")
        await self._execute(post)
        return await self.store.load(post_id)

    # ── Tick ─────────────────────────────────────────────────────────────────

    async def tick(self) -> int:
        """One scan-and-execute pass. Returns how many posts this tick claimed."""
        await self.recover_stale_claims()
        due = await self.store.list_due(utc_now(), limit=self.batch_size)
        if not due:
            return 0

        pool = asyncio.Semaphore(self.concurrency)

        async def one(post_id: str) -> bool:
            async with pool:
                return await self.dispatch(post_id)

        results = await asyncio.gather(*(one(pid) for pid in due))
        claimed = sum(results)
        logger.info("Dispatcher tick", extra={"due": len(due), "claimed": claimed})
        return claimed

    async def dispatch(self, post_id: str) -> bool:
        """Claim-then-execute one post. False when another worker holds it."""
        post = await self.store.claim(post_id, utc_now())
        if post is None:
            return False
        await self._execute(post)
        return True

    async def recover_stale_claims(self) -> list[str]:
        recovered = await self.store.recover_stale_claims(self.stale_claim)
        if recovered:
            logger.warning("Recovered stale publishing claims", extra={"post_ids": recovered})
        return recovered

    async def _tick_job(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("Dispatcher tick failed")

    # ── Execution ────────────────────────────────────────────────────────────

    async def _execute(self, post: ScheduledPost) -> None:
        with bind_job("post", post.id):
            try:
                client = self.sites.client_for(post.site_id)
                result = await client.publish(
                    PostPayload(**post.payload.model_dump()), key=publish_key(post.id),
                )
            except RemoteActionError as e:
                await self._handle_failure(post, str(e), e.transient)
            except Exception as e:
                # Unclassified failures are retried like transient ones
                logger.exception("Unexpected publish error")
                await self._handle_failure(post, str(e) or type(e).__name__, True)
            else:
                await self.store.mark_published(post.id, result.remote_id, result.link)
                logger.info(
                    "Post published",
                    extra={"post_id": post.id, "remote_id": result.remote_id},
                )

    async def _handle_failure(self, post: ScheduledPost, error: str, transient: bool) -> None:
        if transient and post.retry_count < post.max_retries:
            delay = self.backoff_seconds * 2 ** post.retry_count
            run_at = utc_now() + timedelta(seconds=delay)
            await self.store.release_for_retry(post.id, post.retry_count + 1, run_at, error)
            logger.warning(
                "Publish failed, retry scheduled",
                extra={"post_id": post.id, "retry": post.retry_count + 1, "delay_s": delay, "error": error},
            )
        else:
            await self.store.mark_failed(post.id, error)
            logger.error(
                "Publish failed permanently",
                extra={"post_id": post.id, "transient": transient, "error": error},
            )

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _edit(
        self,
        operation: str,
        post_id: str,
        owner: str,
        payload: PostContent | None,
        scheduled_for: datetime | None,
        timezone: str | None,
    ) -> ScheduledPost:
        post = await self._require_pending(post_id, owner, operation)
        values: dict = {}
        if payload is not None:
            values["payload"] = payload.model_dump()
        if timezone is not None:
            validate_timezone(timezone)
            values["timezone"] = timezone
        if scheduled_for is not None:
            values["scheduled_for"] = to_utc(scheduled_for, timezone or post.timezone)
        if values and not await self.store.update_pending(post_id, **values):
            await self._raise_transition(post_id, operation)
        return await self.store.load(post_id)

    async def _require_pending(self, post_id: str, owner: str, operation: str) -> ScheduledPost:
        post = await self.store.load(post_id, owner)
        if post.status != PostStatus.PENDING:
            raise InvalidTransitionError(post_id, post.status.value, operation)
        return post

    async def _raise_transition(self, post_id: str, operation: str) -> None:
        # The CAS lost: report the status that beat us
        post = await self.store.load(post_id)
        raise InvalidTransitionError(post_id, post.status.value, operation)
