"""TriggerRegistry: the in-memory map of live timers.

Nothing here is persisted. Each manager rebuilds its entries from the record
store when it starts.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger

logger = logging.getLogger(__name__)


def automation_key(schedule_id: str) -> str:
    return f"automation:{schedule_id}"


DISPATCHER_KEY = "scheduled-posts:dispatcher"


class TriggerRegistry:
    """Thin wrapper over APScheduler keyed by schedule / dispatcher identity."""

    def __init__(self) -> None:
        self._aps = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,          # a backlog of missed fires runs once
                "max_instances": 1,
                "misfire_grace_time": None,
            },
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the underlying scheduler. Must run inside the event loop."""
        if not self._aps.running:
            self._aps.start()
            logger.info("TriggerRegistry started")

    def shutdown(self) -> None:
        if self._aps.running:
            self._aps.shutdown(wait=False)
        logger.info("TriggerRegistry stopped")

    @property
    def running(self) -> bool:
        return self._aps.running

    # ── Registration ─────────────────────────────────────────────────────────

    def register(
        self,
        key: str,
        func: Callable[..., Any],
        trigger: BaseTrigger,
        kwargs: dict | None = None,
    ) -> None:
        """Register (or replace) the timer stored under *key*."""
        self._aps.add_job(
            func,
            trigger=trigger,
            id=key,
            kwargs=kwargs or {},
            replace_existing=True,
        )
        logger.debug("Timer registered", extra={"key": key})

    def unregister(self, key: str) -> bool:
        """Cancel the timer under *key*. Returns False if none was registered."""
        try:
            self._aps.remove_job(key)
        except JobLookupError:
            return False
        logger.debug("Timer unregistered", extra={"key": key})
        return True

    def is_registered(self, key: str) -> bool:
        return self._aps.get_job(key) is not None

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(job.id for job in self._aps.get_jobs() if job.id.startswith(prefix))

    def next_run_time(self, key: str) -> datetime | None:
        job = self._aps.get_job(key)
        # Jobs added before start() have no next_run_time yet
        return getattr(job, "next_run_time", None) if job else None
