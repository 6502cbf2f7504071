"""Shared fixtures: per-test database, stub remote site and stub generator."""

import asyncio
from typing import Any, Iterable

import pytest

from clients.base import Article, ContentGenerator, PostPayload, PublishResult, RemoteActionClient
from clients.sites import Site, SiteRegistry
from core.errors import GenerationError, RemoteActionError
from scheduler.registry import TriggerRegistry
from store.database import Database


class StubRemoteClient(RemoteActionClient):
    """Records every call; targets in ``fail_ids`` raise, ``delay`` simulates latency."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail_ids: set[str] = set()
        self.transient = False
        self.delay = 0.0
        self.publish_errors: list[Exception] = []
        self.payloads: list[PostPayload] = []
        self.created: dict[str, PublishResult] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def _touch(self, action: str, target: str) -> None:
        self.calls.append((action, target))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if target in self.fail_ids:
                raise RemoteActionError(f"{action} {target} failed", transient=self.transient)
        finally:
            self.in_flight -= 1

    async def publish(self, payload: PostPayload, key: str | None = None) -> PublishResult:
        await self._touch("publish", payload.title)
        self.payloads.append(payload)
        if key in self.created:
            return self.created[key]
        if self.publish_errors:
            raise self.publish_errors.pop(0)
        n = len(self.created) + 1
        result = PublishResult(remote_id=str(1000 + n), link=f"https://blog.example.com/?p={1000 + n}")
        self.created[key or f"anonymous-{n}"] = result
        return result

    async def publish_existing(self, remote_id: str) -> None:
        await self._touch("publish_existing", remote_id)

    async def unpublish(self, remote_id: str) -> None:
        await self._touch("unpublish", remote_id)

    async def delete(self, remote_id: str) -> None:
        await self._touch("delete", remote_id)

    async def update_metadata(self, remote_id: str, fields: dict[str, Any]) -> None:
        await self._touch("update_metadata", remote_id)


class StubGenerator(ContentGenerator):
    """Hands out fresh articles per call; ``fail_after`` simulates a mid-run failure."""

    def __init__(self, per_run: int = 2) -> None:
        self.per_run = per_run
        self.fail_after: int | None = None
        self.calls: list[dict] = []
        self._counter = 0

    async def generate(
        self,
        source_ref: str | None,
        max_items: int,
        exclude: Iterable[str] = (),
    ) -> list[Article]:
        self.calls.append({"source_ref": source_ref, "max_items": max_items, "exclude": set(exclude)})
        articles = []
        for _ in range(min(self.per_run, max_items)):
            if self.fail_after is not None and len(articles) >= self.fail_after:
                raise GenerationError("generator exploded", articles)
            self._counter += 1
            articles.append(Article(
                title=f"Article {self._counter}",
                content=f"<p>Body {self._counter}</p>",
                source_url=f"https://news.example.com/{self._counter}",
            ))
        return articles


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path}/engine.db")
    await database.init()
    yield database
    await database.dispose()


@pytest.fixture
def remote():
    return StubRemoteClient()


@pytest.fixture
def generator():
    return StubGenerator()


@pytest.fixture
def sites(remote):
    registry = SiteRegistry()
    registry.register(Site(id="blog", owner="alice", url="https://blog.example.com"), client=remote)
    # Known site without credentials
    registry.register(Site(id="bare", owner="alice", url="https://bare.example.com"))
    return registry


@pytest.fixture
async def registry():
    reg = TriggerRegistry()
    reg.start()
    yield reg
    reg.shutdown()


@pytest.fixture
async def api(db, sites, registry, generator, monkeypatch):
    """Point the API singletons at per-test stores and stubs."""
    import api.server as server_module
    from core.config import Settings
    from core.event_bus import EventBus
    from scheduler.automation_manager import AutomationScheduleManager
    from scheduler.bulk_runner import BulkOperationRunner
    from scheduler.post_dispatcher import ScheduledPostDispatcher
    from store.bulk_store import BulkOperationStore
    from store.post_store import ScheduledPostStore
    from store.schedule_store import AutomationStore

    bus = EventBus()
    bulk_runner = BulkOperationRunner(BulkOperationStore(db.engine), sites, event_bus=bus)
    dispatcher = ScheduledPostDispatcher(ScheduledPostStore(db.engine), sites, registry)
    automation = AutomationScheduleManager(AutomationStore(db.engine), sites, registry, generator)

    for name, value in {
        "_settings": Settings(),
        "_db": db,
        "_sites": sites,
        "_registry": registry,
        "_event_bus": bus,
        "_bulk_runner": bulk_runner,
        "_dispatcher": dispatcher,
        "_automation": automation,
    }.items():
        monkeypatch.setattr(server_module, name, value)

    yield server_module
    await bulk_runner.shutdown()
    await automation.drain()


@pytest.fixture
async def client(api):
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=api.app),
        base_url="http://test",
        headers={"X-User-Id": "alice"},
    ) as ac:
        yield ac
