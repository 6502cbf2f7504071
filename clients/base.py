"""Collaborator boundaries: the remote action client and the content generator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable

from pydantic import BaseModel

from scheduler.models import PublishStatus


class PostPayload(BaseModel):
    title: str
    content: str
    excerpt: str | None = None
    status: PublishStatus = PublishStatus.PUBLISH
    categories: list[int] = []
    tags: list[int] = []
    featured_media: int | None = None


class PublishResult(BaseModel):
    remote_id: str
    link: str | None = None


class Article(BaseModel):
    title: str
    content: str
    excerpt: str | None = None
    source_url: str | None = None


class RemoteActionClient(ABC):
    """Side-effecting calls against one remote site.

    Every call must be safe to repeat for the same logical target: publishing
    an already-published post or deleting a deleted one is a natural success.
    Failures raise ``core.errors.RemoteActionError``.
    """

    @abstractmethod
    async def publish(self, payload: PostPayload, key: str | None = None) -> PublishResult:
        """Create a post. With *key*, a repeat call returns the post the first one made."""

    @abstractmethod
    async def publish_existing(self, remote_id: str) -> None: ...

    @abstractmethod
    async def unpublish(self, remote_id: str) -> None: ...

    @abstractmethod
    async def delete(self, remote_id: str) -> None: ...

    @abstractmethod
    async def update_metadata(self, remote_id: str, fields: dict[str, Any]) -> None: ...


class ContentGenerator(ABC):
    @abstractmethod
    async def generate(
        self,
        source_ref: str | None,
        max_items: int,
        exclude: Iterable[str] = (),
    ) -> list[Article]:
        """Produce at most *max_items* articles, skipping sources in *exclude*.

        Raises ``core.errors.GenerationError`` carrying the articles produced
        before the failure.
        """
