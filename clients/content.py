"""RSS-driven article generator: fetch a feed, rewrite each item with Claude."""

from __future__ import annotations

import json
import logging
import re
from typing import Iterable

import anthropic
import feedparser
import httpx

from clients.base import Article, ContentGenerator
from core.errors import GenerationError

logger = logging.getLogger(__name__)

MODEL = "claude-sonnet-4-6"

SYSTEM_PROMPT = (
    "You are a staff writer for a WordPress blog. Rewrite the source item you "
    "are given into an original article. Reply with a single JSON object with "
    "the keys \"title\", \"excerpt\" and \"content\" (HTML). No other text."
)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class RssArticleGenerator(ContentGenerator):
    def __init__(
        self,
        model: str = MODEL,
        client: anthropic.AsyncAnthropic | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model = model
        self._client = client
        self._transport = transport

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        # Created on first use so the service starts without an API key
        if self._client is None:
            self._client = anthropic.AsyncAnthropic()
        return self._client

    async def generate(
        self,
        source_ref: str | None,
        max_items: int,
        exclude: Iterable[str] = (),
    ) -> list[Article]:
        if not source_ref:
            raise GenerationError("Schedule has no content source")

        entries = await self.fetch_entries(source_ref)
        skip = set(exclude)
        fresh = [e for e in entries if e.get("link") and e["link"] not in skip][:max_items]
        logger.info(
            "Feed fetched",
            extra={"source": source_ref, "entries": len(entries), "fresh": len(fresh)},
        )

        articles: list[Article] = []
        for entry in fresh:
            try:
                articles.append(await self._write(entry))
            except (anthropic.APIError, ValueError, KeyError) as e:
                raise GenerationError(
                    f"Writing '{entry.get('title', entry['link'])}' failed: {e}", articles,
                ) from e
        return articles

    async def fetch_entries(self, feed_url: str) -> list[dict]:
        try:
            async with httpx.AsyncClient(
                timeout=15, follow_redirects=True, transport=self._transport,
            ) as client:
                response = await client.get(
                    feed_url,
                    headers={"Accept": "application/rss+xml, application/atom+xml, text/xml"},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise GenerationError(f"Failed to fetch feed {feed_url}: {e}") from e

        parsed = feedparser.parse(response.content)
        if parsed.bozo and not parsed.entries:
            raise GenerationError(f"Failed to parse feed {feed_url}: {parsed.bozo_exception}")
        return [
            {
                "title": e.get("title", ""),
                "link": e.get("link"),
                "summary": e.get("summary", ""),
            }
            for e in parsed.entries
        ]

    async def _write(self, entry: dict) -> Article:
        prompt = (
            f"Title: {entry['title']}\n"
            f"Source: {entry['link']}\n\n"
            f"{entry['summary']}"
        )
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=4096,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        text = "".join(b.text for b in response.content if b.type == "text")
        data = json.loads(_FENCE.sub("", text.strip()))
        if response.usage:
            logger.debug(
                "LLM tokens",
                extra={
                    "input_tokens": response.usage.input_tokens,
                    "output_tokens": response.usage.output_tokens,
                    "model": self.model,
                },
            )
        return Article(
            title=data["title"],
            content=data["content"],
            excerpt=data.get("excerpt"),
            source_url=entry["link"],
        )
