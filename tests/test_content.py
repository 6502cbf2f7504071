"""Tests for the RSS article generator with a mocked feed and LLM client."""

import json
from types import SimpleNamespace

import httpx
import pytest

from clients.content import RssArticleGenerator
from core.errors import GenerationError

FEED = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>News</title>
<item><title>First story</title><link>https://news.example.com/1</link><description>One</description></item>
<item><title>Second story</title><link>https://news.example.com/2</link><description>Two</description></item>
<item><title>Third story</title><link>https://news.example.com/3</link><description>Three</description></item>
</channel></rss>"""


class FakeMessages:
    def __init__(self, replies: list[str]):
        self.replies = list(replies)
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        text = self.replies.pop(0)
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=text)],
            usage=SimpleNamespace(input_tokens=10, output_tokens=20),
        )


def reply(title: str) -> str:
    return json.dumps({"title": title, "excerpt": "short", "content": f"<p>{title}</p>"})


def make_generator(replies: list[str], feed: str = FEED, status: int = 200):
    messages = FakeMessages(replies)
    transport = httpx.MockTransport(lambda r: httpx.Response(status, text=feed))
    gen = RssArticleGenerator(client=SimpleNamespace(messages=messages), transport=transport)
    return gen, messages


async def test_generates_one_article_per_entry():
    gen, messages = make_generator([reply("A"), reply("B"), reply("C")])

    articles = await gen.generate("https://news.example.com/feed", max_items=2)

    assert [a.title for a in articles] == ["A", "B"]
    assert articles[0].source_url == "https://news.example.com/1"
    assert articles[0].excerpt == "short"
    assert len(messages.calls) == 2
    assert "First story" in messages.calls[0]["messages"][0]["content"]


async def test_skips_excluded_sources():
    gen, _ = make_generator([reply("C")])
    articles = await gen.generate(
        "https://news.example.com/feed", max_items=5,
        exclude={"https://news.example.com/1", "https://news.example.com/2"},
    )
    assert [a.source_url for a in articles] == ["https://news.example.com/3"]


async def test_strips_code_fences():
    gen, _ = make_generator(["```json\n" + reply("Fenced") + "\n```"])
    articles = await gen.generate("https://news.example.com/feed", max_items=1)
    assert articles[0].title == "Fenced"


async def test_bad_reply_keeps_earlier_articles():
    gen, _ = make_generator([reply("A"), "not json"])
    with pytest.raises(GenerationError) as exc:
        await gen.generate("https://news.example.com/feed", max_items=3)
    assert [a.title for a in exc.value.articles] == ["A"]


async def test_feed_http_error():
    gen, _ = make_generator([], status=500)
    with pytest.raises(GenerationError, match="Failed to fetch feed"):
        await gen.generate("https://news.example.com/feed", max_items=1)


async def test_requires_source():
    gen, _ = make_generator([])
    with pytest.raises(GenerationError):
        await gen.generate(None, max_items=1)
