from __future__ import annotations

import asyncio
import datetime as dt
import json

import httpx
import pytest

from services.market.app.errors import InvalidInput, NetworkFailure
from services.market.app.feeds import (
    fetch_feed,
    group_by_recency,
    merge_articles,
    paginate,
    parse_feed,
    parse_rfc822,
    search_articles,
)
from services.market.app.models import Article
from services.market.app.sources import REGISTRY, load_feeds

UTC = dt.timezone.utc


def _article(title: str, url: str, hour: int, day: int = 3) -> Article:
    return Article(title=title, canonical_url=url, published_at=dt.datetime(2025, 6, day, hour, tzinfo=UTC), source_name="S")


def test_parse_rss_items(rss_doc):
    raw = rss_doc([
        ("First", "https://news.example/1?utm_source=rss", "Tue, 03 Jun 2025 14:05:00 +0000"),
        ("Second", "https://news.example/2", "Tue, 03 Jun 2025 16:05:00 +0200"),
    ])
    items = parse_feed(raw, "Example")

    assert [a.title for a in items] == ["First", "Second"]
    assert items[0].canonical_url == "https://news.example/1"
    assert items[0].source_name == "Example"
    assert items[0].description == "First body"
    assert items[1].published_at == dt.datetime(2025, 6, 3, 14, 5, tzinfo=UTC)


def test_malformed_items_are_skipped(rss_doc):
    raw = rss_doc([
        ("", "https://news.example/no-title", "Tue, 03 Jun 2025 14:05:00 +0000"),
        ("Relative", "/relative/path", "Tue, 03 Jun 2025 14:05:00 +0000"),
        ("Bad date", "https://news.example/bad-date", "yesterday-ish"),
        ("Good", "https://news.example/good", "Tue, 03 Jun 2025 14:05:00 +0000"),
    ])
    items = parse_feed(raw, "Example")
    assert [a.title for a in items] == ["Good"]


def test_unparseable_document_yields_nothing():
    assert parse_feed(b"<rss><channel><item>", "Broken") == []
    assert parse_feed(b"not xml at all", "Broken") == []


def test_image_fallback_order(rss_doc):
    media = 'xmlns:media="http://search.yahoo.com/mrss/"'
    raw = f"""<?xml version="1.0"?>
    <rss version="2.0" {media}><channel>
      <item>
        <title>enclosure</title><link>https://n.example/a</link>
        <pubDate>Tue, 03 Jun 2025 14:05:00 +0000</pubDate>
        <media:thumbnail url="https://img.example/thumb-a.jpg"/>
        <enclosure url="https://img.example/enc.jpg" type="image/jpeg"/>
      </item>
      <item>
        <title>media content</title><link>https://n.example/b</link>
        <pubDate>Tue, 03 Jun 2025 14:05:00 +0000</pubDate>
        <enclosure url="https://audio.example/pod.mp3" type="audio/mpeg"/>
        <media:content url="https://img.example/content.png" medium="image"/>
      </item>
      <item>
        <title>thumbnail</title><link>https://n.example/c</link>
        <pubDate>Tue, 03 Jun 2025 14:05:00 +0000</pubDate>
        <media:thumbnail url="https://img.example/thumb-c.jpg"/>
        <description><![CDATA[<img src="https://img.example/inline-c.jpg">]]></description>
      </item>
      <item>
        <title>inline</title><link>https://n.example/d</link>
        <pubDate>Tue, 03 Jun 2025 14:05:00 +0000</pubDate>
        <description><![CDATA[<p>text <img class="x" src='https://img.example/inline-d.jpg'/></p>]]></description>
      </item>
      <item>
        <title>none</title><link>https://n.example/e</link>
        <pubDate>Tue, 03 Jun 2025 14:05:00 +0000</pubDate>
        <description>plain text</description>
      </item>
    </channel></rss>""".encode()

    images = {a.title: a.image_url for a in parse_feed(raw, "Img")}
    assert images == {
        "enclosure": "https://img.example/enc.jpg",
        "media content": "https://img.example/content.png",
        "thumbnail": "https://img.example/thumb-c.jpg",
        "inline": "https://img.example/inline-d.jpg",
        "none": None,
    }


def test_parse_atom_feed():
    raw = b"""<?xml version="1.0" encoding="utf-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom">
      <entry>
        <title>Atom entry</title>
        <link rel="alternate" href="https://atom.example/post"/>
        <updated>2025-06-03T14:05:00Z</updated>
        <summary>Short summary</summary>
      </entry>
    </feed>"""
    (item,) = parse_feed(raw, "Atom")
    assert item.canonical_url == "https://atom.example/post"
    assert item.published_at == dt.datetime(2025, 6, 3, 14, 5, tzinfo=UTC)
    assert item.description == "Short summary"


def test_parse_rfc822_rejects_garbage():
    with pytest.raises(InvalidInput):
        parse_rfc822("31/02/2025")


def test_merge_sorts_newest_first_and_dedupes():
    a = [_article("a-old", "https://x/1", 10), _article("a-new", "https://x/2", 12)]
    b = [_article("b-dup", "https://x/2", 11), _article("b", "https://x/3", 11)]
    merged = merge_articles([a, b])

    assert [m.canonical_url for m in merged] == ["https://x/2", "https://x/3", "https://x/1"]
    assert merged[0].title == "a-new"
    stamps = [m.published_at for m in merged]
    assert stamps == sorted(stamps, reverse=True)


def test_paginate_pages_and_has_more():
    articles = [_article(f"t{i}", f"https://x/{i}", i) for i in range(5)]
    first = paginate(articles, 1, 2)
    last = paginate(articles, 3, 2)
    beyond = paginate(articles, 4, 2)

    assert [a.title for a in first.items] == ["t0", "t1"]
    assert first.has_more and first.total == 5
    assert [a.title for a in last.items] == ["t4"]
    assert not last.has_more
    assert beyond.items == [] and not beyond.has_more


@pytest.mark.parametrize("page,size", [(0, 10), (-1, 10), (1, 0)])
def test_paginate_rejects_bad_arguments(page, size):
    with pytest.raises(InvalidInput):
        paginate([], page, size)


def test_search_and_recency_groups():
    now = dt.datetime(2025, 6, 3, 20, tzinfo=UTC)
    articles = [
        _article("Bitcoin rallies", "https://x/1", 9, day=3),
        _article("Ether slips", "https://x/2", 9, day=2),
        _article("Old bitcoin news", "https://x/3", 9, day=1),
    ]
    found = search_articles(articles, "  BITCOIN ")
    assert [a.canonical_url for a in found] == ["https://x/1", "https://x/3"]

    groups = group_by_recency(articles, now=now)
    assert list(groups) == ["Today", "Yesterday", "Earlier"]
    assert groups["Yesterday"][0].title == "Ether slips"


def test_fetch_feed_maps_http_errors(mock_client, rss_doc):
    doc = rss_doc([("Up", "https://x/up", "Tue, 03 Jun 2025 14:05:00 +0000")])

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.example":
            return httpx.Response(503)
        return httpx.Response(200, content=doc)

    async def run():
        client = mock_client(handler)
        try:
            ok = await fetch_feed(client, "https://up.example/rss", "Up")
            with pytest.raises(NetworkFailure) as exc:
                await fetch_feed(client, "https://down.example/rss", "Down")
            return ok, exc.value
        finally:
            await client.aclose()

    ok, err = asyncio.run(run())
    assert [a.title for a in ok] == ["Up"]
    assert err.status_code == 503


def test_empty_feeds_path_uses_registry():
    feeds = load_feeds("")
    assert [f.source.name for f in feeds] == list(REGISTRY.keys())


def test_feeds_file_overrides_registry(tmp_path):
    path = tmp_path / "feeds.json"
    path.write_text(json.dumps([
        {"name": "Own", "url": "https://own.example/atom", "kind": "atom"},
        {"name": "", "url": "https://nameless.example/rss"},
    ]), encoding="utf-8")

    feeds = load_feeds(str(path))
    assert [(f.source.name, f.source.kind) for f in feeds] == [("Own", "atom")]
