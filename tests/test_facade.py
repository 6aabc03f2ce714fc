from __future__ import annotations

import asyncio
import datetime as dt
from typing import List, Tuple

import httpx
import pytest

from services.market.app.config import Settings
from services.market.app.errors import DecodeFailure, NetworkFailure, NewsUnavailable
from services.market.app.facade import MarketAggregator
from services.market.app.models import Article, Quote, QuoteSource, Rect, Tile
from services.market.app.sources.base import FeedSource, RssFeed

CFG = Settings(
    default_symbol="BTC",
    quote_poll_seconds=3600,
    watchlist_poll_seconds=3600,
    news_refresh_seconds=3600,
    heatmap_refresh_seconds=3600,
    news_page_size=2,
    tile_width=80,
    tile_spacing=0,
    layout_debounce_seconds=0.02,
)

FEEDS = [
    RssFeed(FeedSource(name="Alpha", url="https://alpha.example/rss")),
    RssFeed(FeedSource(name="Beta", url="https://beta.example/feed")),
]

MARKET_ROWS = [
    {"symbol": "btc", "name": "Bitcoin", "current_price": 50000, "price_change_percentage_24h": 1.0,
     "total_volume": 1, "market_cap": 600},
    {"symbol": "eth", "name": "Ethereum", "current_price": 3000, "price_change_percentage_24h": -1.0,
     "total_volume": 1, "market_cap": 300},
    {"symbol": "sol", "name": "Solana", "current_price": 150, "price_change_percentage_24h": 4.0,
     "total_volume": 1, "market_cap": 60},
    {"symbol": "ada", "name": "Cardano", "current_price": 0.5, "price_change_percentage_24h": 2.0,
     "total_volume": 1, "market_cap": 40},
]


class StubResolver:
    async def resolve_price(self, symbol: str) -> Quote:
        sym = symbol.strip().upper()
        return Quote(sym, 100.0, QuoteSource.PRIMARY, dt.datetime.now(dt.timezone.utc), "stub")


class Upstream:
    """Fake feeds and CoinGecko; flip the flags to take hosts down."""

    def __init__(self, rss_doc):
        self.alpha_up = True
        self.beta_up = True
        self.markets = MARKET_ROWS
        self.alpha = rss_doc([
            ("Alpha one", "https://alpha.example/1", "Tue, 03 Jun 2025 10:00:00 +0000"),
            ("Alpha two", "https://alpha.example/2", "Tue, 03 Jun 2025 12:00:00 +0000"),
        ])
        self.beta = rss_doc([
            ("Beta one", "https://beta.example/1", "Tue, 03 Jun 2025 11:00:00 +0000"),
        ])

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "alpha.example":
            return httpx.Response(200, content=self.alpha) if self.alpha_up else httpx.Response(503)
        if host == "beta.example":
            return httpx.Response(200, content=self.beta) if self.beta_up else httpx.Response(503)
        if host == "api.coingecko.com":
            return httpx.Response(200, json=self.markets)
        return httpx.Response(404)


@pytest.fixture
def upstream(rss_doc) -> Upstream:
    return Upstream(rss_doc)


def _run(mock_client, upstream, favorites, bookmarks, scenario):
    async def main():
        client = mock_client(upstream)
        agg = MarketAggregator(
            client,
            resolver=StubResolver(),
            feeds=FEEDS,
            favorites=favorites,
            bookmarks=bookmarks,
            cfg=CFG,
        )
        try:
            return await scenario(agg)
        finally:
            await agg.stop()
            await client.aclose()

    return asyncio.run(main())


def test_refresh_news_merges_feeds(mock_client, upstream, favorites, bookmarks):
    async def scenario(agg):
        n = await agg.refresh_news()
        return n, agg.article_page(1), agg.article_page(2), agg.article_page(1, query="beta")

    n, first, second, found = _run(mock_client, upstream, favorites, bookmarks, scenario)
    assert n == 3
    assert [a.title for a in first.items] == ["Alpha two", "Beta one"]
    assert first.has_more and first.total == 3
    assert [a.title for a in second.items] == ["Alpha one"]
    assert not second.has_more
    assert [a.title for a in found.items] == ["Beta one"]


def test_one_failing_feed_only_drops_its_articles(mock_client, upstream, favorites, bookmarks):
    upstream.beta_up = False

    async def scenario(agg):
        n = await agg.refresh_news()
        return n, agg.news_status()

    n, status = _run(mock_client, upstream, favorites, bookmarks, scenario)
    assert n == 2
    assert status["error"] is None
    assert status["sources"]["Alpha"] == "ok: 2"
    assert status["sources"]["Beta"].startswith("error:")


def test_total_news_failure_keeps_previous_batch(mock_client, upstream, favorites, bookmarks):
    async def scenario(agg):
        await agg.refresh_news()
        upstream.alpha_up = upstream.beta_up = False
        with pytest.raises(NewsUnavailable):
            await agg.refresh_news()
        stale = agg.article_page(1, page_size=10), agg.news_status()

        upstream.alpha_up = upstream.beta_up = True
        await agg.refresh_news()
        return stale, agg.news_status()

    (page, failed_status), recovered = _run(mock_client, upstream, favorites, bookmarks, scenario)
    assert page.total == 3
    assert failed_status["retry"] is True
    assert "every news feed failed" in failed_status["error"]
    assert recovered["error"] is None and recovered["retry"] is False


class OneSlowFailureFeed:
    """First fetch fails late; every later fetch succeeds at once."""

    def __init__(self):
        self.source = FeedSource(name="Gamma", url="https://gamma.example/rss")
        self.calls = 0

    async def fetch_articles(self, client) -> List[Article]:
        self.calls += 1
        if self.calls == 1:
            await asyncio.sleep(0.05)
            raise NetworkFailure("gamma timed out")
        published = dt.datetime(2025, 6, 3, 12, tzinfo=dt.timezone.utc)
        return [Article("Gamma fresh", "https://gamma.example/1", published, "Gamma")]


def test_older_news_failure_does_not_mask_newer_success(mock_client, upstream, favorites, bookmarks):
    async def main():
        client = mock_client(upstream)
        agg = MarketAggregator(
            client,
            resolver=StubResolver(),
            feeds=[OneSlowFailureFeed()],
            favorites=favorites,
            bookmarks=bookmarks,
            cfg=CFG,
        )
        try:
            older = asyncio.create_task(agg.refresh_news())
            await asyncio.sleep(0.01)
            newer = await agg.refresh_news()
            stale = await older
            return newer, stale, agg.news_status(), agg.articles()
        finally:
            await agg.stop()
            await client.aclose()

    newer, stale, status, articles = asyncio.run(main())
    assert newer == 1 and stale == 1
    assert status["error"] is None
    assert status["retry"] is False
    assert status["sources"] == {"Gamma": "ok: 1"}
    assert [a.title for a in articles] == ["Gamma fresh"]


def test_bookmarks_resolve_against_current_batch(mock_client, upstream, favorites, bookmarks):
    async def scenario(agg):
        await agg.refresh_news()
        await agg.toggle_bookmark("https://alpha.example/2?utm_medium=rss")
        await agg.toggle_bookmark("https://gone.example/old")
        return agg.bookmarked()

    out = _run(mock_client, upstream, favorites, bookmarks, scenario)
    assert out["urls"] == ["https://alpha.example/2", "https://gone.example/old"]
    assert [a.title for a in out["articles"]] == ["Alpha two"]
    assert out["missing"] == ["https://gone.example/old"]


def test_tiles_layout_collapses_to_width(mock_client, upstream, favorites, bookmarks):
    async def scenario(agg):
        await agg.refresh_tiles()
        return agg.tile_layout(Rect(0, 0, 160, 100))

    placed = _run(mock_client, upstream, favorites, bookmarks, scenario)
    labels = [p.tile.label for p in placed]
    assert labels == ["BTC", "ETH", "Others"]
    others = placed[-1]
    assert others.tile.weight == 100
    assert others.rect.area == pytest.approx(160 * 100 * 100 / 1000)


def test_failed_tile_refresh_keeps_previous(mock_client, upstream, favorites, bookmarks):
    async def scenario(agg):
        await agg.refresh_tiles()
        upstream.markets = {"status": {"error_code": 429}}
        with pytest.raises(DecodeFailure):
            await agg.refresh_tiles()
        return agg.tiles()

    tiles = _run(mock_client, upstream, favorites, bookmarks, scenario)
    assert [t.label for t in tiles] == ["BTC", "ETH", "SOL", "ADA"]


def test_layout_requests_are_debounced(mock_client, upstream, favorites, bookmarks):
    events: List[Tuple[str, object]] = []

    async def scenario(agg):
        agg.subscribe(lambda event, payload: events.append((event, payload)))
        agg.set_tiles([Tile("A", 3), Tile("B", 1)])
        for w in (100, 200, 300):
            agg.request_layout(Rect(0, 0, w, 100))
        await asyncio.sleep(0.1)
        first = agg.current_layout()

        agg.set_tiles([Tile("A", 1)])
        await asyncio.sleep(0.1)
        return first, agg.current_layout()

    first, second = _run(mock_client, upstream, favorites, bookmarks, scenario)
    assert [e for e, _ in events] == ["tiles", "layout", "tiles", "layout"]
    assert first["container"] == Rect(0, 0, 300, 100)
    assert [p.tile.label for p in first["tiles"]] == ["A", "B"]
    assert [p.tile.label for p in second["tiles"]] == ["A"]


def test_request_layout_without_loop_is_immediate(favorites, bookmarks):
    agg = MarketAggregator(httpx.AsyncClient(), resolver=StubResolver(), feeds=[], favorites=favorites,
                           bookmarks=bookmarks, cfg=CFG)
    agg.set_tiles([Tile("A", 1), Tile("B", 1)])
    agg.request_layout(Rect(0, 0, 100, 50))
    assert len(agg.current_layout()["tiles"]) == 2


def test_start_tracks_default_and_watches_favorites(mock_client, upstream, favorites, bookmarks):
    favorites.replace(["sol"])
    quotes: List[str] = []

    async def scenario(agg):
        agg.subscribe(lambda event, payload: quotes.append(payload.symbol) if event == "quote" else None)
        await agg.start()
        await asyncio.sleep(0.05)
        started = (agg.scheduler.tracked, agg.scheduler.watched, agg.current_quote("btc"), len(agg.articles()))

        await agg.toggle_favorite("eth")
        watched = agg.scheduler.watched
        await agg.stop()
        return started, watched, agg.scheduler.active_symbols()

    (tracked, watched_at_start, quote, n_articles), watched, active = _run(
        mock_client, upstream, favorites, bookmarks, scenario
    )
    assert tracked == "BTC"
    assert watched_at_start == ["SOL"]
    assert quote is not None and quote.price == 100.0
    assert n_articles == 3
    assert watched == ["ETH", "SOL"]
    assert active == []
    assert set(quotes) >= {"BTC", "SOL"}


def test_markets_favorites_segment(mock_client, upstream, favorites, bookmarks):
    favorites.replace(["ada", "btc"])

    async def scenario(agg):
        await agg.refresh_tiles()
        return agg.markets(segment="favorites", sort="price", direction="asc")

    coins = _run(mock_client, upstream, favorites, bookmarks, scenario)
    assert [c.symbol for c in coins] == ["ADA", "BTC"]
