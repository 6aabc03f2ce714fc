from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
import redis

from .config import Settings, settings as default_settings
from .errors import NewsUnavailable
from .favorites import BookmarksStore, FavoritesStore
from .feeds import group_by_recency, merge_articles, paginate, search_articles
from .http_client import make_client
from .klines import fetch_chart
from .markets import fetch_markets, filter_and_sort, to_tiles
from .models import Article, ArticlePage, KlinePoint, MarketCoin, Quote, Rect, Tile, TileRect
from .polling import GenerationGate, PeriodicJob, PollingScheduler
from .providers import CascadeResolver
from .redis_client import get_redis
from .sources import load_feeds
from .sources.base import RssFeed
from .treemap import adaptive_tile_cap, collapse_others, layout_tiles

logger = logging.getLogger(__name__)

Listener = Callable[[str, Any], None]


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class MarketAggregator:
    """Single entry point for quotes, news pages and heat-map layouts.

    Owns the latest state and hands out read-only snapshots. Consumers that
    want push updates register a listener with `subscribe()`; events are
    `quote`, `news`, `tiles` and `layout`.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        resolver: Optional[CascadeResolver] = None,
        feeds: Optional[List[RssFeed]] = None,
        favorites: Optional[FavoritesStore] = None,
        bookmarks: Optional[BookmarksStore] = None,
        cfg: Optional[Settings] = None,
    ):
        self.cfg = cfg or default_settings
        self._own_client = client is None
        self.client = client or make_client()
        self.resolver = resolver or CascadeResolver(self.client)
        self.feeds = feeds if feeds is not None else load_feeds(self.cfg.feeds_path)
        self._favorites = favorites
        self._bookmarks = bookmarks
        self.scheduler = PollingScheduler(
            self.resolver.resolve_price,
            interval=self.cfg.quote_poll_seconds,
            watch_interval=self.cfg.watchlist_poll_seconds,
        )
        self.scheduler.subscribe(lambda q: self._notify("quote", q))

        self._articles: List[Article] = []
        self._news_gate = GenerationGate()
        self._news_fetched_at: Optional[dt.datetime] = None
        self._news_error: Optional[str] = None
        self._news_sources: Dict[str, str] = {}

        self._coins: List[MarketCoin] = []
        self._tiles: List[Tile] = []
        self._tiles_gate = GenerationGate()
        self._tiles_fetched_at: Optional[dt.datetime] = None

        self._container: Optional[Rect] = None
        self._layout: List[TileRect] = []
        self._layout_task: Optional[asyncio.Task] = None

        self._listeners: List[Listener] = []
        self._jobs: List[PeriodicJob] = []
        self._started = False

    # -- collaborators -------------------------------------------------

    @property
    def favorites(self) -> FavoritesStore:
        if self._favorites is None:
            self._favorites = FavoritesStore(get_redis(self.cfg.redis_url), self.cfg.favorites_key)
        return self._favorites

    @property
    def bookmarks(self) -> BookmarksStore:
        if self._bookmarks is None:
            self._bookmarks = BookmarksStore(get_redis(self.cfg.redis_url), self.cfg.bookmarks_key)
        return self._bookmarks

    # -- notifications -------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _notify(self, event: str, payload: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("listener failed on %s", event)

    # -- lifecycle -----------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        news = PeriodicJob("news", self.cfg.news_refresh_seconds, self.refresh_news, lambda n: None)
        tiles = PeriodicJob("heatmap", self.cfg.heatmap_refresh_seconds, self.refresh_tiles, lambda n: None)
        self._jobs = [news, tiles]
        for job in self._jobs:
            job.start()
        await self.watch_favorites()
        if self.cfg.default_symbol:
            await self.scheduler.track(self.cfg.default_symbol)
        logger.info("aggregator started: feeds=%d default_symbol=%s", len(self.feeds), self.cfg.default_symbol)

    async def stop(self) -> None:
        jobs, self._jobs = self._jobs, []
        for job in jobs:
            await job.stop()
        await self.scheduler.stop()
        if self._layout_task is not None:
            self._layout_task.cancel()
            await asyncio.gather(self._layout_task, return_exceptions=True)
            self._layout_task = None
        if self._own_client:
            await self.client.aclose()
        self._started = False
        logger.info("aggregator stopped")

    # -- quotes --------------------------------------------------------

    def current_quote(self, symbol: str) -> Optional[Quote]:
        return self.scheduler.current(symbol)

    def quotes(self) -> Dict[str, Quote]:
        return self.scheduler.snapshot()

    async def track(self, symbol: str) -> None:
        await self.scheduler.track(symbol)

    async def untrack(self) -> None:
        await self.scheduler.untrack()

    async def resolve_once(self, symbol: str) -> Quote:
        """Resolve outside the schedule; raises AllProvidersFailed.

        Goes through the symbol's generation sequence, so a slow answer never
        replaces a newer polled quote.
        """
        return await self.scheduler.resolve_now(symbol)

    async def watch_favorites(self) -> List[str]:
        try:
            symbols = await asyncio.to_thread(self.favorites.list)
        except redis.RedisError as e:
            logger.warning("favorites unavailable, watchlist not polled: %s", e)
            return []
        await self.scheduler.watch(symbols)
        return symbols

    async def toggle_favorite(self, symbol: str) -> bool:
        present = await asyncio.to_thread(self.favorites.toggle, symbol)
        if self._started:
            await self.watch_favorites()
        return present

    async def move_favorite(self, symbol: str, index: int) -> List[str]:
        """Reorder the watchlist; raises KeyError for a symbol that is not a favorite."""
        return await asyncio.to_thread(self.favorites.move, symbol, index)

    async def set_favorites(self, symbols: List[str]) -> List[str]:
        saved = await asyncio.to_thread(self.favorites.replace, symbols)
        if self._started:
            await self.watch_favorites()
        return saved

    def watchlist(self) -> List[Dict[str, Any]]:
        out = []
        for sym in self.favorites.list():
            out.append({"symbol": sym, "quote": self.current_quote(sym), "error": self.scheduler.last_error(sym)})
        return out

    # -- news ----------------------------------------------------------

    async def refresh_news(self) -> int:
        """Fetch every feed concurrently and replace the batch.

        One failing feed only drops its own articles. If every feed fails the
        previous batch stays in place and NewsUnavailable is raised so the
        caller can offer a retry.
        """
        generation = self._news_gate.begin()
        results = await asyncio.gather(
            *(f.fetch_articles(self.client) for f in self.feeds),
            return_exceptions=True,
        )
        batches: List[List[Article]] = []
        errors: Dict[str, Exception] = {}
        sources: Dict[str, str] = {}
        for feed, res in zip(self.feeds, results):
            name = feed.source.name
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                logger.warning("feed %s failed: %s", name, res)
                errors[name] = res
                sources[name] = f"error: {res}"
            else:
                batches.append(res)
                sources[name] = f"ok: {len(res)}"

        if not batches:
            err = NewsUnavailable(errors)
            if not self._news_gate.admit(generation):
                logger.debug("news refresh generation %d failed after a newer outcome: %s", generation, err)
                return len(self._articles)
            self._news_error = str(err)
            self._news_sources = sources
            raise err

        merged = merge_articles(batches)
        if not self._news_gate.admit(generation):
            logger.debug("news refresh generation %d superseded", generation)
            return len(self._articles)

        self._articles = merged
        self._news_fetched_at = _utc_now()
        self._news_error = None
        self._news_sources = sources
        logger.info("news refreshed: %d articles from %d/%d feeds", len(merged), len(batches), len(self.feeds))
        self._notify("news", len(merged))
        return len(merged)

    def articles(self) -> List[Article]:
        return list(self._articles)

    def article_page(self, page: int, page_size: Optional[int] = None, query: Optional[str] = None) -> ArticlePage:
        return paginate(search_articles(self._articles, query), page, page_size or self.cfg.news_page_size)

    def article_sections(self, page: ArticlePage) -> Dict[str, List[Article]]:
        return group_by_recency(page.items)

    def news_status(self) -> Dict[str, Any]:
        return {
            "total": len(self._articles),
            "fetched_at": self._news_fetched_at,
            "error": self._news_error,
            "retry": self._news_error is not None,
            "sources": dict(self._news_sources),
        }

    async def toggle_bookmark(self, url: str) -> bool:
        return await asyncio.to_thread(self.bookmarks.toggle, url)

    def bookmarked(self) -> Dict[str, Any]:
        """Bookmarks outlive the batch they came from; unresolved ones are listed by URL only."""
        urls = self.bookmarks.list()
        by_url = {a.canonical_url: a for a in self._articles}
        return {
            "urls": urls,
            "articles": [by_url[u] for u in urls if u in by_url],
            "missing": [u for u in urls if u not in by_url],
        }

    # -- heat map ------------------------------------------------------

    async def refresh_tiles(self) -> int:
        generation = self._tiles_gate.begin()
        coins = await fetch_markets(self.client, self.cfg.markets_per_page)
        if not self._tiles_gate.admit(generation):
            return len(self._tiles)
        self._coins = coins
        self._tiles_fetched_at = _utc_now()
        self.set_tiles(to_tiles(coins))
        return len(coins)

    def tiles(self) -> List[Tile]:
        return list(self._tiles)

    @property
    def tiles_fetched_at(self) -> Optional[dt.datetime]:
        return self._tiles_fetched_at

    def set_tiles(self, tiles: List[Tile]) -> None:
        self._tiles = list(tiles)
        self._notify("tiles", len(self._tiles))
        if self._container is not None:
            self.request_layout(self._container)

    def tile_layout(self, container: Rect, max_tiles: Optional[int] = None, spacing: Optional[float] = None) -> List[TileRect]:
        cap = max_tiles or adaptive_tile_cap(container.width, self.cfg.tile_width)
        display = collapse_others(self._tiles, cap)
        return layout_tiles(display, container, self.cfg.tile_spacing if spacing is None else spacing)

    def request_layout(self, container: Rect) -> None:
        """Re-layout for `container` once resizing settles.

        Calls arriving within the debounce window replace each other; only
        the last container is laid out. Without a running loop the layout
        is computed immediately.
        """
        self._container = container
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._apply_layout(container)
            return
        if self._layout_task is not None and not self._layout_task.done():
            self._layout_task.cancel()
        self._layout_task = loop.create_task(self._debounced_layout(container))

    async def _debounced_layout(self, container: Rect) -> None:
        await asyncio.sleep(self.cfg.layout_debounce_seconds)
        self._apply_layout(container)

    def _apply_layout(self, container: Rect) -> None:
        self._layout = self.tile_layout(container)
        self._notify("layout", len(self._layout))

    def current_layout(self) -> Dict[str, Any]:
        return {"container": self._container, "tiles": list(self._layout)}

    # -- markets & charts ----------------------------------------------

    def markets(self, search: str = "", segment: str = "all", sort: str = "none", direction: str = "asc") -> List[MarketCoin]:
        favorites = self.favorites.list() if segment == "favorites" else []
        return filter_and_sort(self._coins, search, segment, sort, direction, favorites)

    async def klines(self, symbol: str, interval: str = "1D") -> List[KlinePoint]:
        return await fetch_chart(self.client, symbol, interval)
