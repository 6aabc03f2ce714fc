import logging
from typing import List

import redis
from fastapi import Body, Depends, FastAPI, HTTPException, Query

from .errors import AllProvidersFailed, InvalidInput, MarketDataError, NewsUnavailable
from .facade import MarketAggregator
from .logs import setup_logging
from .models import Rect
from .sources import list_source_names

setup_logging()

app = FastAPI(title="Crypto Market Data Aggregator", version="1.0.0")

logger = logging.getLogger(__name__)

aggregator = MarketAggregator()


def get_aggregator() -> MarketAggregator:
    return aggregator


def _upstream_failed(e: Exception) -> HTTPException:
    # Upstream failure; clients may retry.
    return HTTPException(status_code=502, detail={"error": str(e), "retry": True})


def _store_unavailable(e: Exception) -> HTTPException:
    logger.warning("redis unavailable: %s", e)
    return HTTPException(status_code=503, detail={"error": "favorites store unavailable", "retry": True})


@app.on_event("startup")
async def startup():
    await aggregator.start()


@app.on_event("shutdown")
async def shutdown():
    await aggregator.stop()


@app.get("/health")
def health(agg: MarketAggregator = Depends(get_aggregator)):
    return {"ok": True, "tracked": agg.scheduler.tracked, "watched": agg.scheduler.watched}


@app.get("/sources")
def sources():
    return {"ok": True, "sources": list_source_names()}


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------

@app.get("/quotes")
def quotes(agg: MarketAggregator = Depends(get_aggregator)):
    items = agg.quotes()
    return {"ok": True, "n": len(items), "items": items}


@app.get("/quotes/{symbol}")
async def quote(
    symbol: str,
    fresh: bool = Query(False),
    agg: MarketAggregator = Depends(get_aggregator),
):
    """Latest polled quote; `fresh=true` resolves through the provider chain now."""
    if fresh:
        try:
            q = await agg.resolve_once(symbol)
        except InvalidInput as e:
            raise HTTPException(status_code=422, detail=str(e))
        except AllProvidersFailed as e:
            raise _upstream_failed(e)
        return {"ok": True, "quote": q}

    q = agg.current_quote(symbol)
    if q is None:
        raise HTTPException(status_code=404, detail=f"no quote for {symbol.upper()} yet")
    return {"ok": True, "quote": q, "error": agg.scheduler.last_error(symbol)}


@app.post("/track")
async def track(symbol: str = Query(..., min_length=1, max_length=20), agg: MarketAggregator = Depends(get_aggregator)):
    try:
        await agg.track(symbol)
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"ok": True, "tracked": agg.scheduler.tracked}


@app.post("/track/stop")
async def track_stop(agg: MarketAggregator = Depends(get_aggregator)):
    await agg.untrack()
    return {"ok": True, "tracked": None}


@app.get("/watchlist")
def watchlist(agg: MarketAggregator = Depends(get_aggregator)):
    try:
        items = agg.watchlist()
    except redis.RedisError as e:
        raise _store_unavailable(e)
    return {"ok": True, "n": len(items), "items": items}


@app.get("/favorites")
def favorites(agg: MarketAggregator = Depends(get_aggregator)):
    try:
        items = agg.favorites.list()
    except redis.RedisError as e:
        raise _store_unavailable(e)
    return {"ok": True, "items": items}


@app.post("/favorites/{symbol}/toggle")
async def favorite_toggle(symbol: str, agg: MarketAggregator = Depends(get_aggregator)):
    try:
        present = await agg.toggle_favorite(symbol)
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))
    except redis.RedisError as e:
        raise _store_unavailable(e)
    return {"ok": True, "symbol": symbol.strip().upper(), "favorite": present}


@app.put("/favorites")
async def favorites_replace(
    symbols: List[str] = Body(..., embed=True),
    agg: MarketAggregator = Depends(get_aggregator),
):
    """Replace the whole watchlist, keeping the given order."""
    try:
        items = await agg.set_favorites(symbols)
    except redis.RedisError as e:
        raise _store_unavailable(e)
    return {"ok": True, "items": items}


@app.post("/favorites/{symbol}/move")
async def favorite_move(
    symbol: str,
    index: int = Query(..., ge=0, le=1000),
    agg: MarketAggregator = Depends(get_aggregator),
):
    try:
        items = await agg.move_favorite(symbol, index)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"{symbol.strip().upper()} is not a favorite")
    except redis.RedisError as e:
        raise _store_unavailable(e)
    return {"ok": True, "items": items}


# ---------------------------------------------------------------------------
# News
# ---------------------------------------------------------------------------

@app.get("/news")
def news(
    page: int = Query(1),
    page_size: int = Query(0, ge=0, le=200),
    q: str | None = None,
    grouped: bool = Query(False),
    agg: MarketAggregator = Depends(get_aggregator),
):
    """One page of the merged feed, newest first. `page` is 1-based."""
    try:
        out = agg.article_page(page, page_size or None, q)
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))
    body = {
        "ok": True,
        "page": out.page,
        "page_size": out.page_size,
        "total": out.total,
        "has_more": out.has_more,
        "items": out.items,
        "status": agg.news_status(),
    }
    if grouped:
        body["sections"] = agg.article_sections(out)
    return body


@app.post("/news/refresh")
async def news_refresh(agg: MarketAggregator = Depends(get_aggregator)):
    try:
        n = await agg.refresh_news()
    except NewsUnavailable as e:
        raise _upstream_failed(e)
    return {"ok": True, "n": n, "status": agg.news_status()}


@app.get("/news/status")
def news_status(agg: MarketAggregator = Depends(get_aggregator)):
    return {"ok": True, **agg.news_status()}


@app.get("/news/bookmarks")
def news_bookmarks(agg: MarketAggregator = Depends(get_aggregator)):
    try:
        out = agg.bookmarked()
    except redis.RedisError as e:
        raise _store_unavailable(e)
    return {"ok": True, **out}


@app.post("/news/bookmarks/toggle")
async def news_bookmark_toggle(url: str = Query(..., min_length=1), agg: MarketAggregator = Depends(get_aggregator)):
    try:
        present = await agg.toggle_bookmark(url)
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))
    except redis.RedisError as e:
        raise _store_unavailable(e)
    return {"ok": True, "url": url, "bookmarked": present}


# ---------------------------------------------------------------------------
# Heat map, markets, charts
# ---------------------------------------------------------------------------

@app.get("/heatmap")
def heatmap(
    width: float = Query(..., gt=0, le=100000),
    height: float = Query(..., gt=0, le=100000),
    max_tiles: int = Query(0, ge=0, le=500),
    spacing: float | None = Query(None, ge=0, le=50),
    agg: MarketAggregator = Depends(get_aggregator),
):
    """Squarified layout of the current tiles for a `width` x `height` container."""
    container = Rect(0.0, 0.0, width, height)
    tiles = agg.tile_layout(container, max_tiles or None, spacing)
    return {"ok": True, "container": container, "fetched_at": agg.tiles_fetched_at, "n": len(tiles), "tiles": tiles}


@app.post("/heatmap/refresh")
async def heatmap_refresh(agg: MarketAggregator = Depends(get_aggregator)):
    try:
        n = await agg.refresh_tiles()
    except MarketDataError as e:
        raise _upstream_failed(e)
    return {"ok": True, "n": n}


@app.get("/markets")
def markets(
    search: str = Query("", max_length=100),
    segment: str = Query("all"),
    sort: str = Query("none"),
    direction: str = Query("asc"),
    limit: int = Query(100, ge=1, le=500),
    agg: MarketAggregator = Depends(get_aggregator),
):
    try:
        items = agg.markets(search, segment, sort, direction)
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))
    except redis.RedisError as e:
        raise _store_unavailable(e)
    return {"ok": True, "n": len(items), "items": items[:limit]}


@app.get("/klines/{symbol}")
async def klines(symbol: str, interval: str = Query("1D"), agg: MarketAggregator = Depends(get_aggregator)):
    try:
        points = await agg.klines(symbol, interval)
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))
    except MarketDataError as e:
        raise _upstream_failed(e)
    return {"ok": True, "symbol": symbol.strip().upper(), "interval": interval, "n": len(points), "points": points}


# ---------------------------------------------------------------------------
# Compatibility routes: expose the same API under /api/* as well, for
# deployments where a reverse proxy forwards "/api" to this service.
# ---------------------------------------------------------------------------

_API_PREFIX = "/api"


def _register_prefixed_routes(prefix: str = _API_PREFIX) -> None:
    app.add_api_route(f"{prefix}/health", health, methods=["GET"])
    app.add_api_route(f"{prefix}/sources", sources, methods=["GET"])

    # Quotes
    app.add_api_route(f"{prefix}/quotes", quotes, methods=["GET"])
    app.add_api_route(f"{prefix}/quotes/{{symbol}}", quote, methods=["GET"])
    app.add_api_route(f"{prefix}/track", track, methods=["POST"])
    app.add_api_route(f"{prefix}/track/stop", track_stop, methods=["POST"])
    app.add_api_route(f"{prefix}/watchlist", watchlist, methods=["GET"])
    app.add_api_route(f"{prefix}/favorites", favorites, methods=["GET"])
    app.add_api_route(f"{prefix}/favorites/{{symbol}}/toggle", favorite_toggle, methods=["POST"])
    app.add_api_route(f"{prefix}/favorites", favorites_replace, methods=["PUT"])
    app.add_api_route(f"{prefix}/favorites/{{symbol}}/move", favorite_move, methods=["POST"])

    # News
    app.add_api_route(f"{prefix}/news", news, methods=["GET"])
    app.add_api_route(f"{prefix}/news/refresh", news_refresh, methods=["POST"])
    app.add_api_route(f"{prefix}/news/status", news_status, methods=["GET"])
    app.add_api_route(f"{prefix}/news/bookmarks", news_bookmarks, methods=["GET"])
    app.add_api_route(f"{prefix}/news/bookmarks/toggle", news_bookmark_toggle, methods=["POST"])

    # Heat map, markets, charts
    app.add_api_route(f"{prefix}/heatmap", heatmap, methods=["GET"])
    app.add_api_route(f"{prefix}/heatmap/refresh", heatmap_refresh, methods=["POST"])
    app.add_api_route(f"{prefix}/markets", markets, methods=["GET"])
    app.add_api_route(f"{prefix}/klines/{{symbol}}", klines, methods=["GET"])


_register_prefixed_routes()
