from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import settings
from .errors import DecodeFailure, InvalidInput, NetworkFailure
from .http_client import get_json, parse_number
from .models import MarketCoin, Tile

logger = logging.getLogger(__name__)

SEGMENTS = ("all", "favorites", "gainers", "losers")
SORT_FIELDS = ("none", "coin", "price", "daily_change", "volume", "market_cap")
DIRECTIONS = ("asc", "desc")


def _optional_number(row: Dict[str, Any], key: str) -> float:
    value = row.get(key)
    if value is None:
        return 0.0
    return parse_number(value)


def parse_markets(data: Any) -> List[MarketCoin]:
    """Decode a CoinGecko coins/markets payload; malformed rows are skipped."""
    if not isinstance(data, list):
        raise DecodeFailure(f"markets payload is not an array: {type(data).__name__}")
    out: List[MarketCoin] = []
    for row in data:
        if not isinstance(row, dict):
            continue
        symbol = str(row.get("symbol") or "").strip().upper()
        if not symbol:
            continue
        try:
            coin = MarketCoin(
                symbol=symbol,
                name=str(row.get("name") or symbol),
                price=_optional_number(row, "current_price"),
                daily_change=_optional_number(row, "price_change_percentage_24h"),
                volume=_optional_number(row, "total_volume"),
                market_cap=_optional_number(row, "market_cap"),
                image_url=row.get("image") or None,
            )
        except InvalidInput as e:
            logger.debug("skipping market row %s: %s", symbol, e)
            continue
        out.append(coin)
    return out


@retry(
    retry=retry_if_exception_type(NetworkFailure),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
    reraise=True,
)
async def fetch_markets(client: httpx.AsyncClient, per_page: Optional[int] = None) -> List[MarketCoin]:
    data = await get_json(
        client,
        settings.coingecko_url.rstrip("/") + "/api/v3/coins/markets",
        params={
            "vs_currency": "usd",
            "order": "market_cap_desc",
            "per_page": per_page or settings.markets_per_page,
            "page": 1,
            "sparkline": "false",
            "price_change_percentage": "24h",
        },
        timeout=settings.coingecko_timeout,
    )
    coins = parse_markets(data)
    logger.info("markets fetched: %d coins", len(coins))
    return coins


def to_tiles(coins: Iterable[MarketCoin]) -> List[Tile]:
    return [Tile(label=c.symbol, weight=max(0.0, c.market_cap), value=c.daily_change) for c in coins]


def filter_and_sort(
    coins: Iterable[MarketCoin],
    search: str = "",
    segment: str = "all",
    sort: str = "none",
    direction: str = "asc",
    favorites: Iterable[str] = (),
) -> List[MarketCoin]:
    if segment not in SEGMENTS:
        raise InvalidInput(f"unknown segment {segment!r}")
    if sort not in SORT_FIELDS:
        raise InvalidInput(f"unknown sort field {sort!r}")
    if direction not in DIRECTIONS:
        raise InvalidInput(f"unknown sort direction {direction!r}")

    result = list(coins)

    q = (search or "").strip().lower()
    if q:
        result = [c for c in result if q in c.symbol.lower() or q in c.name.lower()]

    if segment == "favorites":
        faves = {f.strip().upper() for f in favorites}
        result = [c for c in result if c.symbol.upper() in faves]
    elif segment == "gainers":
        result = [c for c in result if c.daily_change > 0]
    elif segment == "losers":
        result = [c for c in result if c.daily_change < 0]

    if sort == "none":
        return result
    reverse = direction == "desc"
    if sort == "coin":
        return sorted(result, key=lambda c: c.symbol.lower(), reverse=reverse)
    return sorted(result, key=lambda c: getattr(c, sort), reverse=reverse)
