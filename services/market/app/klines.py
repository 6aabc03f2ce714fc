from __future__ import annotations

import datetime as dt
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import settings
from .errors import DecodeFailure, InvalidInput
from .http_client import get_json, parse_number
from .models import KlinePoint

logger = logging.getLogger(__name__)

# UI interval -> (Binance interval, candle count)
CHART_INTERVALS: Dict[str, Tuple[str, int]] = {
    "1m": ("1m", 60),
    "5m": ("5m", 48),
    "15m": ("15m", 24),
    "30m": ("30m", 24),
    "1H": ("1h", 48),
    "4H": ("4h", 120),
    "1D": ("1d", 60),
    "1W": ("1w", 52),
    "1M": ("1M", 12),
    "3M": ("1d", 90),
    "1Y": ("1d", 365),
    "3Y": ("1d", 1095),
    "ALL": ("1w", 999),
}

# Binance caps a single klines request at 1000 rows.
MAX_LIMIT = 1000


def trading_pair(symbol: str) -> str:
    return symbol.strip().upper() + "USDT"


def _parse_row(row: Any) -> KlinePoint:
    if not isinstance(row, (list, tuple)) or len(row) < 6:
        raise InvalidInput(f"kline row too short: {row!r}")
    open_ms = parse_number(row[0])
    # open, high, low, close, volume must all be numeric
    values = [parse_number(v) for v in row[1:6]]
    close = values[3]
    if not all(math.isfinite(v) for v in [open_ms] + values):
        raise InvalidInput(f"non-finite kline values: {row!r}")
    opened = dt.datetime.fromtimestamp(open_ms / 1000.0, tz=dt.timezone.utc)
    return KlinePoint(open_time=opened, close=close)


def parse_klines(data: Any) -> List[KlinePoint]:
    """Decode a Binance klines payload, skipping short or unparseable rows."""
    if not isinstance(data, list):
        raise DecodeFailure(f"klines payload is not an array: {type(data).__name__}")
    out: List[KlinePoint] = []
    for row in data:
        try:
            out.append(_parse_row(row))
        except (InvalidInput, OverflowError, OSError) as e:
            logger.debug("skipping kline row: %s", e)
    out.sort(key=lambda p: p.open_time)
    return out


async def fetch_klines(
    client: httpx.AsyncClient,
    symbol: str,
    interval: str = "1m",
    limit: int = 1,
    *,
    timeout: Optional[float] = None,
) -> List[KlinePoint]:
    limit = max(1, min(int(limit), MAX_LIMIT))
    data = await get_json(
        client,
        settings.binance_url.rstrip("/") + "/api/v3/klines",
        params={"symbol": trading_pair(symbol), "interval": interval, "limit": limit},
        timeout=timeout or settings.binance_timeout,
    )
    return parse_klines(data)


async def fetch_chart(client: httpx.AsyncClient, symbol: str, chart_interval: str) -> List[KlinePoint]:
    try:
        interval, limit = CHART_INTERVALS[chart_interval]
    except KeyError:
        raise InvalidInput(f"unknown chart interval {chart_interval!r}; expected one of {', '.join(CHART_INTERVALS)}")
    return await fetch_klines(client, symbol, interval, limit)
