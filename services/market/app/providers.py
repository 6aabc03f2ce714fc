"""Spot-price providers and the cascade that tries them in order.

Each provider is a coroutine `(client, symbol, timeout) -> price`. The
cascade never retries a provider; any failure moves straight to the next
one and only the aggregate failure is surfaced.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import httpx

from .config import settings
from .errors import AllProvidersFailed, DecodeFailure, InvalidInput, MarketDataError, NetworkFailure
from .http_client import get_json, parse_number
from .klines import fetch_klines
from .models import Quote, QuoteSource

logger = logging.getLogger(__name__)

T = TypeVar("T")

FetchPrice = Callable[[httpx.AsyncClient, str, float], Awaitable[float]]

# Symbol -> CoinGecko coin id. Unmapped symbols fall back to lowercase.
COINGECKO_IDS: Dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "XRP": "ripple",
    "DOGE": "dogecoin",
    "ADA": "cardano",
    "BNB": "binancecoin",
    "USDT": "tether",
    "USDC": "usd-coin",
    "DOT": "polkadot",
    "MATIC": "matic-network",
    "LTC": "litecoin",
    "AVAX": "avalanche-2",
    "LINK": "chainlink",
    "TRX": "tron",
    "SHIB": "shiba-inu",
    "XLM": "stellar",
    "ATOM": "cosmos",
}


def coingecko_id(symbol: str) -> str:
    s = symbol.strip().upper()
    return COINGECKO_IDS.get(s, s.lower())


def positive_price(value: Any) -> float:
    price = parse_number(value)
    if not math.isfinite(price) or price <= 0:
        raise InvalidInput(f"price must be positive, got {value!r}")
    return price


async def coinbase_spot(client: httpx.AsyncClient, symbol: str, timeout: float) -> float:
    url = f"{settings.coinbase_url.rstrip('/')}/v2/prices/{symbol.upper()}-USD/spot"
    data = await get_json(client, url, timeout=timeout)
    try:
        amount = data["data"]["amount"]
    except (KeyError, TypeError) as e:
        raise DecodeFailure(f"coinbase: missing data.amount for {symbol}") from e
    return positive_price(amount)


async def binance_close(client: httpx.AsyncClient, symbol: str, timeout: float) -> float:
    points = await fetch_klines(client, symbol, "1m", 1, timeout=timeout)
    if not points:
        raise DecodeFailure(f"binance: no usable kline for {symbol}")
    return positive_price(points[-1].close)


async def coingecko_simple(client: httpx.AsyncClient, symbol: str, timeout: float) -> float:
    coin = coingecko_id(symbol)
    data = await get_json(
        client,
        settings.coingecko_url.rstrip("/") + "/api/v3/simple/price",
        params={"ids": coin, "vs_currencies": "usd"},
        timeout=timeout,
    )
    try:
        usd = data[coin]["usd"]
    except (KeyError, TypeError) as e:
        raise DecodeFailure(f"coingecko: missing {coin}.usd") from e
    return positive_price(usd)


@dataclass(frozen=True)
class PriceProvider:
    name: str
    source: QuoteSource
    fetch: FetchPrice
    timeout: float


def default_providers() -> List[PriceProvider]:
    return [
        PriceProvider("coinbase", QuoteSource.PRIMARY, coinbase_spot, settings.coinbase_timeout),
        PriceProvider("binance", QuoteSource.SECONDARY, binance_close, settings.binance_timeout),
        PriceProvider("coingecko", QuoteSource.TERTIARY, coingecko_simple, settings.coingecko_timeout),
    ]


async def first_success(attempts: Iterable[Tuple[str, Callable[[], Awaitable[T]]]], *, label: str = "") -> Tuple[str, T]:
    """Await each attempt in order and return `(name, result)` of the first that succeeds.

    Failures are collected, not raised, until every attempt has failed.
    """
    errors: Dict[str, Exception] = {}
    for name, attempt in attempts:
        try:
            return name, await attempt()
        except (MarketDataError, httpx.HTTPError) as e:
            logger.debug("%s: %s failed: %s", label or "first_success", name, e)
            errors[name] = e
    raise AllProvidersFailed(label, errors)


class CascadeResolver:
    def __init__(
        self,
        client: httpx.AsyncClient,
        providers: Optional[List[PriceProvider]] = None,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.timezone.utc),
    ):
        self.client = client
        self.providers = providers if providers is not None else default_providers()
        self._clock = clock

    def _attempt(self, provider: PriceProvider, symbol: str) -> Callable[[], Awaitable[float]]:
        async def run() -> float:
            # httpx timeouts are per phase; bound the whole call as well
            try:
                return await asyncio.wait_for(provider.fetch(self.client, symbol, provider.timeout), provider.timeout)
            except asyncio.TimeoutError as e:
                raise NetworkFailure(f"{provider.name}: timed out after {provider.timeout}s") from e
        return run

    async def resolve_price(self, symbol: str) -> Quote:
        """Return a quote from the highest-priority provider that answers.

        Raises AllProvidersFailed when the whole chain fails; callers keep
        their last good quote in that case.
        """
        sym = symbol.strip().upper()
        if not sym:
            raise InvalidInput("empty symbol")
        by_name = {p.name: p for p in self.providers}
        name, price = await first_success(
            ((p.name, self._attempt(p, sym)) for p in self.providers),
            label=sym,
        )
        provider = by_name[name]
        if provider.source is not QuoteSource.PRIMARY:
            logger.info("quote %s served by fallback provider %s", sym, name)
        return Quote(symbol=sym, price=price, source=provider.source, timestamp=self._clock(), provider=name)
