"""Shared value types.

Everything here is an immutable snapshot: quotes, articles and layout
results are replaced wholesale, never patched in place.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class QuoteSource(str, Enum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"
    TERTIARY = "TERTIARY"


@dataclass(frozen=True)
class Quote:
    symbol: str
    price: float
    source: QuoteSource
    timestamp: dt.datetime
    provider: str = ""


@dataclass(frozen=True)
class Article:
    title: str
    canonical_url: str
    published_at: dt.datetime
    source_name: str
    description: Optional[str] = None
    image_url: Optional[str] = None


@dataclass(frozen=True)
class ArticlePage:
    page: int
    page_size: int
    total: int
    has_more: bool
    items: List[Article] = field(default_factory=list)


@dataclass(frozen=True)
class Tile:
    label: str
    weight: float
    value: float = 0.0


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    def inset(self, d: float) -> "Rect":
        # Never produce negative sizes for slivers thinner than the inset.
        w = max(0.0, self.width - 2 * d)
        h = max(0.0, self.height - 2 * d)
        return Rect(self.x + (self.width - w) / 2, self.y + (self.height - h) / 2, w, h)


@dataclass(frozen=True)
class TileRect:
    tile: Tile
    rect: Rect


@dataclass(frozen=True)
class KlinePoint:
    open_time: dt.datetime
    close: float


@dataclass(frozen=True)
class MarketCoin:
    symbol: str
    name: str
    price: float
    daily_change: float
    volume: float
    market_cap: float
    image_url: Optional[str] = None
