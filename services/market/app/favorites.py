"""Favorites (coin symbols) and bookmarks (article URLs) in Redis.

Each set lives under one key as a JSON string array and is always read and
written whole. Each store holds a lock so read-modify-write cycles never
interleave and concurrent toggles cannot lose updates.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, List, Optional

from .config import settings
from .errors import InvalidInput
from .utils import canonicalize_url

logger = logging.getLogger(__name__)


class KeyValueListStore:
    def __init__(self, redis_client: Any, key: str, normalize: Callable[[str], str] = lambda s: s):
        self._r = redis_client
        self.key = key
        self._normalize = normalize
        self._lock = threading.Lock()

    def _read(self) -> List[str]:
        raw = self._r.get(self.key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("store %s: ignoring corrupt value %r", self.key, raw[:200])
            return []
        if not isinstance(data, list):
            return []
        out: List[str] = []
        for x in data:
            if isinstance(x, str) and x.strip():
                v = self._normalize(x)
                if v not in out:
                    out.append(v)
        return out

    def _write(self, values: List[str]) -> None:
        self._r.set(self.key, json.dumps(values, ensure_ascii=False))

    def list(self) -> List[str]:
        with self._lock:
            return self._read()

    def contains(self, value: str) -> bool:
        return self._normalize(value) in self.list()

    def toggle(self, value: str) -> bool:
        """Add `value` if absent, remove it if present; return the new membership."""
        v = self._normalize(value)
        if not v:
            raise InvalidInput("empty value")
        with self._lock:
            values = self._read()
            if v in values:
                values.remove(v)
                present = False
            else:
                values.append(v)
                present = True
            self._write(values)
        return present

    def replace(self, values: List[str]) -> List[str]:
        cleaned: List[str] = []
        for x in values:
            v = self._normalize(x)
            if v and v not in cleaned:
                cleaned.append(v)
        with self._lock:
            self._write(cleaned)
        return cleaned


def _symbol(s: str) -> str:
    return (s or "").strip().upper()


def _url(s: str) -> str:
    s = (s or "").strip()
    return canonicalize_url(s) if s else ""


class FavoritesStore(KeyValueListStore):
    def __init__(self, redis_client: Any, key: Optional[str] = None):
        super().__init__(redis_client, key or settings.favorites_key, normalize=_symbol)

    def move(self, symbol: str, index: int) -> List[str]:
        """Reorder a favorite within the watchlist."""
        sym = _symbol(symbol)
        with self._lock:
            values = self._read()
            if sym not in values:
                raise KeyError(f"{sym} is not a favorite")
            values.remove(sym)
            index = max(0, min(index, len(values)))
            values.insert(index, sym)
            self._write(values)
        return values


class BookmarksStore(KeyValueListStore):
    def __init__(self, redis_client: Any, key: Optional[str] = None):
        super().__init__(redis_client, key or settings.bookmarks_key, normalize=_url)
