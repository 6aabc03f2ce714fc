from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from services.market.app.favorites import BookmarksStore, FavoritesStore
from services.market.app.http_client import make_client


class FakeRedis:
    """Just enough of redis.Redis (decode_responses=True) for the stores."""

    def __init__(self, delay: float = 0.0):
        self._data: Dict[str, str] = {}
        self._mu = threading.Lock()
        self.delay = delay

    def get(self, key: str) -> Optional[str]:
        with self._mu:
            value = self._data.get(key)
        if self.delay:
            time.sleep(self.delay)
        return value

    def set(self, key: str, value: str) -> bool:
        with self._mu:
            self._data[key] = value
        return True


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def favorites(fake_redis) -> FavoritesStore:
    return FavoritesStore(fake_redis, "test:favorites")


@pytest.fixture
def bookmarks(fake_redis) -> BookmarksStore:
    return BookmarksStore(fake_redis, "test:bookmarks")


def _item(title: str, link: str, pub: str, extra: str = "") -> str:
    return f"""
    <item>
      <title>{title}</title>
      <link>{link}</link>
      <pubDate>{pub}</pubDate>
      <description><![CDATA[<p>{title} body</p>]]></description>
      {extra}
    </item>"""


@pytest.fixture
def rss_doc() -> Callable[[List[tuple]], bytes]:
    """Build an RSS 2.0 document from (title, link, pubDate) tuples."""

    def build(items: List[tuple]) -> bytes:
        body = "".join(_item(*it) for it in items)
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">'
            f"<channel><title>Feed</title>{body}</channel></rss>"
        ).encode("utf-8")

    return build


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """AsyncClient wired to an in-process handler; close it inside the test's loop."""

    def build(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return make_client(transport=httpx.MockTransport(handler))

    return build
