from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

import httpx

from ..feeds import fetch_feed
from ..models import Article

@dataclass(frozen=True)
class FeedSource:
    name: str
    url: str
    kind: str = "rss"  # "rss" | "atom"; both go through the same parser

class SourceFeed:
    source: FeedSource

    def __init__(self, source: FeedSource):
        self.source = source


class RssFeed(SourceFeed):
    async def fetch_articles(self, client: httpx.AsyncClient, timeout: Optional[float] = None) -> List[Article]:
        """Fetch and parse the feed, tagging each article with this source's name.

        Network failures propagate as NetworkFailure; markup problems never do.
        """
        return await fetch_feed(client, self.source.url, self.source.name, timeout=timeout)
