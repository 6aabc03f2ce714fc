from __future__ import annotations

import json
import logging
from typing import Dict, List

from .base import FeedSource, RssFeed, SourceFeed
from .coindesk import FEED as coindesk
from .cryptoslate import FEED as cryptoslate

logger = logging.getLogger(__name__)

# Registry keyed by source name; order is the default fetch order.
REGISTRY: Dict[str, SourceFeed] = {
    coindesk.source.name: coindesk,
    cryptoslate.source.name: cryptoslate,
}

def list_source_names() -> List[str]:
    return list(REGISTRY.keys())

def get_feed(source_name: str) -> SourceFeed:
    try:
        return REGISTRY[source_name]
    except KeyError:
        raise KeyError(f"Unknown source: {source_name}")

def load_feeds(path: str = "") -> List[RssFeed]:
    """Configured feeds: the JSON list at `path` if given, else the registry.

    The file holds `[{"name": ..., "url": ...}, ...]`.
    """
    if not path:
        return [f for f in REGISTRY.values() if isinstance(f, RssFeed)]
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    feeds: List[RssFeed] = []
    for s in raw:
        name, url = (s.get("name") or "").strip(), (s.get("url") or "").strip()
        if not name or not url:
            logger.warning("feeds file %s: skipping entry without name/url: %r", path, s)
            continue
        feeds.append(RssFeed(FeedSource(name=name, url=url, kind=s.get("kind") or "rss")))
    return feeds
