from __future__ import annotations

from .base import FeedSource, RssFeed

FEED = RssFeed(FeedSource(
    name='CryptoSlate',
    url='https://cryptoslate.com/feed/',
))
