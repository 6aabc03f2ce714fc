from __future__ import annotations

from .base import FeedSource, RssFeed

FEED = RssFeed(FeedSource(
    name='CoinDesk',
    url='https://www.coindesk.com/arc/outboundfeeds/rss/',
))
