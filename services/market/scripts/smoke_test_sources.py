#!/usr/bin/env python3
"""Quick smoke test for feeds and price providers.

Usage (from repo root):
  python -m services.market.scripts.smoke_test_sources --source CoinDesk --symbol BTC

This script performs live HTTP requests.
"""

from __future__ import annotations

import argparse
import asyncio

from services.market.app.errors import MarketDataError
from services.market.app.http_client import make_client
from services.market.app.providers import CascadeResolver
from services.market.app.sources import get_feed, list_source_names


async def _run(source: str, symbol: str) -> int:
    feed = get_feed(source)
    print(f"Source: {feed.source.name} ({feed.source.kind})")
    print(f"Feed URL: {feed.source.url}")

    async with make_client() as client:
        try:
            articles = await feed.fetch_articles(client)
        except MarketDataError as e:
            print(f"[FAIL] feed: {e}")
            articles = []
        print(f"Fetched articles: {len(articles)}")
        for i, a in enumerate(articles[:3], 1):
            print("\n---")
            print(f"#{i}: {a.title}")
            print(a.canonical_url)
            print(f"published={a.published_at.isoformat()} image={a.image_url or '-'}")
            if not a.description:
                print("[WARN] empty description")

        if not symbol:
            return 0
        print("\n=== price ===")
        try:
            q = await CascadeResolver(client).resolve_price(symbol)
        except MarketDataError as e:
            print(f"[FAIL] {e}")
            return 1
        print(f"{q.symbol} = {q.price} via {q.provider} ({q.source.value})")
    return 0


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--source", default="CoinDesk", help="Exact source name from the registry")
    ap.add_argument("--symbol", default="BTC", help="Coin symbol to resolve; empty to skip")
    args = ap.parse_args()

    if args.source not in list_source_names():
        print("Unknown source. Available:")
        for n in list_source_names():
            print(" -", n)
        return 2

    return asyncio.run(_run(args.source, args.symbol))


if __name__ == "__main__":
    raise SystemExit(main())
