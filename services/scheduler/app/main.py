from __future__ import annotations

import datetime as dt
import os
from typing import Callable, Dict, Optional

import httpx
from apscheduler.schedulers.blocking import BlockingScheduler

from .api_client import ApiClient, ApiError


TZ = os.getenv("TZ", "UTC")


def _log(msg: str) -> None:
    ts = dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()
    print(f"{ts} | scheduler | {msg}", flush=True)


def _call(name: str, fn: Callable[[], Dict]) -> Optional[Dict]:
    """Run one refresh call; failures are logged and the next tick tries again."""
    try:
        data = fn()
    except ApiError as e:
        if e.status_code == 502:
            _log(f"upstream down for {name}: {e.detail}")
        else:
            _log(f"ERROR {name}: {e} {e.detail}")
        return None
    except httpx.HTTPError as e:
        _log(f"ERROR {name}: {e}")
        return None
    _log(f"refreshed {name}: n={data.get('n')}")
    return data


def job_news(client: ApiClient) -> Optional[Dict]:
    return _call("news", client.refresh_news)


def job_heatmap(client: ApiClient) -> Optional[Dict]:
    return _call("heatmap", client.refresh_heatmap)


def main() -> None:
    # Defaults: news every 5 minutes, heat map every minute.
    news_seconds = int(os.getenv("NEWS_EVERY_SEC", "300"))
    heatmap_seconds = int(os.getenv("HEATMAP_EVERY_SEC", "60"))

    client = ApiClient()
    sched = BlockingScheduler(timezone=TZ)

    sched.add_job(job_news, "interval", seconds=max(30, news_seconds), args=[client], id="news")
    sched.add_job(job_heatmap, "interval", seconds=max(15, heatmap_seconds), args=[client], id="heatmap")

    _log(
        "started "
        + f"API_BASE_URL={client.cfg.base_url} TZ={TZ} "
        + f"NEWS_EVERY_SEC={news_seconds} HEATMAP_EVERY_SEC={heatmap_seconds}"
    )

    # Kick once on start if requested
    if os.getenv("RUN_ON_START", "0") == "1":
        _log("RUN_ON_START=1 -> triggering news + heatmap")
        job_news(client)
        job_heatmap(client)

    try:
        sched.start()
    finally:
        client.close()


if __name__ == "__main__":
    main()
