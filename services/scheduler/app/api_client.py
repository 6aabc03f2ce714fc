from __future__ import annotations

import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


class ApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class ApiClientConfig:
    base_url: str
    timeout_s: float = 20.0


def _default_base_url() -> str:
    return os.getenv("API_BASE_URL", "http://market:8090").rstrip("/")


def _has_api_prefix(path: str) -> bool:
    return path.startswith("/api/") or path == "/api"


class ApiClient:
    """Sync client for the market service, used by the scheduler process."""

    def __init__(self, cfg: Optional[ApiClientConfig] = None, transport: Optional[httpx.BaseTransport] = None):
        self.cfg = cfg or ApiClientConfig(base_url=_default_base_url())
        self._client = httpx.Client(
            base_url=self.cfg.base_url,
            timeout=httpx.Timeout(self.cfg.timeout_s, connect=self.cfg.timeout_s),
            headers={"User-Agent": "market-scheduler/1.0"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    @retry(
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=6.0),
        reraise=True,
    )
    def _request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        resp = self._client.request(method, path, params=params)
        if resp.status_code == 404 and (not _has_api_prefix(path)):
            return self._client.request(method, "/api" + path, params=params)
        return resp

    def _json_or_error(self, resp: httpx.Response) -> Dict[str, Any]:
        if resp.status_code >= 400:
            detail: Any = None
            try:
                j = resp.json()
                detail = j.get("detail") if isinstance(j, dict) else None
            except ValueError:
                detail = (resp.text or "").strip()[:500]
            raise ApiError(
                f"API error {resp.status_code} for {resp.request.method} {resp.request.url}",
                status_code=resp.status_code,
                detail=detail,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(f"API returned non-JSON response: {e}")
        if not isinstance(data, dict):
            raise ApiError("API returned unexpected JSON shape")
        return data

    # --- High-level API methods ---

    def health(self) -> Dict[str, Any]:
        return self._json_or_error(self._request("GET", "/health"))

    def refresh_news(self) -> Dict[str, Any]:
        return self._json_or_error(self._request("POST", "/news/refresh"))

    def refresh_heatmap(self) -> Dict[str, Any]:
        return self._json_or_error(self._request("POST", "/heatmap/refresh"))

    def news_status(self) -> Dict[str, Any]:
        return self._json_or_error(self._request("GET", "/news/status"))
