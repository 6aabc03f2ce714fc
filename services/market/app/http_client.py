from __future__ import annotations

import json
from typing import Any, Dict, Optional

import httpx

from .config import settings
from .errors import DecodeFailure, InvalidInput, NetworkFailure


def make_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": settings.user_agent, "Accept": "application/json"},
        timeout=settings.request_timeout,
        follow_redirects=True,
        transport=transport,
    )


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
) -> Any:
    """GET `url` and decode JSON, mapping failures onto the error taxonomy."""
    try:
        r = await client.get(url, params=params, timeout=timeout or settings.request_timeout)
        r.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise NetworkFailure(f"HTTP {e.response.status_code} for {url}", status_code=e.response.status_code) from e
    except httpx.HTTPError as e:
        raise NetworkFailure(f"{e.__class__.__name__} for {url}: {e}") from e
    try:
        return r.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeFailure(f"non-JSON response from {url}: {e}") from e


def parse_number(value: Any) -> float:
    """Numbers arrive as JSON numbers or decimal strings."""
    if isinstance(value, bool):
        raise InvalidInput(f"not a number: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError as e:
            raise InvalidInput(f"not a number: {value!r}") from e
    raise InvalidInput(f"not a number: {value!r}")
