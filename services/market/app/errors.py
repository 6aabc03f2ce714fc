from __future__ import annotations

from typing import Dict, Optional


class MarketDataError(RuntimeError):
    """Base class for failures raised by the aggregation core."""


class NetworkFailure(MarketDataError):
    """Timeout, connection error or non-2xx response."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeFailure(MarketDataError):
    """Malformed JSON/XML or a missing required field."""


class InvalidInput(MarketDataError, ValueError):
    """Unparseable number/date or out-of-range arguments."""


class AllProvidersFailed(MarketDataError):
    def __init__(self, symbol: str, errors: Dict[str, Exception]):
        names = ", ".join(f"{k}: {v}" for k, v in errors.items()) or "no providers"
        super().__init__(f"all price providers failed for {symbol} ({names})")
        self.symbol = symbol
        self.errors = errors


class NewsUnavailable(MarketDataError):
    def __init__(self, errors: Dict[str, Exception]):
        names = ", ".join(f"{k}: {v}" for k, v in errors.items()) or "no feeds configured"
        super().__init__(f"every news feed failed ({names})")
        self.errors = errors
