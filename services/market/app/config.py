from pydantic import BaseModel
import os

class Settings(BaseModel):
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    favorites_key: str = os.getenv("FAVORITES_KEY", "mkt:favorites")
    bookmarks_key: str = os.getenv("BOOKMARKS_KEY", "mkt:bookmarks")
    # Empty means the built-in feed registry (sources/__init__.py).
    feeds_path: str = os.getenv("FEEDS_PATH", "")
    user_agent: str = os.getenv("USER_AGENT", "crypto-market-aggregator/1.0")
    request_timeout: float = float(os.getenv("REQUEST_TIMEOUT", "15"))

    # Provider cascade: one timeout per provider, no retries inside the cascade.
    coinbase_url: str = os.getenv("COINBASE_URL", "https://api.coinbase.com")
    binance_url: str = os.getenv("BINANCE_URL", "https://api.binance.com")
    coingecko_url: str = os.getenv("COINGECKO_URL", "https://api.coingecko.com")
    coinbase_timeout: float = float(os.getenv("COINBASE_TIMEOUT", "5"))
    binance_timeout: float = float(os.getenv("BINANCE_TIMEOUT", "5"))
    coingecko_timeout: float = float(os.getenv("COINGECKO_TIMEOUT", "8"))

    default_symbol: str = os.getenv("DEFAULT_SYMBOL", "BTC")
    quote_poll_seconds: float = float(os.getenv("QUOTE_POLL_SECONDS", "5"))
    watchlist_poll_seconds: float = float(os.getenv("WATCHLIST_POLL_SECONDS", "15"))
    news_refresh_seconds: float = float(os.getenv("NEWS_REFRESH_SECONDS", "300"))
    heatmap_refresh_seconds: float = float(os.getenv("HEATMAP_REFRESH_SECONDS", "60"))

    news_page_size: int = int(os.getenv("NEWS_PAGE_SIZE", "25"))
    markets_per_page: int = int(os.getenv("MARKETS_PER_PAGE", "100"))
    tile_spacing: float = float(os.getenv("TILE_SPACING", "2"))
    tile_width: float = float(os.getenv("TILE_WIDTH", "80"))
    layout_debounce_seconds: float = float(os.getenv("LAYOUT_DEBOUNCE_SECONDS", "0.15"))


settings = Settings()
