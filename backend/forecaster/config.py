# backend/forecaster/config.py
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # environment: "dev" for running the app locally, "test" for pytest
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str | None = None
    TEST_DATABASE_URL: str | None = None

    # --- Market data ---
    SYMBOL: str = "BTCUSDT"
    BINANCE_API_URL: str = "https://api.binance.com"
    BINANCE_FUTURES_API_URL: str = "https://fapi.binance.com"
    FEAR_GREED_URL: str = "https://api.alternative.me/fng/?limit=1"
    # Optional context feeds; set to an empty string to disable one.
    COINGECKO_URL: str = "https://api.coingecko.com/api/v3/coins/bitcoin"
    COINCAP_URL: str = "https://api.coincap.io/v2/assets/bitcoin"
    NEWS_URL: str = "https://min-api.cryptocompare.com/data/v2/news/?categories=BTC&excludeCategories=Sponsored"
    RECENT_TRADES_LIMIT: int = 50
    MARKET_TIMEOUT_SECONDS: float = 10.0
    # Snapshot cache used by the /api/market endpoint.
    MARKET_CACHE_TTL_SECONDS: float = 5.0
    # Above this the snapshot is graded "degraded".
    MARKET_LATENCY_DEGRADED_MS: int = 10000

    # --- Forecasting models ---
    DEEPSEEK_API_KEY: str | None = None
    DEEPSEEK_MODEL: str = "deepseek-chat"
    GEMINI_API_KEY: str | None = None
    GEMINI_MODEL: str = "gemini-2.0-flash"
    XAI_API_KEY: str | None = None
    XAI_MODEL: str = "grok-3-mini"
    MODEL_TEMPERATURE: float = 0.3
    MODEL_MAX_TOKENS: int = 2000
    # Per-model timeout; must stay below the cycle deadline.
    MODEL_TIMEOUT_SECONDS: float = 45.0
    CYCLE_DEADLINE_SECONDS: float = 60.0

    # --- Cron endpoint ---
    CRON_SECRET: str | None = None

    # --- Scheduler ---
    SCHEDULER_ENABLED: bool = True
    # IANA timezone name used by APScheduler (e.g., "UTC", "America/New_York").
    SCHEDULER_TZ: str = "UTC"
    # Optional dedicated job store URL. If None, use DATABASE_URL.
    SCHEDULER_DB_URL: str | None = None
    FORECAST_CRON_MINUTE: int = 1
    SETTLEMENT_INTERVAL_MINUTES: int = 15

    @model_validator(mode="after")
    def _check_deadlines(self):
        if self.MODEL_TIMEOUT_SECONDS >= self.CYCLE_DEADLINE_SECONDS:
            raise ValueError(
                "MODEL_TIMEOUT_SECONDS must be smaller than CYCLE_DEADLINE_SECONDS "
                f"({self.MODEL_TIMEOUT_SECONDS} >= {self.CYCLE_DEADLINE_SECONDS})"
            )
        return self

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
