"""
OptionsFlow Configuration
Uses Pydantic BaseSettings for validated, typed config with .env auto-loading.
"""
from pathlib import Path
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    POLYGON_API_KEY: str = ""
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Normalization
    BUNDLE_PREMIUM_THRESHOLD: float = 500.0  # prints at or above are never bundled

    # Poller batching
    PRICE_BATCH_SIZE: int = 10
    OPTION_BATCH_SIZE: int = 5
    VOLATILITY_BATCH_SIZE: int = 3  # daily bars are the expensive endpoint
    REQUEST_STAGGER_SEC: float = 0.1
    BATCH_PAUSE_SEC: float = 0.5
    REQUEST_TIMEOUT_SEC: float = 6.0
    REFRESH_INTERVAL_SEC: float = 300.0  # 5 min
    VOLATILITY_LOOKBACK_DAYS: int = 30  # trading days

    # Cache TTLs (seconds)
    CACHE_TTL_QUOTES: int = 86400  # historical quotes never change

    model_config = {
        "env_file": str(Path(__file__).parent.parent / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
