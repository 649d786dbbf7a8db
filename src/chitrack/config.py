"""Runtime settings, read from the environment or a .env file."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # --- CTA Train Tracker API ---
    CTA_TRAIN_API_KEY: Optional[str] = None
    CTA_ARRIVALS_URL: str = "https://lapi.transitchicago.com/api/1.0/ttarrivals.aspx"
    HTTP_TIMEOUT: float = 10.0

    # --- Static GTFS ---
    CTA_GTFS_URL: str = "https://www.transitchicago.com/downloads/sch_data/google_transit.zip"
    DIRECTORY_ATTEMPTS: int = 3
    DIRECTORY_RETRY_DELAY: float = 1.0

    # --- Refresh / retry ---
    MAX_RETRIES: int = 2
    REFRESH_INTERVAL: Optional[float] = 30.0
    FRESHNESS_WINDOW: float = 15.0
    CACHE_MAX_ENTRIES: int = 32
    ARRIVALS_PER_STOP: int = 3

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
