"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROVIDER_MODES = {"auto", "google", "fallback"}


class ConfigError(RuntimeError):
    """Raised when mandatory configuration is missing."""


@dataclass(frozen=True)
class Settings:
    google_api_key: str
    database_url: str
    places_provider: str = "auto"
    worker_port: int = 9000
    max_pages: int = 25
    page_size: int = 20
    search_concurrency: int = 2
    enrich_concurrency: int = 5
    score_concurrency: int = 1
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    page_token_delay: float = 2.0
    detail_request_delay: float = 0.1
    queue_poll_interval: float = 1.0
    stale_job_timeout: int = 300
    db_pool_min: int = 1
    db_pool_max: int = 10
    enrich_scan_websites: bool = False
    log_level: str = "INFO"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    google_api_key = os.getenv("GOOGLE_API_KEY", "")
    database_url = os.getenv("DATABASE_URL", "")
    places_provider = os.getenv("PLACES_PROVIDER", "auto").strip().lower() or "auto"
    if places_provider not in PROVIDER_MODES:
        raise ConfigError(
            f"PLACES_PROVIDER must be one of {sorted(PROVIDER_MODES)}, got {places_provider!r}"
        )

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not google_api_key and places_provider != "fallback":
        logger.warning("GOOGLE_API_KEY is not configured; Google Places requests are unavailable.")

    return Settings(
        google_api_key=google_api_key,
        database_url=database_url,
        places_provider=places_provider,
        worker_port=int(os.getenv("WORKER_PORT", "9000")),
        max_pages=int(os.getenv("WORKER_MAX_PAGES", "25")),
        page_size=int(os.getenv("PLACES_PAGE_SIZE", "20")),
        search_concurrency=int(os.getenv("SEARCH_CONCURRENCY", "2")),
        enrich_concurrency=int(os.getenv("ENRICH_CONCURRENCY", "5")),
        score_concurrency=int(os.getenv("SCORE_CONCURRENCY", "1")),
        retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
        retry_base_delay=float(os.getenv("RETRY_BASE_DELAY", "1.0")),
        page_token_delay=float(os.getenv("PAGE_TOKEN_DELAY", "2.0")),
        detail_request_delay=float(os.getenv("DETAIL_REQUEST_DELAY", "0.1")),
        queue_poll_interval=float(os.getenv("QUEUE_POLL_INTERVAL", "1.0")),
        stale_job_timeout=int(os.getenv("STALE_JOB_TIMEOUT", "300")),
        db_pool_min=int(os.getenv("DB_POOL_MIN", "1")),
        db_pool_max=int(os.getenv("DB_POOL_MAX", "10")),
        enrich_scan_websites=_env_bool("ENRICH_SCAN_WEBSITES"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
