"""Pipeline context: configuration plus client handles, built once per process."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from leadflow.core.config import ConfigError, Settings, get_settings
from leadflow.core.db import Database
from leadflow.core.events import InMemoryEventChannel, PostgresEventChannel
from leadflow.core.queue import ENRICH_QUEUE, SCORE_QUEUE, SEARCH_QUEUE, InMemoryQueue, PostgresJobQueue
from leadflow.core.retry import RetryPolicy
from leadflow.core.site_scanner import SiteScanner
from leadflow.core.store import LeadStore, MemoryLeadStore
from leadflow.vendors.google_places import GooglePlacesProvider

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Everything a stage needs, passed explicitly into each stage entry point."""

    settings: Settings
    store: Any
    search_queue: Any
    enrich_queue: Any
    score_queue: Any
    events: Any
    provider: Optional[GooglePlacesProvider]
    retry: RetryPolicy
    scan_website: Optional[Callable[[str], Dict[str, Any]]] = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    database: Optional[Database] = None

    def close(self) -> None:
        if self.database is not None:
            self.database.close()


def resolve_provider(settings: Settings) -> Optional[GooglePlacesProvider]:
    """Pick the place provider; ``None`` selects the deterministic fallback generator."""
    mode = settings.places_provider
    if mode == "fallback":
        logger.info("PLACES_PROVIDER=fallback; using the deterministic candidate generator")
        return None
    if settings.google_api_key:
        return GooglePlacesProvider(settings.google_api_key)
    if mode == "google":
        raise ConfigError("GOOGLE_API_KEY is required when PLACES_PROVIDER=google")
    logger.warning("GOOGLE_API_KEY not configured; search jobs will use the fallback generator")
    return None


def scan_website(website: str) -> Dict[str, Any]:
    with SiteScanner(website) as scanner:
        return scanner.scan()


def build_retry_policy(settings: Settings, sleep: Callable[[float], None] = time.sleep) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay,
        sleep=sleep,
    )


def build_context(settings: Optional[Settings] = None) -> PipelineContext:
    """Postgres-backed context used by the worker daemon and the HTTP server."""
    settings = settings or get_settings()
    database = Database.from_settings(settings)
    return PipelineContext(
        settings=settings,
        store=LeadStore(database),
        search_queue=PostgresJobQueue(database, SEARCH_QUEUE),
        enrich_queue=PostgresJobQueue(database, ENRICH_QUEUE),
        score_queue=PostgresJobQueue(database, SCORE_QUEUE),
        events=PostgresEventChannel(database),
        provider=resolve_provider(settings),
        retry=build_retry_policy(settings),
        scan_website=scan_website if settings.enrich_scan_websites else None,
        database=database,
    )


def build_local_context(settings: Optional[Settings] = None, *, dry_run: bool = False) -> PipelineContext:
    """In-process queues and events; the store is Postgres unless ``dry_run``."""
    settings = settings or get_settings()
    database = None
    if dry_run:
        store: Any = MemoryLeadStore()
    else:
        database = Database.from_settings(settings)
        store = LeadStore(database)
    return PipelineContext(
        settings=settings,
        store=store,
        search_queue=InMemoryQueue(SEARCH_QUEUE),
        enrich_queue=InMemoryQueue(ENRICH_QUEUE),
        score_queue=InMemoryQueue(SCORE_QUEUE),
        events=InMemoryEventChannel(),
        provider=resolve_provider(settings),
        retry=build_retry_policy(settings),
        scan_website=scan_website if settings.enrich_scan_websites else None,
        database=database,
    )
