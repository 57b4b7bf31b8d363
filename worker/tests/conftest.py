import sys
from pathlib import Path

import pytest

# Ensure the `leadflow` package is importable when running pytest from the repo root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from leadflow.core.config import Settings  # noqa: E402
from leadflow.core.context import PipelineContext  # noqa: E402
from leadflow.core.events import InMemoryEventChannel  # noqa: E402
from leadflow.core.queue import InMemoryQueue  # noqa: E402
from leadflow.core.retry import RetryPolicy  # noqa: E402
from leadflow.core.store import MemoryLeadStore  # noqa: E402
from leadflow.vendors.google_places import TextSearchPage  # noqa: E402


class FakeProvider:
    """Place provider serving a finite, scripted sequence of pages."""

    def __init__(self, pages, details=None, text_failures=0, detail_failures=None):
        # pages: {page_token_or_None: {"results": [...], "next_page_token": ...}}
        self.pages = pages
        self.details = details or {}
        self.text_failures = text_failures
        self.detail_failures = dict(detail_failures or {})
        self.text_calls = []
        self.detail_calls = []

    def text_search(self, query, page_token=None):
        self.text_calls.append((query, page_token))
        if self.text_failures:
            self.text_failures -= 1
            raise RuntimeError("temporary outage")
        page = self.pages[page_token]
        return TextSearchPage.model_validate({"status": "OK", **page})

    def place_details(self, place_id):
        self.detail_calls.append(place_id)
        if self.detail_failures.get(place_id):
            self.detail_failures[place_id] -= 1
            raise RuntimeError(f"details unavailable for {place_id}")
        if place_id in self.details:
            return dict(self.details[place_id])
        return {
            "place_id": place_id,
            "name": f"Company {place_id}",
            "formatted_address": "1 Main St, Columbia, SC 29201",
            "website": f"https://{place_id}.example.com",
            "formatted_phone_number": "(803) 555-0100",
            "rating": 4.5,
            "user_ratings_total": 12,
        }


def make_settings(**overrides):
    values = {
        "google_api_key": "",
        "database_url": "",
        "places_provider": "fallback",
        "retry_base_delay": 0.0,
        "page_token_delay": 0.0,
        "detail_request_delay": 0.0,
        "queue_poll_interval": 0.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_context(sleeps):
    def _make(provider=None, store=None, scan_website=None, **settings_overrides):
        return PipelineContext(
            settings=make_settings(**settings_overrides),
            store=store or MemoryLeadStore(),
            search_queue=InMemoryQueue("search"),
            enrich_queue=InMemoryQueue("enrich"),
            score_queue=InMemoryQueue("score"),
            events=InMemoryEventChannel(),
            provider=provider,
            retry=RetryPolicy(max_retries=3, base_delay=1.0, sleep=sleeps.append),
            scan_website=scan_website,
            sleep=sleeps.append,
        )

    return _make


def dsl(vertical="dentist", city="Columbia", state="SC", target=20):
    return {"vertical": vertical, "geo": {"city": city, "state": state}, "result_size": {"target": target}}
