"""Search stage: page through the place provider and hand candidates to enrichment."""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, List, Optional

from leadflow.core.context import PipelineContext
from leadflow.models import Candidate, LeadQuery, ProgressEvent, SearchJobStatus
from leadflow.vendors import fallback

logger = logging.getLogger(__name__)


def build_query_text(dsl: LeadQuery) -> str:
    return f"{dsl.vertical_query} in {dsl.geo.city}, {dsl.geo.state}"


def max_pages_for(target: int, page_size: int, cap: Optional[int] = None) -> int:
    pages = max(1, math.ceil(target / page_size))
    if cap is not None:
        pages = min(pages, max(1, cap))
    return pages


def submit_search(
    context: PipelineContext,
    dsl_payload: Dict[str, Any],
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Validate a DSL payload, record a queued search job and enqueue it.

    Raises ``pydantic.ValidationError`` when the payload is not a valid query.
    """
    dsl = LeadQuery.model_validate(dsl_payload)
    search_id = str(uuid.uuid4())
    dsl_dict = dsl.model_dump(exclude_none=True)

    context.store.create_search_job(search_id, dsl_dict)
    job_payload: Dict[str, Any] = {"dsl": dsl_dict, "searchId": search_id}
    if metadata:
        job_payload["metadata"] = metadata
    context.search_queue.enqueue(job_payload)
    logger.info("Queued search job %s for %s", search_id, build_query_text(dsl))
    return search_id


class SearchRun:
    """State of a single search job execution."""

    def __init__(
        self,
        context: PipelineContext,
        search_id: str,
        dsl: LeadQuery,
        dsl_payload: Dict[str, Any],
        job_id: Optional[str] = None,
    ) -> None:
        self.context = context
        self.job_id = job_id
        self.settings = context.settings
        self.search_id = search_id
        self.dsl = dsl
        self.dsl_payload = dsl_payload
        self.query = build_query_text(dsl)
        self.target = dsl.target
        self.max_pages = max_pages_for(self.target, self.settings.page_size, self.settings.max_pages)
        self.found = 0
        self.processed = 0
        self.pages_fetched = 0
        self.cancelled = False

    # ---------- Events ----------

    def emit(self, event_type: str, status: str, message: str, total: int, leads: Optional[List[Dict[str, Any]]] = None) -> None:
        event = ProgressEvent(
            type=event_type,
            status=status,
            message=message,
            processed=self.processed,
            total=total,
            leads=leads,
        )
        self.context.events.publish(self.search_id, event)

    def _save_progress(self) -> None:
        self.context.store.update_search_job(self.search_id, processed=self.processed, total_found=self.found)
        if self.job_id:
            self.context.search_queue.touch(self.job_id)

    def _is_cancelled(self) -> bool:
        job = self.context.store.get_search_job(self.search_id)
        return bool(job) and job.get("status") == SearchJobStatus.CANCELLED.value

    # ---------- Candidates ----------

    def forward(self, candidate: Dict[str, Any], place_id: Optional[str]) -> None:
        payload: Dict[str, Any] = {"candidate": candidate, "searchId": self.search_id, "dsl": self.dsl_payload}
        if place_id:
            payload["placeId"] = place_id
        self.context.enrich_queue.enqueue(payload)

        self.found += 1
        self.processed += 1
        self.emit(
            "job:progress",
            "processing",
            f"Found {self.found} businesses, enriching data...",
            total=self.target,
            leads=[candidate],
        )

    def _process_place(self, place_id: str) -> None:
        provider = self.context.provider
        try:
            details = self.context.retry.call(
                lambda: provider.place_details(place_id),
                description=f"place details {place_id}",
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to fetch place details for %s: %s", place_id, exc)
            self.processed += 1
            return

        if Candidate.from_place(details).permanently_closed:
            logger.debug("Skipping permanently closed business %s", place_id)
            return

        self.forward(details, place_id)
        self.context.sleep(self.settings.detail_request_delay)

    def run_fallback(self) -> None:
        logger.warning("Search %s running in fallback mode; candidates are synthetic", self.search_id)
        for candidate in fallback.generate_candidates(
            self.dsl.vertical_query, self.dsl.geo.city, self.dsl.geo.state, self.target
        ):
            self.forward(candidate, candidate.get("place_id"))

    def run_live(self) -> None:
        provider = self.context.provider
        page_token: Optional[str] = None

        for page in range(self.max_pages):
            if self._is_cancelled():
                logger.info("Search %s cancelled before page %d", self.search_id, page + 1)
                self.cancelled = True
                break

            logger.debug("Fetching page %d for %s (token=%s)", page + 1, self.query, bool(page_token))
            try:
                page_data = self.context.retry.call(
                    lambda token=page_token: provider.text_search(self.query, token),
                    description=f"text search page {page + 1}",
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to fetch search page %d for %s: %s", page + 1, self.search_id, exc)
                continue

            self.pages_fetched += 1
            if not page_data.results:
                logger.info("No more results from Google Places for %s", self.search_id)
                break

            for place in page_data.results:
                if self.found >= self.target:
                    break
                self._process_place(place.place_id)
            self._save_progress()

            if self.found >= self.target:
                break

            page_token = page_data.next_page_token
            if not page_token:
                logger.info("No more pages available for %s", self.search_id)
                break

            # Google rejects a next_page_token that is reused too quickly.
            self.context.sleep(self.settings.page_token_delay)

    def execute(self) -> Dict[str, Any]:
        self.emit(
            "job:progress",
            "fetching",
            f"Searching for {self.query}",
            total=self.target,
        )

        live = self.context.provider is not None
        if live:
            self.run_live()
        else:
            self.run_fallback()

        if not self.cancelled and self._is_cancelled():
            self.cancelled = True

        summary = {
            "total_leads": self.found,
            "total_processed": self.processed,
            "pages_fetched": self.pages_fetched,
            "sources_queried": ["google_places" if live else fallback.SOURCE],
        }
        if self.cancelled:
            status, message = SearchJobStatus.CANCELLED, f"Search cancelled. Found {self.found} businesses."
        else:
            status, message = SearchJobStatus.COMPLETED, f"Search completed. Found {self.found} businesses."

        self.context.store.update_search_job(
            self.search_id,
            status=status,
            processed=self.processed,
            total_found=self.found,
            summary=summary,
        )
        self.emit("job:complete", status.value, message, total=self.found)
        logger.info(
            "Search job %s %s: found=%d processed=%d", self.search_id, status.value, self.found, self.processed
        )
        return summary


def run_search_job(context: PipelineContext, payload: Dict[str, Any], *, job_id: Optional[str] = None) -> Dict[str, Any]:
    """Search stage entry point for one queued search job."""
    search_id = payload.get("searchId") or job_id
    if not search_id:
        raise ValueError("search payload must carry a searchId")

    dsl_payload = payload.get("dsl") or {}
    dsl = LeadQuery.model_validate(dsl_payload)
    logger.info("Starting search job %s: %s", search_id, dsl_payload)

    if not context.store.start_search_job(search_id):
        logger.info("Search job %s is cancelled, completed or unknown; skipping", search_id)
        return {"total_leads": 0, "total_processed": 0, "pages_fetched": 0, "sources_queried": []}

    run = SearchRun(context, search_id, dsl, dsl_payload, job_id=job_id)
    try:
        return run.execute()
    except Exception as exc:
        logger.exception("Search job %s failed: %s", search_id, exc)
        context.store.update_search_job(
            search_id,
            status=SearchJobStatus.FAILED,
            processed=run.processed,
            total_found=run.found,
            error_text=str(exc),
        )
        run.emit("job:failed", SearchJobStatus.FAILED.value, f"Search failed: {exc}", total=run.found)
        raise
