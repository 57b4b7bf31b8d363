"""Enrichment stage: derive signals from a candidate and forward it to scoring."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from leadflow.core.context import PipelineContext
from leadflow.core.errors import EnrichmentError
from leadflow.models import Candidate, Signal

logger = logging.getLogger(__name__)

PLACES_SOURCE = "google_places"
WEBSITE_SOURCE = "website_scan"
HIGH_ENGAGEMENT_REVIEWS = 100

WebsiteScan = Callable[[str], Dict[str, Any]]


def _website_signals(scan: Dict[str, Any]) -> List[Signal]:
    signals: List[Signal] = []
    booking = scan.get("booking")
    if booking:
        signals.append(Signal("has_online_booking", True, 0.8, WEBSITE_SOURCE, evidence_url=booking.get("evidence_url")))
    chat = scan.get("chat")
    if chat:
        signals.append(Signal("has_chat_widget", True, 0.9, WEBSITE_SOURCE, evidence_url=chat.get("evidence_url")))
    if scan.get("contact_form_url"):
        signals.append(Signal("has_contact_form", True, 0.9, WEBSITE_SOURCE, evidence_url=scan["contact_form_url"]))
    if scan.get("socials"):
        signals.append(Signal("social_profiles", scan["socials"], 0.9, WEBSITE_SOURCE, evidence_url=scan.get("website")))
    return signals


def derive_signals(candidate: Candidate, signals: List[Signal], scan_website: Optional[WebsiteScan] = None) -> List[Signal]:
    """Append every signal derivable from ``candidate`` to ``signals``.

    Places-derived signals are appended before the website scan runs, so a
    failing scan (raised as ``EnrichmentError``) leaves all of them in place.
    """
    if candidate.website:
        signals.append(Signal("has_website", True, 1.0, PLACES_SOURCE))

    if candidate.rating is not None and candidate.review_count:
        signals.append(Signal("google_rating", candidate.rating, 1.0, PLACES_SOURCE))
        signals.append(Signal("review_count", candidate.review_count, 1.0, PLACES_SOURCE))
        if candidate.review_count > HIGH_ENGAGEMENT_REVIEWS:
            signals.append(Signal("high_customer_engagement", True, 0.9, PLACES_SOURCE))

    if candidate.opening_hours is not None:
        signals.append(Signal("has_business_hours", True, 1.0, PLACES_SOURCE))
        open_now = candidate.opening_hours.get("open_now")
        if open_now is not None:
            signals.append(Signal("currently_open", bool(open_now), 1.0, PLACES_SOURCE))

    if candidate.phone:
        signals.append(Signal("has_phone", True, 1.0, PLACES_SOURCE))

    if candidate.types:
        signals.append(Signal("business_types", ",".join(candidate.types), 1.0, PLACES_SOURCE))

    if candidate.website and scan_website is not None:
        try:
            scan = scan_website(candidate.website)
        except Exception as exc:  # noqa: BLE001
            raise EnrichmentError(f"Website scan failed for {candidate.website}: {exc}") from exc
        signals.extend(_website_signals(scan))

    return signals


def run_enrich_job(context: PipelineContext, payload: Dict[str, Any], *, job_id: Optional[str] = None) -> Dict[str, Any]:
    """Enrichment stage entry point; the candidate is always forwarded to scoring."""
    raw_candidate = payload.get("candidate") or {}
    search_id = payload.get("searchId")
    name = raw_candidate.get("name")
    logger.info("Starting enrichment for %s (search %s)", name, search_id)

    signals: List[Signal] = []
    try:
        derive_signals(Candidate.from_place(raw_candidate), signals, context.scan_website)
    except Exception as exc:  # noqa: BLE001
        logger.error("Enrichment failed for %s: %s; forwarding %d signals", name, exc, len(signals))

    score_payload: Dict[str, Any] = {
        "business": raw_candidate,
        "searchId": search_id,
        "dsl": payload.get("dsl"),
        "signals": [signal.to_dict() for signal in signals],
    }
    if payload.get("placeId"):
        score_payload["placeId"] = payload["placeId"]
    context.score_queue.enqueue(score_payload)

    logger.info("Enrichment completed for %s: %d signals", name, len(signals))
    return {"signals": len(signals)}
