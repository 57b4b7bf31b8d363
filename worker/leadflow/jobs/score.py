"""Scoring stage: dedupe a candidate, score it and persist a lead ranking."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from leadflow.core.context import PipelineContext
from leadflow.etl.transform import to_business_row
from leadflow.models import Candidate, LeadRanking, Signal, Subscores

logger = logging.getLogger(__name__)

ICP_BASELINE = 20
PAIN_WITH_WEBSITE = 10
PAIN_WITHOUT_WEBSITE = 20
REACHABILITY_WITH_PHONE = 15
REACHABILITY_WITHOUT_PHONE = 5


def compute_subscores(candidate: Candidate) -> Subscores:
    # ComplianceRisk stays 0 until compliance signals exist.
    return Subscores(
        icp=ICP_BASELINE,
        pain=PAIN_WITH_WEBSITE if candidate.website else PAIN_WITHOUT_WEBSITE,
        reachability=REACHABILITY_WITH_PHONE if candidate.phone else REACHABILITY_WITHOUT_PHONE,
        compliance_risk=0,
    )


def run_score_job(context: PipelineContext, payload: Dict[str, Any], *, job_id: Optional[str] = None) -> Dict[str, Any]:
    """Scoring stage entry point.

    Store failures surface as ``PersistenceError`` and fail the queue job.
    """
    raw_business = payload.get("business") or {}
    candidate = Candidate.from_place(raw_business)
    if not candidate.name:
        raise ValueError("score payload is missing a business name")

    search_id = payload.get("searchId")
    vertical = (payload.get("dsl") or {}).get("vertical")
    signals = [Signal.from_dict(item) for item in payload.get("signals") or []]

    business_id = context.store.resolve_business(to_business_row(candidate, vertical))
    context.store.insert_signals(business_id, signals)

    subscores = compute_subscores(candidate)
    ranking = LeadRanking(
        search_job_id=search_id,
        business_id=business_id,
        score=subscores.total,
        subscores=subscores.to_dict(),
    )
    lead_id = context.store.insert_lead_ranking(ranking)

    logger.info("Scored %s: %d (business %s, search %s)", candidate.name, ranking.score, business_id, search_id)
    return {"lead_id": lead_id, "business_id": business_id, "score": ranking.score}
