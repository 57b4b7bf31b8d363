"""CLI job that runs search, enrichment and scoring in-process for one query."""

import argparse
import dataclasses
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from leadflow.core.config import Settings, get_settings
from leadflow.core.context import build_local_context
from leadflow.jobs.search import submit_search
from leadflow.jobs.worker import drain_pipeline

logger = logging.getLogger(__name__)

VERTICALS = ("dentist", "law_firm", "contractor", "hvac", "roofing", "generic")


def _log_event(search_id: str, event: Dict[str, Any]) -> None:
    logger.info("[%s] %s %s/%s - %s", search_id[:8], event["status"], event["processed"], event["total"], event["message"])


def run_query_job(
    *,
    vertical: str,
    city: str,
    state: str,
    target: int,
    dry_run: bool = False,
    settings: Optional[Settings] = None,
) -> Tuple[str, List[Dict[str, Any]]]:
    """Run the whole pipeline for one query and return the ranked leads."""
    context = build_local_context(settings, dry_run=dry_run)
    try:
        context.events.subscribe(_log_event)
        dsl = {
            "vertical": vertical,
            "geo": {"city": city, "state": state.upper()},
            "result_size": {"target": target},
        }
        search_id = submit_search(context, dsl, metadata={"source": "cli"})
        counts = drain_pipeline(context)
        logger.info("Completed run %s: %s", search_id, counts)
        leads = context.store.list_lead_rankings(search_id)
    finally:
        context.close()
    return search_id, leads


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Discover, enrich and score leads for one query")
    parser.add_argument("--vertical", required=True, choices=VERTICALS, help="Business vertical to search")
    parser.add_argument("--city", required=True, help="City to search in")
    parser.add_argument("--state", required=True, help="Two-letter state code")
    parser.add_argument("--target", type=int, default=20, help="Number of leads to collect")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Keep results in memory instead of writing to DATABASE_URL",
    )
    parser.add_argument(
        "--fallback",
        action="store_true",
        help="Use the deterministic candidate generator instead of Google Places",
    )
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    settings = get_settings()
    if args.fallback:
        settings = dataclasses.replace(settings, places_provider="fallback")
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")

    search_id, leads = run_query_job(
        vertical=args.vertical,
        city=args.city,
        state=args.state,
        target=args.target,
        dry_run=args.dry_run,
        settings=settings,
    )
    print(json.dumps({"search_id": search_id, "leads": leads}, indent=2, default=str))


if __name__ == "__main__":
    main()
