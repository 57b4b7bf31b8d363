"""Deterministic candidate generator used when Google Places is not configured.

The generator lets the whole pipeline run end to end without credentials. Every
field is derived from the candidate's ordinal so repeated runs produce the same
businesses.
"""

from typing import Any, Dict, Iterator

SOURCE = "fallback_generator"


def synthesize_candidate(vertical_query: str, city: str, state: str, n: int) -> Dict[str, Any]:
    """Build the ``n``-th (1-based) synthetic place detail result."""
    if n < 1:
        raise ValueError("candidate ordinal starts at 1")

    candidate: Dict[str, Any] = {
        "place_id": f"fallback-{n}",
        "name": f"{vertical_query} Business {n}",
        "formatted_address": f"{100 + n - 1} Main St, {city}, {state}",
        "formatted_phone_number": f"+1 (555) {100 + (n * 37) % 900:03d}-{1000 + (n * 113) % 9000:04d}",
        "rating": round(3.5 + (n % 16) / 10, 1),
        "user_ratings_total": (n * 37) % 500,
        "types": [vertical_query.replace(" ", "_"), "establishment"],
        "business_status": "OPERATIONAL",
    }
    # Two of every three synthetic businesses have a website.
    if n % 3:
        candidate["website"] = f"https://business{n}.example.com"
    return candidate


def generate_candidates(vertical_query: str, city: str, state: str, count: int) -> Iterator[Dict[str, Any]]:
    for n in range(1, count + 1):
        yield synthesize_candidate(vertical_query, city, state, n)
