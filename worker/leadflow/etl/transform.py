"""Utilities for transforming provider results into database rows."""

import logging
from typing import Any, Dict, Iterable, Optional

from leadflow.models import Address, Candidate

logger = logging.getLogger(__name__)

_IGNORE_TYPES = {"point_of_interest", "establishment", "political", "premise"}


def parse_address(formatted: Optional[str]) -> Optional[Address]:
    """Split a single formatted address string into structured parts.

    ``"Street, City, ST ZIP[, Country]"`` fills every field, ``"Street, City"``
    fills street and city only, anything shorter keeps just the original text.
    """
    if not formatted:
        return None

    parts = [part.strip() for part in formatted.split(",")]
    address = Address(formatted=formatted)
    if len(parts) >= 3:
        address.street = parts[0]
        address.city = parts[1]
        state_zip = parts[2].split()
        address.state = state_zip[0] if state_zip else None
        address.zip = state_zip[1] if len(state_zip) > 1 else None
        if len(parts) > 3 and parts[3]:
            address.country = parts[3]
    elif len(parts) == 2:
        address.street = parts[0]
        address.city = parts[1]
    return address


def _extract_primary_type(types: Iterable[str]) -> Optional[str]:
    for type_name in types or []:
        if type_name not in _IGNORE_TYPES:
            return type_name
    return None


def to_business_row(candidate: Candidate, vertical: Optional[str] = None) -> Dict[str, Any]:
    address = parse_address(candidate.formatted_address)
    return {
        "name": candidate.name,
        "vertical": vertical or _extract_primary_type(candidate.types),
        "website": candidate.website,
        "phone": candidate.phone,
        "address": address.to_dict() if address else None,
    }
