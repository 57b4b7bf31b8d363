"""Client utilities for the Google Places API."""

import logging
from typing import Any, Dict, List, Optional

import pydantic
import requests
from pydantic import BaseModel, ConfigDict

from leadflow.core.errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://maps.googleapis.com/maps/api/place"
_OK_STATUSES = {"OK", "ZERO_RESULTS"}
DETAIL_FIELDS = (
    "place_id,name,formatted_address,website,formatted_phone_number,rating,"
    "user_ratings_total,opening_hours,types,business_status"
)


class GooglePlacesError(ProviderError):
    """Raised when the Places API returns a non-successful response."""


class PlaceSummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    place_id: str
    name: Optional[str] = None
    formatted_address: Optional[str] = None
    rating: Optional[float] = None
    user_ratings_total: Optional[int] = None
    types: Optional[List[str]] = None


class TextSearchPage(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str
    results: List[PlaceSummary] = []
    next_page_token: Optional[str] = None


class OpeningHours(BaseModel):
    model_config = ConfigDict(extra="allow")

    open_now: Optional[bool] = None
    weekday_text: Optional[List[str]] = None


class PlaceDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    place_id: Optional[str] = None
    formatted_address: Optional[str] = None
    website: Optional[str] = None
    formatted_phone_number: Optional[str] = None
    rating: Optional[float] = None
    user_ratings_total: Optional[int] = None
    opening_hours: Optional[OpeningHours] = None
    types: Optional[List[str]] = None
    business_status: Optional[str] = None


def _get(endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
    try:
        response = _SESSION.get(f"{_BASE_URL}/{endpoint}/json", params=params, timeout=10)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise GooglePlacesError(f"{endpoint} request failed: {exc}") from exc

    status = payload.get("status")
    if status not in _OK_STATUSES:
        logger.error("%s failed: status=%s, error_message=%s", endpoint, status, payload.get("error_message"))
        raise GooglePlacesError(payload.get("error_message") or status)
    return payload


def text_search(query: str, api_key: str, pagetoken: Optional[str] = None) -> TextSearchPage:
    params = {"query": query, "key": api_key, "language": "en"}
    if pagetoken:
        params["pagetoken"] = pagetoken
    payload = _get("textsearch", params)
    try:
        return TextSearchPage.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Unexpected textsearch payload: {exc}") from exc


def place_details(place_id: str, api_key: str) -> Dict[str, Any]:
    params = {"place_id": place_id, "key": api_key, "fields": DETAIL_FIELDS, "language": "en"}
    payload = _get("details", params)
    try:
        details = PlaceDetails.model_validate(payload.get("result") or {})
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Unexpected details payload for {place_id}: {exc}") from exc
    result = details.model_dump(exclude_none=True)
    result.setdefault("place_id", place_id)
    return result


class GooglePlacesProvider:
    """Binds an API key to the text search and details calls."""

    source = "google_places"

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise ValueError("api_key is required for GooglePlacesProvider")
        self.api_key = api_key

    def text_search(self, query: str, page_token: Optional[str] = None) -> TextSearchPage:
        return text_search(query, self.api_key, pagetoken=page_token)

    def place_details(self, place_id: str) -> Dict[str, Any]:
        return place_details(place_id, self.api_key)
