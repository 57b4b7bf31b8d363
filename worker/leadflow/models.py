"""Core data models shared by the lead discovery pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

DEFAULT_TARGET_RESULTS = 50


class SearchJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {SearchJobStatus.COMPLETED, SearchJobStatus.FAILED, SearchJobStatus.CANCELLED}


# ---------- Structured query (DSL) ----------

Scalar = Union[bool, float, int, str]


class Geo(BaseModel):
    city: str = Field(min_length=1)
    state: str = Field(min_length=2, max_length=2)
    radius_km: Optional[int] = Field(default=None, gt=0, le=200)


class ResultSize(BaseModel):
    target: int = Field(gt=0, le=500)


class Constraints(BaseModel):
    must: Optional[List[Dict[str, Scalar]]] = None
    optional: Optional[List[Dict[str, Scalar]]] = None


class OutputOptions(BaseModel):
    contract: Literal["csv", "json"]


class NotifyOptions(BaseModel):
    on_complete: bool


class LeadQuery(BaseModel):
    """Validated structured query driving a search job."""

    version: Literal[1] = 1
    vertical: Literal["dentist", "law_firm", "contractor", "hvac", "roofing", "generic"]
    geo: Geo
    constraints: Optional[Constraints] = None
    exclusions: Optional[List[Union[str, Dict[str, Any]]]] = None
    result_size: Optional[ResultSize] = None
    sort_by: Optional[Literal["score_desc"]] = None
    lead_profile: Optional[str] = None
    output: Optional[OutputOptions] = None
    notify: Optional[NotifyOptions] = None
    compliance_flags: Optional[List[str]] = None

    @property
    def target(self) -> int:
        return self.result_size.target if self.result_size else DEFAULT_TARGET_RESULTS

    @property
    def vertical_query(self) -> str:
        if self.vertical == "generic":
            return "businesses"
        return self.vertical.replace("_", " ")


# ---------- Pipeline records ----------


@dataclass(slots=True)
class Candidate:
    """Typed view over a provider detail result travelling through the queues."""

    name: str
    formatted_address: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    opening_hours: Optional[Dict[str, Any]] = None
    types: List[str] = field(default_factory=list)
    business_status: Optional[str] = None
    place_id: Optional[str] = None

    @classmethod
    def from_place(cls, result: Dict[str, Any]) -> "Candidate":
        return cls(
            name=(result.get("name") or "").strip(),
            formatted_address=result.get("formatted_address") or None,
            website=result.get("website") or None,
            phone=result.get("formatted_phone_number") or None,
            rating=result.get("rating"),
            review_count=result.get("user_ratings_total"),
            opening_hours=result.get("opening_hours"),
            types=list(result.get("types") or []),
            business_status=result.get("business_status"),
            place_id=result.get("place_id"),
        )

    @property
    def permanently_closed(self) -> bool:
        return self.business_status == "CLOSED_PERMANENTLY"


@dataclass(slots=True)
class Signal:
    """Typed, confidence-scored observation about a business."""

    type: str
    value: Any
    confidence: float
    source: str
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    evidence_url: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["detected_at"] = self.detected_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        detected_at = data.get("detected_at")
        if isinstance(detected_at, str):
            detected_at = datetime.fromisoformat(detected_at)
        return cls(
            type=data["type"],
            value=data.get("value"),
            confidence=float(data.get("confidence", 1.0)),
            source=data.get("source", "unknown"),
            detected_at=detected_at or datetime.now(timezone.utc),
            evidence_url=data.get("evidence_url"),
        )


@dataclass(slots=True)
class Address:
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    formatted: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)


@dataclass(frozen=True)
class Subscores:
    icp: int
    pain: int
    reachability: int
    compliance_risk: int

    @property
    def total(self) -> int:
        raw = self.icp + self.pain + self.reachability - self.compliance_risk
        return max(0, min(100, raw))

    def to_dict(self) -> Dict[str, int]:
        return {
            "ICP": self.icp,
            "Pain": self.pain,
            "Reachability": self.reachability,
            "ComplianceRisk": self.compliance_risk,
        }


@dataclass(slots=True)
class LeadRanking:
    search_job_id: Optional[str]
    business_id: str
    score: int
    subscores: Dict[str, int]
    rank: int = 0


@dataclass(slots=True)
class ProgressEvent:
    """Progress/completion event published by a stage for the SSE bridge."""

    type: str
    status: str
    message: str
    processed: int
    total: int
    leads: Optional[List[Dict[str, Any]]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if self.leads is None:
            payload.pop("leads")
        return payload
