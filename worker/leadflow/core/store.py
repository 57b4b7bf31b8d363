"""Read/write contract for search jobs, businesses, signals and lead rankings."""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

import psycopg2
from psycopg2 import extras

from leadflow.core.db import Database
from leadflow.core.errors import PersistenceError
from leadflow.models import LeadRanking, SearchJobStatus, Signal

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (SearchJobStatus.QUEUED.value, SearchJobStatus.RUNNING.value)
# Running and failed jobs may be redelivered by stale requeue or a replay.
_STARTABLE_STATUSES = _ACTIVE_STATUSES + (SearchJobStatus.FAILED.value,)

_INSERT_SEARCH_JOB = """
INSERT INTO search_job (id, dsl_json, status, processed, total_found)
VALUES (%(id)s, %(dsl)s, %(status)s, 0, 0)
"""

_SELECT_SEARCH_JOB = """
SELECT id, status, processed, total_found, error_text, summary_stats
FROM search_job
WHERE id = %(id)s
"""

_UPDATE_SEARCH_JOB = """
UPDATE search_job SET
    status = COALESCE(%(status)s, status),
    processed = COALESCE(%(processed)s, processed),
    total_found = COALESCE(%(total_found)s, total_found),
    error_text = COALESCE(%(error_text)s, error_text),
    summary_stats = COALESCE(%(summary)s, summary_stats),
    updated_at = NOW()
WHERE id = %(id)s
"""

_START_SEARCH_JOB = """
UPDATE search_job SET status = 'running', error_text = NULL, updated_at = NOW()
WHERE id = %(id)s AND status IN %(startable)s
RETURNING id
"""

_CANCEL_SEARCH_JOB = """
UPDATE search_job SET status = 'cancelled', updated_at = NOW()
WHERE id = %(id)s AND status IN %(active)s
RETURNING id
"""

_FIND_BUSINESS = """
SELECT id FROM business
WHERE (website = %(website)s AND %(website)s IS NOT NULL)
   OR (name = %(name)s AND phone = %(phone)s)
LIMIT 1
"""

# Partial unique indexes on business (website) and (name, phone) turn a lost
# race into a no-op; the caller re-reads the winner's id.
_INSERT_BUSINESS = """
INSERT INTO business (id, name, vertical, website, phone, address_json)
VALUES (%(id)s, %(name)s, %(vertical)s, %(website)s, %(phone)s, %(address)s)
ON CONFLICT DO NOTHING
RETURNING id
"""

_INSERT_SIGNALS = """
INSERT INTO signal (id, business_id, type, value_json, confidence, source_key, evidence_url, detected_at)
VALUES %s
"""

_INSERT_LEAD_VIEW = """
INSERT INTO lead_view (id, search_job_id, business_id, score, subscores_json, rank)
VALUES (%(id)s, %(search_job_id)s, %(business_id)s, %(score)s, %(subscores)s, %(rank)s)
"""

_LIST_LEADS = """
SELECT
    lv.business_id,
    b.name,
    b.website,
    b.phone,
    lv.score,
    lv.subscores_json,
    ROW_NUMBER() OVER (ORDER BY lv.score DESC, lv.created_at ASC) AS rank
FROM lead_view lv
JOIN business b ON b.id = lv.business_id
WHERE lv.search_job_id = %(id)s
ORDER BY rank
"""


class LeadStore:
    """Postgres-backed store; every call borrows a pooled connection."""

    def __init__(self, database: Database) -> None:
        self.database = database

    @contextmanager
    def _writing(self, action: str) -> Iterator[Any]:
        try:
            with self.database.connection() as conn:
                with conn.cursor() as cur:
                    yield cur
        except psycopg2.Error as exc:
            logger.error("Failed to %s: %s", action, exc)
            raise PersistenceError(f"Failed to {action}: {exc}") from exc

    # ---------- Search jobs ----------

    def create_search_job(self, search_id: str, dsl: Dict[str, Any]) -> None:
        with self._writing("create search job") as cur:
            cur.execute(
                _INSERT_SEARCH_JOB,
                {"id": search_id, "dsl": extras.Json(dsl), "status": SearchJobStatus.QUEUED.value},
            )

    def get_search_job(self, search_id: str) -> Optional[Dict[str, Any]]:
        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_SELECT_SEARCH_JOB, {"id": search_id})
                row = cur.fetchone()
        return dict(row) if row else None

    def update_search_job(
        self,
        search_id: str,
        *,
        status: Optional[SearchJobStatus] = None,
        processed: Optional[int] = None,
        total_found: Optional[int] = None,
        error_text: Optional[str] = None,
        summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        params = {
            "id": search_id,
            "status": status.value if status else None,
            "processed": processed,
            "total_found": total_found,
            "error_text": error_text,
            "summary": extras.Json(summary) if summary is not None else None,
        }
        with self._writing("update search job") as cur:
            cur.execute(_UPDATE_SEARCH_JOB, params)

    def start_search_job(self, search_id: str) -> bool:
        """Move a job to ``running`` unless it was cancelled or already completed."""
        with self._writing("start search job") as cur:
            cur.execute(_START_SEARCH_JOB, {"id": search_id, "startable": _STARTABLE_STATUSES})
            return cur.fetchone() is not None

    def cancel_search_job(self, search_id: str) -> bool:
        with self._writing("cancel search job") as cur:
            cur.execute(_CANCEL_SEARCH_JOB, {"id": search_id, "active": _ACTIVE_STATUSES})
            return cur.fetchone() is not None

    # ---------- Scoring output ----------

    def resolve_business(self, row: Dict[str, Any]) -> str:
        """Return the id of the business matching ``row``, inserting it when new."""
        params = {
            "id": str(uuid.uuid4()),
            "name": row.get("name"),
            "vertical": row.get("vertical"),
            "website": row.get("website"),
            "phone": row.get("phone"),
            "address": extras.Json(row["address"]) if row.get("address") is not None else None,
        }
        with self._writing("resolve business") as cur:
            cur.execute(_FIND_BUSINESS, params)
            existing = cur.fetchone()
            if existing:
                return str(existing[0])

            cur.execute(_INSERT_BUSINESS, params)
            inserted = cur.fetchone()
            if inserted:
                logger.debug("Inserted business %s (%s)", params["name"], inserted[0])
                return str(inserted[0])

            cur.execute(_FIND_BUSINESS, params)
            winner = cur.fetchone()
            if not winner:
                raise PersistenceError(f"Business {params['name']!r} conflicted but could not be re-read")
            return str(winner[0])

    def insert_signals(self, business_id: str, signals: Iterable[Signal]) -> int:
        values = [
            (
                str(uuid.uuid4()),
                business_id,
                signal.type,
                extras.Json(signal.value),
                signal.confidence,
                signal.source,
                signal.evidence_url,
                signal.detected_at,
            )
            for signal in signals
        ]
        if not values:
            return 0
        with self._writing("insert signals") as cur:
            extras.execute_values(cur, _INSERT_SIGNALS, values)
        return len(values)

    def insert_lead_ranking(self, ranking: LeadRanking) -> str:
        lead_id = str(uuid.uuid4())
        with self._writing("insert lead ranking") as cur:
            cur.execute(
                _INSERT_LEAD_VIEW,
                {
                    "id": lead_id,
                    "search_job_id": ranking.search_job_id,
                    "business_id": ranking.business_id,
                    "score": ranking.score,
                    "subscores": extras.Json(ranking.subscores),
                    "rank": ranking.rank,
                },
            )
        return lead_id

    def list_lead_rankings(self, search_id: str) -> List[Dict[str, Any]]:
        with self.database.connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_LIST_LEADS, {"id": search_id})
                rows = cur.fetchall()
        return [dict(row) for row in rows]


class MemoryLeadStore:
    """In-process store with the same dedupe rules, used for dry runs and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.search_jobs: Dict[str, Dict[str, Any]] = {}
        self.businesses: Dict[str, Dict[str, Any]] = {}
        self.signals: List[Dict[str, Any]] = []
        self.lead_rankings: List[Dict[str, Any]] = []

    def create_search_job(self, search_id: str, dsl: Dict[str, Any]) -> None:
        with self._lock:
            self.search_jobs[search_id] = {
                "id": search_id,
                "dsl": dsl,
                "status": SearchJobStatus.QUEUED.value,
                "processed": 0,
                "total_found": 0,
                "error_text": None,
                "summary_stats": None,
            }

    def get_search_job(self, search_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self.search_jobs.get(search_id)
            return dict(job) if job else None

    def update_search_job(
        self,
        search_id: str,
        *,
        status: Optional[SearchJobStatus] = None,
        processed: Optional[int] = None,
        total_found: Optional[int] = None,
        error_text: Optional[str] = None,
        summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            job = self.search_jobs.get(search_id)
            if job is None:
                return
            updates = {
                "status": status.value if status else None,
                "processed": processed,
                "total_found": total_found,
                "error_text": error_text,
                "summary_stats": summary,
            }
            job.update({key: value for key, value in updates.items() if value is not None})

    def start_search_job(self, search_id: str) -> bool:
        with self._lock:
            job = self.search_jobs.get(search_id)
            if job is None or job["status"] not in _STARTABLE_STATUSES:
                return False
            job["status"] = SearchJobStatus.RUNNING.value
            job["error_text"] = None
            return True

    def cancel_search_job(self, search_id: str) -> bool:
        with self._lock:
            job = self.search_jobs.get(search_id)
            if job is None or job["status"] not in _ACTIVE_STATUSES:
                return False
            job["status"] = SearchJobStatus.CANCELLED.value
            return True

    def _find_business(self, row: Dict[str, Any]) -> Optional[str]:
        website, name, phone = row.get("website"), row.get("name"), row.get("phone")
        for business_id, business in self.businesses.items():
            if website is not None and business["website"] == website:
                return business_id
            # NULL phones never compare equal, matching SQL semantics.
            if phone is not None and business["name"] == name and business["phone"] == phone:
                return business_id
        return None

    def resolve_business(self, row: Dict[str, Any]) -> str:
        with self._lock:
            existing = self._find_business(row)
            if existing:
                return existing
            business_id = str(uuid.uuid4())
            self.businesses[business_id] = {
                "id": business_id,
                "name": row.get("name"),
                "vertical": row.get("vertical"),
                "website": row.get("website"),
                "phone": row.get("phone"),
                "address": row.get("address"),
            }
            return business_id

    def insert_signals(self, business_id: str, signals: Iterable[Signal]) -> int:
        rows = [{"business_id": business_id, **signal.to_dict()} for signal in signals]
        with self._lock:
            self.signals.extend(rows)
        return len(rows)

    def insert_lead_ranking(self, ranking: LeadRanking) -> str:
        lead_id = str(uuid.uuid4())
        with self._lock:
            self.lead_rankings.append(
                {
                    "id": lead_id,
                    "search_job_id": ranking.search_job_id,
                    "business_id": ranking.business_id,
                    "score": ranking.score,
                    "subscores_json": dict(ranking.subscores),
                    "rank": ranking.rank,
                }
            )
        return lead_id

    def list_lead_rankings(self, search_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [row for row in self.lead_rankings if row["search_job_id"] == search_id]
            ordered = sorted(enumerate(rows), key=lambda item: (-item[1]["score"], item[0]))
            results = []
            for rank, (_, row) in enumerate(ordered, start=1):
                business = self.businesses[row["business_id"]]
                results.append(
                    {
                        "business_id": row["business_id"],
                        "name": business["name"],
                        "website": business["website"],
                        "phone": business["phone"],
                        "score": row["score"],
                        "subscores_json": row["subscores_json"],
                        "rank": rank,
                    }
                )
            return results
