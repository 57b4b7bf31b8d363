"""Durable job queues connecting the pipeline stages.

Delivery is at-least-once: a job claimed by a worker that dies stays ``active``
until :meth:`PostgresJobQueue.requeue_stale` hands it back to ``waiting``.
Long-running handlers call ``touch`` to keep their claim fresh.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from psycopg2 import extras

from leadflow.core.db import Database

logger = logging.getLogger(__name__)

SEARCH_QUEUE = "search"
ENRICH_QUEUE = "enrich"
SCORE_QUEUE = "score"


@dataclass
class QueuedJob:
    id: str
    queue: str
    payload: Dict[str, Any]
    attempts: int = 1


_ENQUEUE = """
INSERT INTO job_queue (queue, payload, status)
VALUES (%(queue)s, %(payload)s, 'waiting')
RETURNING id
"""

_CLAIM = """
UPDATE job_queue SET
    status = 'active',
    attempts = attempts + 1,
    locked_at = NOW(),
    updated_at = NOW()
WHERE id = (
    SELECT id FROM job_queue
    WHERE queue = %(queue)s AND status = 'waiting'
    ORDER BY id
    LIMIT 1
    FOR UPDATE SKIP LOCKED
)
RETURNING id, payload, attempts
"""

_COMPLETE = """
UPDATE job_queue SET status = 'completed', result = %(result)s, locked_at = NULL, updated_at = NOW()
WHERE id = %(id)s
"""

_FAIL = """
UPDATE job_queue SET status = 'failed', error_text = %(error)s, locked_at = NULL, updated_at = NOW()
WHERE id = %(id)s
"""

_REQUEUE_STALE = """
UPDATE job_queue SET status = 'waiting', locked_at = NULL, updated_at = NOW()
WHERE queue = %(queue)s AND status = 'active' AND locked_at < NOW() - (%(timeout)s * INTERVAL '1 second')
"""

_TOUCH = """
UPDATE job_queue SET locked_at = NOW(), updated_at = NOW()
WHERE id = %(id)s AND status = 'active'
"""

_RETRY_FAILED = """
UPDATE job_queue SET status = 'waiting', error_text = NULL, updated_at = NOW()
WHERE queue = %(queue)s AND status = 'failed'
"""


class PostgresJobQueue:
    """Queue stored in the ``job_queue`` table, claimed with SKIP LOCKED."""

    def __init__(self, database: Database, name: str) -> None:
        self.database = database
        self.name = name

    def enqueue(self, payload: Dict[str, Any]) -> str:
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_ENQUEUE, {"queue": self.name, "payload": extras.Json(payload)})
                job_id = cur.fetchone()[0]
        logger.debug("Enqueued job %s on %s", job_id, self.name)
        return str(job_id)

    def claim(self) -> Optional[QueuedJob]:
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_CLAIM, {"queue": self.name})
                row = cur.fetchone()
        if not row:
            return None
        job_id, payload, attempts = row
        return QueuedJob(id=str(job_id), queue=self.name, payload=payload, attempts=attempts)

    def complete(self, job: QueuedJob, result: Optional[Dict[str, Any]] = None) -> None:
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_COMPLETE, {"id": job.id, "result": extras.Json(result or {})})

    def fail(self, job: QueuedJob, error: str) -> None:
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_FAIL, {"id": job.id, "error": error[:2000]})

    def touch(self, job_id: str) -> None:
        """Refresh the claim on a long-running job so it is not treated as stale."""
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_TOUCH, {"id": job_id})

    def requeue_stale(self, timeout_seconds: int) -> int:
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_REQUEUE_STALE, {"queue": self.name, "timeout": timeout_seconds})
                count = cur.rowcount
        if count:
            logger.warning("Re-queued %s stale jobs on %s", count, self.name)
        return count

    def retry_failed(self) -> int:
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_RETRY_FAILED, {"queue": self.name})
                return cur.rowcount


@dataclass
class InMemoryQueue:
    """Thread-safe in-process queue with the same interface, for local runs."""

    name: str
    waiting: Deque[QueuedJob] = field(default_factory=deque)
    completed: List[QueuedJob] = field(default_factory=list)
    failed: List[QueuedJob] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    touched: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def enqueue(self, payload: Dict[str, Any]) -> str:
        with self._lock:
            job = QueuedJob(id=f"{self.name}-{next(self._ids)}", queue=self.name, payload=payload, attempts=0)
            self.waiting.append(job)
        return job.id

    def claim(self) -> Optional[QueuedJob]:
        with self._lock:
            if not self.waiting:
                return None
            job = self.waiting.popleft()
            job.attempts += 1
            return job

    def complete(self, job: QueuedJob, result: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self.completed.append(job)

    def fail(self, job: QueuedJob, error: str) -> None:
        with self._lock:
            self.failed.append(job)
            self.errors[job.id] = error

    def touch(self, job_id: str) -> None:
        with self._lock:
            self.touched.append(job_id)

    def requeue_stale(self, timeout_seconds: int) -> int:
        return 0

    def retry_failed(self) -> int:
        with self._lock:
            count = len(self.failed)
            self.waiting.extend(self.failed)
            self.failed.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self.waiting)
