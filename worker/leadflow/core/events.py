"""Progress event channel between the stages and the SSE bridge."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Tuple

from psycopg2 import extras

from leadflow.core.db import Database
from leadflow.models import ProgressEvent

logger = logging.getLogger(__name__)

EventRecord = Tuple[int, Dict[str, Any]]

_INSERT_EVENT = """
INSERT INTO job_event (search_job_id, event_type, payload)
VALUES (%(search_job_id)s, %(event_type)s, %(payload)s)
"""

_READ_EVENTS = """
SELECT id, payload FROM job_event
WHERE search_job_id = %(search_job_id)s AND id > %(after)s
ORDER BY id
LIMIT %(limit)s
"""


class PostgresEventChannel:
    """Append-only ``job_event`` table polled by the SSE bridge."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def publish(self, search_id: str, event: ProgressEvent) -> None:
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    _INSERT_EVENT,
                    {"search_job_id": search_id, "event_type": event.type, "payload": extras.Json(event.to_dict())},
                )

    def read(self, search_id: str, after: int = 0, limit: int = 500) -> List[EventRecord]:
        with self.database.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_READ_EVENTS, {"search_job_id": search_id, "after": after, "limit": limit})
                rows = cur.fetchall()
        return [(int(event_id), payload) for event_id, payload in rows]


class InMemoryEventChannel:
    """Keeps events per search job in memory and fans them out to listeners."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._listeners: List[Callable[[str, Dict[str, Any]], None]] = []

    def subscribe(self, listener: Callable[[str, Dict[str, Any]], None]) -> None:
        self._listeners.append(listener)

    def publish(self, search_id: str, event: ProgressEvent) -> None:
        payload = event.to_dict()
        with self._lock:
            self._events[search_id].append(payload)
        for listener in self._listeners:
            listener(search_id, payload)

    def read(self, search_id: str, after: int = 0, limit: int = 500) -> List[EventRecord]:
        with self._lock:
            events = list(self._events.get(search_id, []))
        # Event ids are 1-based positions.
        return [(index, payload) for index, payload in enumerate(events, start=1) if index > after][:limit]

    def events_for(self, search_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._events.get(search_id, []))
