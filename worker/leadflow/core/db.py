"""Database connection pool shared by the stage workers."""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from psycopg2 import pool

from leadflow.core.config import ConfigError, Settings

logger = logging.getLogger(__name__)


class Database:
    """Owns a psycopg2 connection pool for the lifetime of a worker process.

    Connections are committed when the ``connection()`` block exits cleanly and
    rolled back when it raises, then returned to the pool either way.
    """

    def __init__(self, dsn: str, minconn: int = 1, maxconn: int = 10) -> None:
        if not dsn:
            raise ConfigError("DATABASE_URL is required for database connections")
        self._dsn = dsn
        self._minconn = minconn
        self._maxconn = maxconn
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(settings.database_url, settings.db_pool_min, settings.db_pool_max)

    @property
    def pool(self) -> pool.ThreadedConnectionPool:
        if self._pool is None:
            # Stage loops start together; only one of them may build the pool.
            with self._pool_lock:
                if self._pool is None:
                    self._pool = pool.ThreadedConnectionPool(
                        self._minconn,
                        self._maxconn,
                        dsn=self._dsn,
                        connect_timeout=10,
                    )
                    logger.info(
                        "Database connection pool initialised (min=%s max=%s)", self._minconn, self._maxconn
                    )
        return self._pool

    @contextmanager
    def connection(self) -> Iterator:
        pg_pool = self.pool
        conn = pg_pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            pg_pool.putconn(conn)

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is None:
                return
            self._pool.closeall()
            self._pool = None
        logger.info("Database connection pool closed")
