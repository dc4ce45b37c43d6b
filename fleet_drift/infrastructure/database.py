"""PostgreSQL-backed classification cache store."""

import logging
from contextlib import contextmanager
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from typing import List, Optional
import os

from fleet_drift.domain.models import ClassificationCacheEntry
from fleet_drift.domain.repository import RepositoryKey

logger = logging.getLogger(__name__)

_COLUMNS = "owner, name, classification, languages, cached_at, version"


class PostgresCacheStore:
    """Stores one classification row per exact (owner, name) pair in PostgreSQL."""

    def __init__(self, connection_string: Optional[str] = None, max_connections: int = 10):
        """
        Initialize cache store.

        Args:
            connection_string: libpq connection string. If None, built from POSTGRES_* env vars.
            max_connections: Pool size; should cover the scan's worker count
        """
        self.connection_string = connection_string or self._connection_string_from_env()
        self.max_connections = max_connections
        self.pool: Optional[ThreadedConnectionPool] = None

    @staticmethod
    def _connection_string_from_env() -> str:
        parts = {
            "host": os.getenv("POSTGRES_HOST", "localhost"),
            "port": os.getenv("POSTGRES_PORT", "5432"),
            "dbname": os.getenv("POSTGRES_DB", "fleet_drift"),
            "user": os.getenv("POSTGRES_USER", "postgres"),
            "password": os.getenv("POSTGRES_PASSWORD", "postgres"),
        }
        return " ".join(f"{key}={value}" for key, value in parts.items())

    def connect(self):
        """Open the connection pool; workers share it for cache reads and writes."""
        if self.pool is not None:
            return
        self.pool = ThreadedConnectionPool(1, self.max_connections, self.connection_string)
        logger.info(f"Classification cache pool opened ({self.max_connections} connections)")

    def close(self):
        if self.pool is not None:
            self.pool.closeall()
            self.pool = None
            logger.info("Classification cache pool closed")

    @contextmanager
    def _transaction(self, action: str):
        """Borrow a pooled connection; commit on success, roll back and re-raise on error."""
        self.connect()
        pool = self.pool
        conn = pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Error {action}: {e}")
            raise
        finally:
            pool.putconn(conn)

    def initialize_schema(self):
        """Create the cache table if it doesn't exist."""
        with self._transaction("initializing classification cache schema") as conn:
            with conn.cursor() as cur:
                # Composite primary key: lookups are by the exact pair only
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS classification_cache (
                        owner VARCHAR(255) NOT NULL,
                        name VARCHAR(255) NOT NULL,
                        classification VARCHAR(32) NOT NULL,
                        languages TEXT[] NOT NULL DEFAULT '{}',
                        cached_at TIMESTAMPTZ NOT NULL,
                        version INTEGER NOT NULL,
                        PRIMARY KEY (owner, name)
                    );

                    CREATE INDEX IF NOT EXISTS idx_classification_cache_cached_at
                        ON classification_cache(cached_at);
                """)
        logger.info("Classification cache schema initialized")

    @staticmethod
    def _to_entry(row) -> ClassificationCacheEntry:
        return ClassificationCacheEntry.from_record({
            "owner": row["owner"],
            "name": row["name"],
            "classification": row["classification"],
            "cached_at": row["cached_at"].isoformat(),
            "languages": list(row["languages"] or []),
            "version": row["version"],
        })

    def get(self, key: RepositoryKey) -> Optional[ClassificationCacheEntry]:
        owner, name = key
        with self._transaction(f"reading cache entry for {owner}/{name}") as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM classification_cache WHERE owner = %s AND name = %s",
                    (owner, name),
                )
                row = cur.fetchone()
        return self._to_entry(row) if row else None

    def put(self, key: RepositoryKey, entry: ClassificationCacheEntry):
        """
        Insert or replace the cache entry for key.

        Args:
            key: Exact (owner, name) pair; must equal the entry's own key
            entry: Classification decision to store
        """
        if entry.key != key:
            raise ValueError(f"Cache key {key} does not match entry {entry.key}")

        with self._transaction(f"writing cache entry for {entry.owner}/{entry.name}") as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO classification_cache ({_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (owner, name)
                    DO UPDATE SET
                        classification = EXCLUDED.classification,
                        languages = EXCLUDED.languages,
                        cached_at = EXCLUDED.cached_at,
                        version = EXCLUDED.version
                    """,
                    (
                        entry.owner,
                        entry.name,
                        entry.classification.value,
                        list(entry.languages),
                        entry.cached_at,
                        entry.version,
                    ),
                )

    def delete(self, key: RepositoryKey):
        owner, name = key
        with self._transaction(f"deleting cache entry for {owner}/{name}") as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM classification_cache WHERE owner = %s AND name = %s",
                    (owner, name),
                )

    def all_entries(self) -> List[ClassificationCacheEntry]:
        """Return every cache entry, ordered by owner and name."""
        with self._transaction("listing cache entries") as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"SELECT {_COLUMNS} FROM classification_cache ORDER BY owner, name")
                rows = cur.fetchall()
        return [self._to_entry(row) for row in rows]
