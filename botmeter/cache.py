"""SQLite-backed classification cache."""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .config import STORAGE_SETTINGS
from .exceptions import ClassificationError, PersistenceError
from .models import Classification, Provenance

logger = logging.getLogger(__name__)

# Stay well below SQLite's host-parameter limit
QUERY_CHUNK_SIZE = 500


class SQLiteDatabase:
    """Lazily opened SQLite connection shared by the cache and the stores."""

    schema = ""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(db_path or STORAGE_SETTINGS['db_path'])
        self._connection = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (create if needed)."""
        if self._connection is None:
            if self.db_path != ':memory:':
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            # WAL mode for concurrent readers
            self._connection.execute("PRAGMA journal_mode=WAL")
            self._connection.execute("PRAGMA synchronous=NORMAL")
            self._connection.executescript(self.schema)
            self._connection.commit()
        return self._connection

    def database_size_mb(self) -> float:
        path = Path(self.db_path)
        if self.db_path == ':memory:' or not path.exists():
            return 0.0
        return path.stat().st_size / (1024 * 1024)

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ClassificationCache(SQLiteDatabase):
    """Persistent user-agent -> classification map with upsert semantics.

    Concurrent writers race with last-write-wins outcomes.
    """

    schema = """
        CREATE TABLE IF NOT EXISTS ua_classifications (
            user_agent TEXT PRIMARY KEY,
            is_bot BOOLEAN NOT NULL,
            bot_type TEXT,
            bot_name TEXT,
            confidence REAL NOT NULL,
            last_updated DATETIME NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_ua_classifications_updated ON ua_classifications(last_updated);
    """

    def get_many(self, user_agents: Iterable[str]) -> Dict[str, Classification]:
        """Return the cached subset of user_agents, tagged with cache provenance."""
        keys = list(dict.fromkeys(user_agents))
        found: Dict[str, Classification] = {}
        try:
            conn = self._get_connection()
            for i in range(0, len(keys), QUERY_CHUNK_SIZE):
                chunk = keys[i:i + QUERY_CHUNK_SIZE]
                placeholders = ','.join('?' * len(chunk))
                cursor = conn.execute(
                    f"SELECT user_agent, is_bot, bot_type, bot_name, confidence "
                    f"FROM ua_classifications WHERE user_agent IN ({placeholders})",
                    chunk,
                )
                for row in cursor:
                    found[row['user_agent']] = Classification(
                        is_bot=bool(row['is_bot']),
                        confidence=float(row['confidence']),
                        bot_type=row['bot_type'],
                        bot_name=row['bot_name'],
                        source=Provenance.CACHE,
                    )
        except sqlite3.Error as e:
            raise ClassificationError(f"Classification cache read failed: {e}",
                                      context={'db_path': self.db_path}) from e
        return found

    def upsert_many(self, classifications: Dict[str, Classification]) -> int:
        """Insert or update verdicts (reasoning is never stored). Returns rows written."""
        if not classifications:
            return 0
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (ua, bool(c.is_bot), c.bot_type, c.bot_name, float(c.confidence), now)
            for ua, c in classifications.items()
        ]
        try:
            conn = self._get_connection()
            conn.executemany("""
                INSERT INTO ua_classifications (user_agent, is_bot, bot_type, bot_name, confidence, last_updated)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_agent) DO UPDATE SET
                    is_bot = excluded.is_bot,
                    bot_type = excluded.bot_type,
                    bot_name = excluded.bot_name,
                    confidence = excluded.confidence,
                    last_updated = excluded.last_updated
            """, rows)
            conn.commit()
        except sqlite3.Error as e:
            if self._connection is not None:
                self._connection.rollback()
            raise PersistenceError(f"Classification cache write failed: {e}",
                                   context={'db_path': self.db_path}) from e
        logger.debug("Upserted %d classifications into %s", len(rows), self.db_path)
        return len(rows)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN is_bot THEN 1 ELSE 0 END), 0) AS bots,
                   MIN(last_updated) AS oldest,
                   MAX(last_updated) AS newest
            FROM ua_classifications
        """).fetchone()
        return {
            'total_entries': row['total'],
            'bots': row['bots'],
            'humans': row['total'] - row['bots'],
            'oldest_entry': row['oldest'],
            'newest_entry': row['newest'],
            'database_size_mb': self.database_size_mb(),
            'database_path': self.db_path,
        }

    def clear(self) -> int:
        """Remove every cached verdict. Returns rows removed."""
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM ua_classifications")
        conn.commit()
        return cursor.rowcount


@contextmanager
def get_classification_cache(db_path: Optional[str] = None, enabled: bool = True):
    """Context manager for cache operations."""
    if not enabled:
        yield None
        return

    cache = ClassificationCache(db_path)
    try:
        yield cache
    finally:
        cache.close()
