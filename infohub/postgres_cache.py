"""
Durable key-value cache in the `api_cache` table.
"""

import time
from typing import Optional, Any, Callable
from infohub.database import get_db_context
from infohub.db_models import ApiCache


def _now_ms() -> int:
    return int(time.time() * 1000)


class PostgresCache:
    """
    L2 store for the tiered cache.

    Each row carries its own `expires_at`; a read past it is a miss even if
    the row is still there. Expired rows are removed by the snapshot prune
    pass, never on read.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms):
        """
        Args:
            clock: Returns current time in epoch milliseconds
        """
        self.clock = clock

    def get(self, key: str) -> Optional[Any]:
        """Stored value for `key`, or None when absent or past `expires_at`."""
        with get_db_context() as db:
            row = db.query(ApiCache).filter(
                ApiCache.key == key,
                ApiCache.expires_at > self.clock()
            ).first()
            return row.data if row is not None else None

    def set(self, key: str, value: Any, ttl: int):
        """
        Upsert `key`; the last write wins.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Seconds until the row expires
        """
        now = self.clock()
        expires_at = now + ttl * 1000

        with get_db_context() as db:
            row = db.get(ApiCache, key)
            if row is None:
                db.add(ApiCache(key=key, data=value, expires_at=expires_at, updated_at=now))
                return

            row.data = value
            row.expires_at = expires_at
            row.updated_at = now
