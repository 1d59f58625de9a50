import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import Select

from app.core.security import Caller

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# QUERY CACHE
# Purpose: keep recent table results per caller for a short while, so the
# same question asked again does not go back to the database. How long a
# result stays depends on how fast its table changes.
# ---------------------------------------------------------------------------

TABLE_TTL_SECONDS: Dict[str, float] = {
    # Stable
    "contacts": 300,
    "accounts": 300,
    # Change often
    "leads": 120,
    "activities": 120,
    # Change all the time
    "quotations": 60,
}
DEFAULT_TTL_SECONDS = 180


@dataclass
class CacheEntry:
    table: str
    sql: str
    rows: List[Dict[str, Any]]
    expires_at: float


def cache_key(caller: Caller, stmt: Select) -> str:
    """Caller, role, statement text and bound values, hashed."""
    compiled = stmt.compile()
    material = json.dumps(
        [caller.id, caller.role, str(compiled), compiled.params],
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class QueryCache:
    """Process-local TTL cache of table results."""

    def __init__(
        self,
        max_entries: int = 1000,
        ttls: Optional[Dict[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.ttls = ttls if ttls is not None else TABLE_TTL_SECONDS
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def ttl_for(self, table: str) -> float:
        return self.ttls.get(table, DEFAULT_TTL_SECONDS)

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self.clock():
            if entry is not None:
                del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry

    def put(self, key: str, table: str, sql: str, rows: List[Dict[str, Any]]) -> None:
        if key not in self._entries and len(self._entries) >= self.max_entries:
            # Dicts keep insertion order: the first key is the oldest entry
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self.evictions += 1
        self._entries[key] = CacheEntry(
            table=table,
            sql=sql,
            rows=rows,
            expires_at=self.clock() + self.ttl_for(table),
        )

    def invalidate(self, table: str) -> int:
        """Drop every cached result of one table."""
        keys = [key for key, entry in self._entries.items() if entry.table == table]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear_expired(self) -> int:
        now = self.clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info(f"Dropped {len(expired)} expired query cache entries")
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = self.misses = self.evictions = 0

    def stats(self) -> Dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hitRate": round(self.hits / lookups, 3) if lookups else 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)
