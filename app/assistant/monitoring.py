import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.assistant.memory import dispatch_write
from app.core import models

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# MONITORING MODULE
# Purpose: leave one ai_query_logs row per chat turn (mode, intent, engine,
# rows, cache use and stage timings) and summarize them for operators.
# Writing a log never fails or slows down the turn it describes.
# -----------------------------------------------------------------------------

FAILED_OUTCOMES = ("query_failed", "error")


class StageTimer:
    """Wall-clock milliseconds per pipeline stage."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self.clock = clock
        self.started = clock()
        self.timings: Dict[str, float] = {}

    @contextmanager
    def measure(self, stage: str) -> Iterator[None]:
        start = self.clock()
        try:
            yield
        finally:
            self.record(stage, start)

    def record(self, stage: str, start: float) -> None:
        self.timings[stage] = round((self.clock() - start) * 1000, 1)

    def total_ms(self) -> float:
        return round((self.clock() - self.started) * 1000, 1)


@dataclass
class QueryLogEntry:
    user_id: int
    question: str
    session_id: Optional[str] = None
    mode: Optional[str] = None
    intent_category: Optional[str] = None
    engine: Optional[str] = None
    row_count: int = 0
    cached: bool = False
    confidence: Optional[float] = None
    # Stays "cancelled" unless the turn reaches an end of its own
    outcome: str = "cancelled"
    error: Optional[str] = None
    timings: Dict[str, float] = field(default_factory=dict)
    total_ms: float = 0.0


def _percentile(values: List[float], fraction: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(len(ordered) - 1, int(round(fraction * (len(ordered) - 1))))
    return ordered[index]


class QueryMonitor:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(self, entry: QueryLogEntry) -> bool:
        logger.info(
            f"[User {entry.user_id}] chat turn {entry.outcome}: mode={entry.mode} "
            f"engine={entry.engine} rows={entry.row_count} cached={entry.cached} "
            f"total={entry.total_ms}ms stages={entry.timings}"
        )
        try:
            async with self.session_factory() as db:
                db.add(
                    models.QueryLog(
                        user_id=entry.user_id,
                        session_id=entry.session_id,
                        question=entry.question,
                        mode=entry.mode,
                        intent_category=entry.intent_category,
                        engine=entry.engine,
                        row_count=entry.row_count,
                        cached=entry.cached,
                        confidence=entry.confidence,
                        outcome=entry.outcome,
                        error=entry.error,
                        timings=entry.timings,
                        total_ms=entry.total_ms,
                    )
                )
                await db.commit()
        except Exception as error:
            logger.error(f"Failed to save query log for user {entry.user_id}: {error}")
            return False
        return True

    def record_in_background(self, entry: QueryLogEntry) -> asyncio.Task:
        return dispatch_write(self.record(entry))

    async def summary(self, since: datetime, user_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Totals, error and cache-hit rates and stage timings for the turns
        logged since `since`, optionally for one user only.
        """
        stmt = select(models.QueryLog).where(models.QueryLog.created_at >= since)
        if user_id is not None:
            stmt = stmt.where(models.QueryLog.user_id == user_id)

        async with self.session_factory() as db:
            logs = (await db.execute(stmt)).scalars().all()

        turns = len(logs)
        errors = sum(1 for log in logs if log.outcome in FAILED_OUTCOMES)
        queries = [log for log in logs if log.engine is not None]
        cache_hits = sum(1 for log in queries if log.cached)

        stage_times: Dict[str, List[float]] = {}
        for log in logs:
            for stage, ms in (log.timings or {}).items():
                stage_times.setdefault(stage, []).append(ms)
        totals = [log.total_ms for log in logs]

        return {
            "since": since.isoformat(),
            "turns": turns,
            "byMode": {
                mode: sum(1 for log in logs if log.mode == mode) for mode in ("COACH", "QUERY")
            },
            "queries": len(queries),
            "keywordFallbacks": sum(1 for log in queries if log.engine == "keyword"),
            "errors": errors,
            "errorRate": round(errors / turns, 3) if turns else 0.0,
            "cacheHits": cache_hits,
            "cacheHitRate": round(cache_hits / len(queries), 3) if queries else 0.0,
            "averageStageMs": {
                stage: round(sum(values) / len(values), 1)
                for stage, values in stage_times.items()
            },
            "averageTotalMs": round(sum(totals) / turns, 1) if turns else 0.0,
            "p95TotalMs": _percentile(totals, 0.95),
        }
