from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.assistant.memory import wait_for_pending_writes
from app.assistant.monitoring import QueryLogEntry, QueryMonitor, StageTimer
from app.assistant.outcome import Outcome
from app.assistant.service import run_to_completion
from app.core import models
from app.core.models import utc_now
from tests.helpers import BrokenSessionFactory, TestingSessionLocal, build_pipeline


class TickingClock:
    """Moves forward a quarter of a second every time it is read."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        self.now += 0.25
        return self.now


class DownExecutor:
    timeout = 1.0

    async def execute(self, intent, caller):
        return Outcome.failure("database is unreachable")

    async def snapshot(self, caller):
        return {}


class DownKeywordEngine:
    async def run(self, message, caller):
        raise RuntimeError("database is unreachable")


def log_row(user_id: int, **fields) -> models.QueryLog:
    values = dict(
        user_id=user_id,
        question="How many contacts do I have?",
        mode="QUERY",
        engine="structured",
        row_count=1,
        cached=False,
        outcome="done",
        timings={"query": 10.0},
        total_ms=100.0,
    )
    values.update(fields)
    return models.QueryLog(**values)


def test_stage_timer_records_milliseconds():
    timer = StageTimer(clock=TickingClock())

    with timer.measure("query"):
        pass

    assert timer.timings == {"query": 250.0}
    assert timer.total_ms() == 750.0


@pytest.mark.asyncio
async def test_every_turn_is_logged_with_stage_timings(caller, crm_data, db_session):
    pipeline = build_pipeline()

    await run_to_completion(pipeline.run(caller, "How many contacts do I have?"))
    await wait_for_pending_writes(timeout=5)

    result = await db_session.execute(select(models.QueryLog))
    log = result.scalars().one()
    assert log.user_id == caller.id
    assert log.outcome == "done"
    assert log.mode == "QUERY"
    assert log.intent_category == "CONTACT_QUERY"
    assert log.engine == "structured"
    assert log.row_count == 1
    assert not log.cached
    assert set(log.timings) == {"session", "routing", "classification", "query", "synthesis"}
    assert log.total_ms >= max(log.timings.values())


@pytest.mark.asyncio
async def test_failed_query_is_logged_as_such(caller, db_session):
    pipeline = build_pipeline(executor=DownExecutor(), keyword_engine=DownKeywordEngine())

    await run_to_completion(pipeline.run(caller, "How many contacts do I have?"))
    await wait_for_pending_writes(timeout=5)

    result = await db_session.execute(select(models.QueryLog))
    log = result.scalars().one()
    assert log.outcome == "query_failed"
    assert "keyword query failed" in log.error
    assert log.engine is None


@pytest.mark.asyncio
async def test_unreachable_log_store_is_not_an_error():
    monitor = QueryMonitor(BrokenSessionFactory())

    saved = await monitor.record(QueryLogEntry(user_id=7, question="hi", outcome="done"))

    assert saved is False


@pytest.mark.asyncio
async def test_summary(db_session, test_user, other_user):
    db_session.add_all(
        [
            log_row(test_user.id, cached=True, timings={"query": 4.0}, total_ms=40.0),
            log_row(test_user.id, engine="keyword", timings={"query": 20.0}, total_ms=200.0),
            log_row(test_user.id, mode="COACH", engine=None, timings={"synthesis": 50.0}),
            log_row(other_user.id, outcome="query_failed", engine=None, total_ms=60.0),
            log_row(test_user.id, created_at=utc_now() - timedelta(days=3)),
        ]
    )
    await db_session.commit()
    monitor = QueryMonitor(TestingSessionLocal)
    since = utc_now() - timedelta(hours=24)

    everyone = await monitor.summary(since)
    mine = await monitor.summary(since, user_id=test_user.id)

    assert everyone["turns"] == 4
    assert everyone["errors"] == 1
    assert everyone["errorRate"] == 0.25
    assert everyone["byMode"] == {"COACH": 1, "QUERY": 3}
    assert everyone["queries"] == 2
    assert everyone["keywordFallbacks"] == 1
    assert everyone["cacheHitRate"] == 0.5
    assert everyone["averageStageMs"]["query"] == pytest.approx(11.3, abs=0.1)
    assert everyone["p95TotalMs"] == 200.0
    assert mine["turns"] == 3
    assert mine["errors"] == 0


@pytest.mark.asyncio
async def test_stats_are_for_managers_and_admins(client: AsyncClient, user_headers, test_admin):
    await client.post("/chat", json={"message": "switch to coach mode"}, headers=user_headers)
    await wait_for_pending_writes(timeout=5)

    denied = await client.get("/chat/stats", headers=user_headers)
    allowed = await client.get(
        "/chat/stats", params={"hours": 1}, headers={"X-User-Id": str(test_admin.id)}
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200
    body = allowed.json()
    assert body["turns"] == 1
    assert body["byMode"]["COACH"] == 1
    assert body["cache"]["entries"] == 0
