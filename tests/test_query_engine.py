import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.assistant.intent import Aggregation, Intent, IntentCategory, TimeRange
from app.assistant.keyword_engine import KeywordQueryEngine, parse_keyword_query
from app.assistant.memory import wait_for_pending_writes
from app.assistant.outcome import Outcome, QueryExecutionError
from app.assistant.query_cache import QueryCache, cache_key
from app.assistant.query_engine import TABLES, QueryExecutor, QueryResult, build_statement
from app.assistant.service import run_to_completion
from app.assistant.streaming import EventType
from app.core import models
from app.core.security import Caller
from tests.helpers import BrokenSessionFactory, TestingSessionLocal, build_pipeline


def contacts_intent(**kwargs) -> Intent:
    return Intent(
        category=IntentCategory.CONTACT_QUERY, target_entities=["contacts"], **kwargs
    )


class PartlyBrokenExecutor(QueryExecutor):
    """Leads always fail, every other table runs for real."""

    async def _run_table(self, spec, intent, caller):
        if spec.name == "leads":
            raise RuntimeError("leads table is locked")
        return await super()._run_table(spec, intent, caller)


class HangingTableExecutor(QueryExecutor):
    """Every table query takes far longer than the deadline."""

    async def _run_table(self, spec, intent, caller):
        await asyncio.sleep(30)
        return await super()._run_table(spec, intent, caller)


class FailingExecutor:
    timeout = 1.0

    async def execute(self, intent, caller):
        return Outcome.failure("structured engine is down")

    async def snapshot(self, caller):
        return {}


class SpyKeywordEngine:
    def __init__(self, result=None, error=None):
        self.calls = 0
        self.result = result
        self.error = error

    async def run(self, message, caller):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


# =========================
# Structured executor
# =========================
@pytest.mark.asyncio
async def test_employee_sees_only_their_contacts(crm_data, caller):
    outcome = await QueryExecutor(TestingSessionLocal).execute(contacts_intent(), caller)

    assert outcome.ok
    names = {row["name"] for row in outcome.value.rows}
    assert names == {"Megha Rao", "Manoj Shah", "Kiran Das"}
    assert outcome.value.provenance_tables == ["contacts"]
    assert all(row["_source"] == "contacts" for row in outcome.value.rows)
    assert "FROM contacts" in outcome.value.query_text


@pytest.mark.asyncio
async def test_admin_sees_everything(crm_data, test_admin):
    admin = Caller(id=test_admin.id, role="admin")

    outcome = await QueryExecutor(TestingSessionLocal).execute(contacts_intent(), admin)

    assert outcome.value.row_count == 4


@pytest.mark.asyncio
async def test_count_and_sum(crm_data, caller):
    executor = QueryExecutor(TestingSessionLocal)

    count = await executor.execute(contacts_intent(aggregation=Aggregation.COUNT), caller)
    total = await executor.execute(
        Intent(
            category=IntentCategory.QUOTATION_QUERY,
            target_entities=["quotations"],
            aggregation=Aggregation.SUM,
        ),
        caller,
    )

    assert count.value.rows == [
        {"_source": "contacts", "aggregation": "count", "field": None, "value": 3}
    ]
    assert total.value.rows[0]["field"] == "total_price"
    assert float(total.value.rows[0]["value"]) == pytest.approx(2000.5)


@pytest.mark.asyncio
async def test_sum_on_table_without_amount_becomes_count(crm_data, caller):
    outcome = await QueryExecutor(TestingSessionLocal).execute(
        contacts_intent(aggregation=Aggregation.SUM), caller
    )

    assert outcome.value.rows[0]["aggregation"] == "count"


@pytest.mark.asyncio
async def test_filters(crm_data, caller):
    executor = QueryExecutor(TestingSessionLocal)

    active = await executor.execute(contacts_intent(filters={"status": "ACTIVE"}), caller)
    prefixed = await executor.execute(contacts_intent(filters={"name_prefix": "ma"}), caller)
    unknown = await executor.execute(contacts_intent(filters={"colour": "blue"}), caller)

    assert {row["name"] for row in active.value.rows} == {"Megha Rao", "Manoj Shah"}
    assert [row["name"] for row in prefixed.value.rows] == ["Manoj Shah"]
    assert unknown.value.row_count == 3


@pytest.mark.asyncio
async def test_time_range_excludes_older_records(crm_data, caller):
    tomorrow = datetime.now(timezone.utc) + timedelta(days=1)

    outcome = await QueryExecutor(TestingSessionLocal).execute(
        contacts_intent(time_range=TimeRange(start=tomorrow)), caller
    )

    assert outcome.ok
    assert outcome.value.rows == []


@pytest.mark.asyncio
async def test_row_limit(crm_data, caller):
    outcome = await QueryExecutor(TestingSessionLocal, row_limit=2).execute(
        contacts_intent(), caller
    )

    assert outcome.value.row_count == 2


@pytest.mark.asyncio
async def test_one_failing_table_does_not_sink_the_rest(crm_data, caller):
    intent = Intent(
        category=IntentCategory.AGGREGATION_QUERY,
        target_entities=["leads", "quotations"],
        aggregation=Aggregation.COUNT,
    )

    outcome = await PartlyBrokenExecutor(TestingSessionLocal).execute(intent, caller)

    assert outcome.ok
    assert outcome.value.provenance_tables == ["quotations"]
    assert outcome.value.failed_tables == ["leads"]
    assert outcome.value.rows[0]["value"] == 2


@pytest.mark.asyncio
async def test_every_table_failing_is_a_failure(caller):
    intent = Intent(
        category=IntentCategory.AGGREGATION_QUERY, target_entities=["leads", "contacts"]
    )

    outcome = await QueryExecutor(BrokenSessionFactory()).execute(intent, caller)

    assert not outcome.ok
    assert "2 table queries failed" in outcome.reason


@pytest.mark.asyncio
async def test_snapshot_counts_only_own_records(crm_data, caller):
    snapshot = await QueryExecutor(TestingSessionLocal).snapshot(caller)

    assert snapshot["counts"] == {
        "contacts": 3,
        "accounts": 2,
        "leads": 1,
        "activities": 1,
        "quotations": 2,
    }
    assert snapshot["activities_last_30_days"] == 1



@pytest.mark.asyncio
async def test_table_query_past_the_deadline_fails(crm_data, caller):
    executor = HangingTableExecutor(TestingSessionLocal, timeout=0.05)

    outcome = await asyncio.wait_for(executor.execute(contacts_intent(), caller), 2)

    assert not outcome.ok
    assert "1 table queries failed" in outcome.reason


# =========================
# Query cache
# =========================
class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_repeated_query_is_served_from_cache(crm_data, caller):
    cache = QueryCache()
    first = await QueryExecutor(TestingSessionLocal, cache=cache).execute(contacts_intent(), caller)

    # Same question again, with the database gone
    again = await QueryExecutor(BrokenSessionFactory(), cache=cache).execute(
        contacts_intent(), caller
    )

    assert not first.value.cached
    assert again.ok
    assert again.value.cached
    assert again.value.rows == first.value.rows
    assert again.value.query_text == first.value.query_text
    assert cache.stats()["hits"] == 1


@pytest.mark.asyncio
async def test_cache_is_kept_per_caller(crm_data, caller, test_admin):
    cache = QueryCache()
    admin = Caller(id=test_admin.id, role="admin")
    await QueryExecutor(TestingSessionLocal, cache=cache).execute(contacts_intent(), caller)

    outcome = await QueryExecutor(TestingSessionLocal, cache=cache).execute(
        contacts_intent(), admin
    )

    assert not outcome.value.cached
    assert outcome.value.row_count == 4


def test_cache_key_covers_bound_values():
    caller = Caller(id=1, role="employee")
    spec = TABLES["contacts"]
    active, _ = build_statement(spec, contacts_intent(filters={"status": "ACTIVE"}), caller, 50)
    lost, _ = build_statement(spec, contacts_intent(filters={"status": "LOST"}), caller, 50)

    assert cache_key(caller, active) != cache_key(caller, lost)
    assert cache_key(caller, active) == cache_key(caller, active)


def test_cache_lifetime_depends_on_the_table():
    clock = FakeClock()
    cache = QueryCache(clock=clock)
    cache.put("quotes", "quotations", "SELECT 1", [{"value": 2}])
    cache.put("people", "contacts", "SELECT 2", [{"value": 3}])

    clock.now += 61

    assert cache.get("quotes") is None
    assert cache.get("people").rows == [{"value": 3}]
    clock.now += 300
    assert cache.clear_expired() == 1
    assert len(cache) == 0


def test_full_cache_drops_the_oldest_entry():
    cache = QueryCache(max_entries=2)
    for key in ("a", "b", "c"):
        cache.put(key, "contacts", "SELECT 1", [])

    assert cache.get("a") is None
    assert cache.get("c") is not None
    assert cache.stats()["evictions"] == 1
    assert cache.invalidate("contacts") == 2


# =========================
# Keyword engine
# =========================
def test_keyword_parse():
    parsed = parse_keyword_query("How many qualified leads in the last 30 days?")

    assert parsed.table == "leads"
    assert parsed.operation == "count"
    assert parsed.status == "qualified"
    assert parsed.confidence == pytest.approx(0.6)

    unknown = parse_keyword_query("what's up")
    assert unknown.table == "contacts"
    assert unknown.confidence == 0.3


@pytest.mark.asyncio
async def test_keyword_engine_counts(crm_data, caller):
    result = await KeywordQueryEngine(TestingSessionLocal).run("how many contacts?", caller)

    assert result.engine == "keyword"
    assert result.rows[0]["value"] == 3
    assert result.confidence == 0.5


@pytest.mark.asyncio
async def test_keyword_engine_lists_with_status(crm_data, caller):
    result = await KeywordQueryEngine(TestingSessionLocal).run("show my won quotations", caller)

    assert [row["title"] for row in result.rows] == ["Q-102 Crash barriers"]


@pytest.mark.asyncio
async def test_keyword_engine_raises_when_database_is_down(caller):
    with pytest.raises(QueryExecutionError):
        await KeywordQueryEngine(BrokenSessionFactory()).run("list contacts", caller)


# =========================
# Fallback chain in the pipeline
# =========================
@pytest.mark.asyncio
async def test_keyword_engine_runs_once_when_structured_fails(caller):
    fallback_result = QueryResult(
        rows=[{"_source": "contacts", "aggregation": "count", "field": None, "value": 7}],
        provenance_tables=["contacts"],
        query_text="SELECT count(*) FROM contacts",
        success=True,
        engine="keyword",
        confidence=0.5,
    )
    spy = SpyKeywordEngine(result=fallback_result)
    pipeline = build_pipeline(executor=FailingExecutor(), keyword_engine=spy)

    event = await run_to_completion(pipeline.run(caller, "How many contacts do I have?"))

    assert spy.calls == 1
    assert event.type == EventType.DONE
    assert event.payload["data"] == fallback_result.rows
    assert event.payload["confidence"] == 0.5


@pytest.mark.asyncio
async def test_both_engines_failing_ends_in_query_error(caller):
    spy = SpyKeywordEngine(error=QueryExecutionError("keyword engine is down too"))
    pipeline = build_pipeline(executor=FailingExecutor(), keyword_engine=spy)

    event = await run_to_completion(pipeline.run(caller, "How many contacts do I have?"))

    assert spy.calls == 1
    assert event.type == EventType.ERROR
    assert event.payload["error"] == "Query failed"
    assert "down" not in event.payload["message"]


@pytest.mark.asyncio
async def test_timed_out_structured_query_falls_back_to_keywords(crm_data, caller, db_session):
    pipeline = build_pipeline(executor=HangingTableExecutor(TestingSessionLocal, timeout=0.05))

    event = await asyncio.wait_for(
        run_to_completion(pipeline.run(caller, "How many contacts do I have?")), 2
    )
    await wait_for_pending_writes(timeout=5)

    assert event.type == EventType.DONE
    assert event.payload["data"][0]["value"] == 3
    logged = await db_session.execute(select(models.QueryLog))
    assert logged.scalars().one().engine == "keyword"
