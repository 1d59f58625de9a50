import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from fastapi.encoders import jsonable_encoder
from sqlalchemy import Select, func, inspect, or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.assistant.intent import Aggregation, Intent
from app.assistant.outcome import Outcome, run_stage
from app.assistant.query_cache import QueryCache, cache_key
from app.core import models
from app.core.models import utc_now
from app.core.security import Caller

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# QUERY EXECUTOR
# Purpose: turn an Intent into one SELECT per target table, run them side by
# side and merge whatever came back. A table that fails is dropped from the
# result, it never takes the others down with it.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TableSpec:
    """How the assistant is allowed to query one CRM table."""

    name: str
    model: Any
    label_column: str
    owner_columns: Tuple[str, ...]
    amount_column: Optional[str] = None
    date_column: str = "created_at"
    filterable: Tuple[str, ...] = ()

    def column(self, name: str):
        return getattr(self.model, name)


TABLES: Dict[str, TableSpec] = {
    "contacts": TableSpec(
        name="contacts",
        model=models.Contact,
        label_column="name",
        owner_columns=("assigned_to", "created_by"),
        filterable=("status", "designation", "email"),
    ),
    "accounts": TableSpec(
        name="accounts",
        model=models.Account,
        label_column="name",
        owner_columns=("assigned_employee_id",),
        amount_column="potential_value",
        filterable=("status", "industry", "city"),
    ),
    "leads": TableSpec(
        name="leads",
        model=models.Lead,
        label_column="name",
        owner_columns=("assigned_to",),
        amount_column="value",
        filterable=("status", "source"),
    ),
    "activities": TableSpec(
        name="activities",
        model=models.Activity,
        label_column="activity_type",
        owner_columns=("created_by",),
        filterable=("status", "activity_type"),
    ),
    "quotations": TableSpec(
        name="quotations",
        model=models.Quotation,
        label_column="title",
        owner_columns=("created_by",),
        amount_column="total_price",
        filterable=("status",),
    ),
}


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]]
    provenance_tables: List[str]
    query_text: str
    success: bool
    engine: str = "structured"  # structured/keyword
    failed_tables: List[str] = field(default_factory=list)
    cached_tables: List[str] = field(default_factory=list)
    # Set by the keyword engine, which has its own idea of how sure it is
    confidence: Optional[float] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def cached(self) -> bool:
        """True when every table was served from the query cache."""
        return bool(self.provenance_tables) and self.cached_tables == self.provenance_tables


def scope_to_caller(stmt: Select, spec: TableSpec, caller: Caller) -> Select:
    """Employees see only what they own. Elevated roles see everything."""
    if caller.is_elevated:
        return stmt
    return stmt.where(or_(*[spec.column(name) == caller.id for name in spec.owner_columns]))


def apply_filters(stmt: Select, spec: TableSpec, filters: Dict[str, Any]) -> Select:
    for key, value in filters.items():
        if key == "name_prefix":
            stmt = stmt.where(spec.column(spec.label_column).ilike(f"{value}%"))
        elif key == "name":
            stmt = stmt.where(spec.column(spec.label_column).ilike(f"%{value}%"))
        elif key in spec.filterable:
            column = spec.column(key)
            if isinstance(value, str):
                stmt = stmt.where(func.lower(column) == value.strip().lower())
            else:
                stmt = stmt.where(column == value)
        # Anything else does not exist on this table and is skipped
    return stmt


def apply_time_range(stmt: Select, spec: TableSpec, intent: Intent) -> Select:
    if intent.time_range is None:
        return stmt
    column = spec.column(spec.date_column)
    if intent.time_range.start is not None:
        stmt = stmt.where(column >= intent.time_range.start)
    if intent.time_range.end is not None:
        stmt = stmt.where(column <= intent.time_range.end)
    return stmt


AGGREGATE_FUNCTIONS = {
    Aggregation.SUM: func.sum,
    Aggregation.AVERAGE: func.avg,
    Aggregation.MAX: func.max,
    Aggregation.MIN: func.min,
}


def build_statement(
    spec: TableSpec, intent: Intent, caller: Caller, row_limit: int
) -> Tuple[Select, Optional[Aggregation]]:
    """
    Build the SELECT for one table.

    Returns the statement and the aggregation it computes (None for a row list).
    Sums and averages on a table without an amount column fall back to a count.
    """
    aggregation = intent.aggregation
    if aggregation is not None and aggregation != Aggregation.COUNT and spec.amount_column is None:
        aggregation = Aggregation.COUNT

    if aggregation == Aggregation.COUNT:
        stmt = select(func.count().label("value")).select_from(spec.model)
    elif aggregation is not None:
        amount = spec.column(spec.amount_column)
        stmt = select(AGGREGATE_FUNCTIONS[aggregation](amount).label("value")).select_from(
            spec.model
        )
    else:
        stmt = (
            select(spec.model)
            .order_by(spec.column(spec.date_column).desc())
            .limit(row_limit)
        )

    stmt = scope_to_caller(stmt, spec, caller)
    stmt = apply_filters(stmt, spec, intent.filters)
    stmt = apply_time_range(stmt, spec, intent)
    return stmt, aggregation


def row_to_dict(instance) -> Dict[str, Any]:
    mapper = inspect(instance).mapper
    return {attr.key: getattr(instance, attr.key) for attr in mapper.column_attrs}


def statement_text(stmt: Select) -> str:
    return " ".join(str(stmt).split())


class QueryExecutor:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        row_limit: int = 50,
        timeout: float = 10.0,
        cache: Optional[QueryCache] = None,
    ):
        self.session_factory = session_factory
        self.row_limit = row_limit
        self.timeout = timeout
        self.cache = cache

    async def _run_table(
        self, spec: TableSpec, intent: Intent, caller: Caller
    ) -> Tuple[str, List[Dict[str, Any]], bool]:
        stmt, aggregation = build_statement(spec, intent, caller, self.row_limit)
        sql = statement_text(stmt)

        key = None
        if self.cache is not None:
            key = cache_key(caller, stmt)
            entry = self.cache.get(key)
            if entry is not None:
                return entry.sql, [dict(row) for row in entry.rows], True

        # One session per table so the queries can run concurrently
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            if aggregation is not None:
                value = result.scalar()
                rows = [
                    {
                        "_source": spec.name,
                        "aggregation": aggregation.value,
                        "field": spec.amount_column if aggregation != Aggregation.COUNT else None,
                        "value": value if value is not None else 0,
                    }
                ]
            else:
                rows = [
                    {"_source": spec.name, **row_to_dict(instance)}
                    for instance in result.scalars().all()
                ]
        rows = jsonable_encoder(rows)

        if key is not None:
            self.cache.put(key, spec.name, sql, rows)
        return sql, rows, False

    async def execute(self, intent: Intent, caller: Caller) -> Outcome[QueryResult]:
        specs = [TABLES[name] for name in intent.target_entities if name in TABLES]
        if not specs:
            return Outcome.failure("No queryable tables in the intent")

        outcomes = await asyncio.gather(
            *[
                run_stage(f"query {spec.name}", self._run_table(spec, intent, caller), self.timeout)
                for spec in specs
            ]
        )

        rows: List[Dict[str, Any]] = []
        statements: List[str] = []
        provenance: List[str] = []
        failed: List[str] = []
        cached: List[str] = []
        for spec, outcome in zip(specs, outcomes):
            if not outcome.ok:
                failed.append(spec.name)
                continue
            sql, table_rows, from_cache = outcome.value
            statements.append(sql)
            provenance.append(spec.name)
            rows.extend(table_rows)
            if from_cache:
                cached.append(spec.name)

        if not provenance:
            logger.warning(f"Every table query failed for user {caller.id}: {', '.join(failed)}")
            return Outcome.failure(f"All {len(failed)} table queries failed")

        if failed:
            logger.warning(
                f"Partial query result for user {caller.id}: {', '.join(failed)} failed"
            )

        return Outcome.success(
            QueryResult(
                rows=rows[: self.row_limit],
                provenance_tables=provenance,
                query_text=";\n".join(statements),
                success=True,
                failed_tables=failed,
                cached_tables=cached,
            )
        )

    async def snapshot(self, caller: Caller) -> Dict[str, Any]:
        """
        Record counts per table within the caller's scope, plus how many
        activities they logged in the last 30 days. Grounds coaching answers.
        """
        counts: Dict[str, int] = {}
        async with self.session_factory() as db:
            for spec in TABLES.values():
                stmt = scope_to_caller(
                    select(func.count()).select_from(spec.model), spec, caller
                )
                counts[spec.name] = (await db.execute(stmt)).scalar() or 0

            activities = TABLES["activities"]
            since = utc_now() - timedelta(days=30)
            recent = scope_to_caller(
                select(func.count())
                .select_from(activities.model)
                .where(activities.column("created_at") >= since),
                activities,
                caller,
            )
            recent_activities = (await db.execute(recent)).scalar() or 0

        return {"counts": counts, "activities_last_30_days": recent_activities}

