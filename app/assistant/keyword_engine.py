"""
Keyword query engine.

Second line of defence when the structured executor comes back empty-handed.
It understands a much smaller language (one table, a count or a list, a name
prefix, a status and a simple date window) but needs nothing from the
text-completion service and runs a single query in a single session.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.assistant.intent import (
    TimeRange,
    find_name_prefix,
    find_status,
    find_tables,
    find_time_range,
)
from app.assistant.outcome import QueryExecutionError
from app.assistant.query_engine import (
    TABLES,
    QueryResult,
    row_to_dict,
    scope_to_caller,
    statement_text,
)
from app.core.security import Caller

logger = logging.getLogger(__name__)

COUNT_WORDS = re.compile(
    r"\b(?:how many|count|number of|total\s+(?:number|count)|are there|there are)\b",
    re.IGNORECASE,
)


@dataclass
class KeywordQuery:
    table: str
    operation: str  # count/list
    name_prefix: Optional[str] = None
    status: Optional[str] = None
    time_range: Optional[TimeRange] = None
    recognized: bool = False

    # How much of the message the parser understood
    @property
    def confidence(self) -> float:
        if not self.recognized:
            return 0.3
        score = 0.5
        if self.name_prefix or self.status or self.time_range:
            score += 0.1
        return score

    def describe(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "operation": self.operation,
            "name_prefix": self.name_prefix,
            "status": self.status,
        }


def parse_keyword_query(text: str) -> KeywordQuery:
    tables = find_tables(text)
    return KeywordQuery(
        table=tables[0] if tables else "contacts",
        operation="count" if COUNT_WORDS.search(text) else "list",
        name_prefix=find_name_prefix(text),
        status=find_status(text),
        time_range=find_time_range(text),
        recognized=bool(tables),
    )


class KeywordQueryEngine:
    def __init__(self, session_factory: async_sessionmaker, row_limit: int = 50):
        self.session_factory = session_factory
        self.row_limit = row_limit

    async def run(self, message: str, caller: Caller) -> QueryResult:
        """Raises QueryExecutionError when the query cannot be run."""
        parsed = parse_keyword_query(message)
        spec = TABLES[parsed.table]

        if parsed.operation == "count":
            stmt = select(func.count()).select_from(spec.model)
        else:
            stmt = (
                select(spec.model)
                .order_by(spec.column(spec.date_column).desc())
                .limit(self.row_limit)
            )

        stmt = scope_to_caller(stmt, spec, caller)
        if parsed.name_prefix:
            stmt = stmt.where(spec.column(spec.label_column).ilike(f"{parsed.name_prefix}%"))
        if parsed.status and "status" in spec.filterable:
            stmt = stmt.where(func.lower(spec.column("status")) == parsed.status)
        if parsed.time_range is not None and parsed.time_range.start is not None:
            stmt = stmt.where(spec.column(spec.date_column) >= parsed.time_range.start)

        try:
            async with self.session_factory() as db:
                result = await db.execute(stmt)
                if parsed.operation == "count":
                    rows = [
                        {
                            "_source": spec.name,
                            "aggregation": "count",
                            "field": None,
                            "value": result.scalar() or 0,
                        }
                    ]
                else:
                    rows = [
                        {"_source": spec.name, **row_to_dict(instance)}
                        for instance in result.scalars().all()
                    ]
        except Exception as error:
            raise QueryExecutionError(f"Keyword query on {spec.name} failed: {error}") from error

        logger.info(
            f"Keyword engine answered for user {caller.id}: {parsed.describe()} -> {len(rows)} rows"
        )
        return QueryResult(
            rows=jsonable_encoder(rows),
            provenance_tables=[spec.name],
            query_text=statement_text(stmt),
            success=True,
            engine="keyword",
            confidence=parsed.confidence,
        )
