import logging
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from app.assistant.llm import TextCompletionClient, parse_json_object
from app.assistant.outcome import CompletionError, run_stage

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# INTENT CLASSIFIER
# Purpose: turn a QUERY-mode message into a structured Intent (tables,
# filters, aggregation, time range) plus a confidence score.
# The model does it when available; keyword rules take over otherwise.
# Confidence is informational only. It never blocks the query.
# -----------------------------------------------------------------------------


class IntentCategory(str, Enum):
    CONTACT_QUERY = "CONTACT_QUERY"
    ACCOUNT_QUERY = "ACCOUNT_QUERY"
    ACTIVITY_QUERY = "ACTIVITY_QUERY"
    QUOTATION_QUERY = "QUOTATION_QUERY"
    LEAD_QUERY = "LEAD_QUERY"
    PERFORMANCE_QUERY = "PERFORMANCE_QUERY"
    AGGREGATION_QUERY = "AGGREGATION_QUERY"
    COMPARISON_QUERY = "COMPARISON_QUERY"
    TREND_QUERY = "TREND_QUERY"
    PREDICTION_QUERY = "PREDICTION_QUERY"


class Aggregation(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVERAGE = "average"
    MAX = "max"
    MIN = "min"


KNOWN_TABLES = ("contacts", "accounts", "leads", "activities", "quotations")

# Words people use for each table
TABLE_ALIASES = {
    "contact": "contacts",
    "contacts": "contacts",
    "account": "accounts",
    "accounts": "accounts",
    "subaccount": "accounts",
    "subaccounts": "accounts",
    "sub-account": "accounts",
    "sub-accounts": "accounts",
    "sub_account": "accounts",
    "sub_accounts": "accounts",
    "sub account": "accounts",
    "sub accounts": "accounts",
    "company": "accounts",
    "companies": "accounts",
    "customer": "accounts",
    "customers": "accounts",
    "lead": "leads",
    "leads": "leads",
    "activity": "activities",
    "activities": "activities",
    "followup": "activities",
    "followups": "activities",
    "follow-up": "activities",
    "follow-ups": "activities",
    "follow up": "activities",
    "follow ups": "activities",
    "task": "activities",
    "tasks": "activities",
    "meeting": "activities",
    "meetings": "activities",
    "call": "activities",
    "calls": "activities",
    "quotation": "quotations",
    "quotations": "quotations",
    "quote": "quotations",
    "quotes": "quotations",
    "estimate": "quotations",
    "estimates": "quotations",
}

TABLE_CATEGORY = {
    "contacts": IntentCategory.CONTACT_QUERY,
    "accounts": IntentCategory.ACCOUNT_QUERY,
    "leads": IntentCategory.LEAD_QUERY,
    "activities": IntentCategory.ACTIVITY_QUERY,
    "quotations": IntentCategory.QUOTATION_QUERY,
}

AGGREGATION_ALIASES = {
    "count": Aggregation.COUNT,
    "sum": Aggregation.SUM,
    "total": Aggregation.SUM,
    "average": Aggregation.AVERAGE,
    "avg": Aggregation.AVERAGE,
    "mean": Aggregation.AVERAGE,
    "max": Aggregation.MAX,
    "maximum": Aggregation.MAX,
    "min": Aggregation.MIN,
    "minimum": Aggregation.MIN,
}

# Order matters: the first pattern that matches wins
AGGREGATION_PATTERNS = [
    (Aggregation.COUNT, re.compile(r"\b(?:how many|count|number of|total (?:number|count))\b")),
    (Aggregation.AVERAGE, re.compile(r"\b(?:average|avg|mean)\b")),
    (Aggregation.SUM, re.compile(r"\b(?:sum|total value|total amount|pipeline value|total pipeline|how much)\b")),
    (Aggregation.MAX, re.compile(r"\b(?:largest|highest|biggest|maximum|max|top)\b")),
    (Aggregation.MIN, re.compile(r"\b(?:smallest|lowest|minimum|min)\b")),
]

NAME_PREFIX = re.compile(
    r"(?:starting with|that start with|starts with|begin with|beginning with)\s+[\"']?([a-z0-9]+)[\"']?",
    re.IGNORECASE,
)
STATUS = re.compile(r"\bstatus\s*(?:is\b)?\s*[:=]?\s*[\"']?(\w+)[\"']?", re.IGNORECASE)
STATUS_WORDS = (
    "active", "inactive", "new", "contacted", "qualified", "won", "lost",
    "draft", "sent", "pending", "completed", "cancelled", "scheduled",
)
STATUS_ADJECTIVE = re.compile(
    rf"\b({'|'.join(STATUS_WORDS)})\s+(?:{'|'.join(re.escape(a) for a in sorted(TABLE_ALIASES, key=len, reverse=True))})\b",
    re.IGNORECASE,
)
NOT_A_STATUS = {"of", "my", "the", "for", "a", "an", "all", "and", "in", "with"}
LAST_N_DAYS = re.compile(r"(?:in\s+)?(?:the\s+)?(?:last|past)\s+(\d+)\s+days?", re.IGNORECASE)

COMPARISON = re.compile(r"\b(?:compare|comparison|versus|vs\.?|against)\b")
TREND = re.compile(r"\b(?:trend|trends|over time|growth|month over month|week over week)\b")
PREDICTION = re.compile(r"\b(?:predict|prediction|forecast|projected|will i|likely to)\b")
PERFORMANCE = re.compile(r"\b(?:performance|kpi|kpis|conversion|win rate|my stats|statistics|ranking)\b")


class TimeRange(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def lenient_datetime(cls, value):
        # Models sometimes answer "6 months ago" or "now"; drop what does not parse
        if value is None or isinstance(value, datetime):
            return value
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def is_empty(self) -> bool:
        return self.start is None and self.end is None


class Intent(BaseModel):
    category: IntentCategory = IntentCategory.CONTACT_QUERY
    target_entities: List[str] = Field(default_factory=lambda: ["contacts"])
    filters: Dict[str, Any] = Field(default_factory=dict)
    aggregation: Optional[Aggregation] = None
    time_range: Optional[TimeRange] = None
    confidence: float = 0.3
    explanation: str = ""
    source: str = "heuristic"  # model/heuristic

    def to_public(self) -> Dict[str, Any]:
        """JSON shape shown to clients (intent preview, stream `query` event)."""
        payload: Dict[str, Any] = {
            "category": self.category.value,
            "tables": list(self.target_entities),
            "filters": dict(self.filters),
        }
        if self.aggregation is not None:
            payload["aggregationType"] = self.aggregation.value
        if self.time_range is not None and not self.time_range.is_empty():
            payload["timeRange"] = {
                "start": self.time_range.start.isoformat() if self.time_range.start else None,
                "end": self.time_range.end.isoformat() if self.time_range.end else None,
            }
        return payload


def normalize_tables(values) -> List[str]:
    """Map aliases to table names, drop unknown ones, keep first-seen order."""
    tables: List[str] = []
    for value in values or []:
        key = str(value).strip().lower()
        table = TABLE_ALIASES.get(key, key if key in KNOWN_TABLES else None)
        if table and table not in tables:
            tables.append(table)
    return tables


# =========================
# Text extraction helpers (shared with the keyword engine)
# =========================
def find_tables(text: str) -> List[str]:
    lowered = text.lower()
    hits = []
    for alias, table in TABLE_ALIASES.items():
        match = re.search(rf"\b{re.escape(alias)}\b", lowered)
        if match:
            hits.append((match.start(), table))
    hits.sort()
    return normalize_tables(table for _, table in hits)


def find_aggregation(text: str) -> Optional[Aggregation]:
    lowered = text.lower()
    for aggregation, pattern in AGGREGATION_PATTERNS:
        if pattern.search(lowered):
            return aggregation
    return None


def find_name_prefix(text: str) -> Optional[str]:
    match = NAME_PREFIX.search(text)
    return match.group(1) if match else None


def find_status(text: str) -> Optional[str]:
    match = STATUS.search(text)
    if match and match.group(1).lower() not in NOT_A_STATUS:
        return match.group(1).lower()
    # "won quotations", "qualified leads"
    match = STATUS_ADJECTIVE.search(text)
    return match.group(1).lower() if match else None


def find_time_range(text: str, now: Optional[datetime] = None) -> Optional[TimeRange]:
    """
    Understands "today", "this week", "this month" and "last N days".

    Example:
        find_time_range("quotes from the last 7 days") -> start 7 days ago at midnight
    """
    now = now or datetime.now(timezone.utc)
    lowered = text.lower()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    days = LAST_N_DAYS.search(lowered)
    if days:
        return TimeRange(start=midnight - timedelta(days=int(days.group(1))))
    if re.search(r"\btoday\b", lowered):
        return TimeRange(start=midnight)
    if re.search(r"\bthis week\b", lowered):
        # Week starts on Monday
        return TimeRange(start=midnight - timedelta(days=midnight.weekday()))
    if re.search(r"\bthis month\b", lowered):
        return TimeRange(start=midnight.replace(day=1))
    return None


def classify_with_heuristics(message: str, now: Optional[datetime] = None) -> Intent:
    lowered = message.lower()

    tables = find_tables(message)
    aggregation = find_aggregation(message)
    time_range = find_time_range(message, now)

    filters: Dict[str, Any] = {}
    prefix = find_name_prefix(message)
    if prefix:
        filters["name_prefix"] = prefix
    status = find_status(message)
    if status:
        filters["status"] = status

    wants_performance = bool(PERFORMANCE.search(lowered))
    if not tables and wants_performance:
        tables = ["quotations", "activities"]

    if not tables:
        return Intent(
            category=IntentCategory.CONTACT_QUERY,
            target_entities=["contacts"],
            filters=filters,
            aggregation=aggregation,
            time_range=time_range,
            confidence=0.3,
            explanation="No CRM record type recognized. Defaulting to contacts.",
            source="heuristic",
        )

    if PREDICTION.search(lowered):
        category = IntentCategory.PREDICTION_QUERY
    elif COMPARISON.search(lowered):
        category = IntentCategory.COMPARISON_QUERY
    elif TREND.search(lowered):
        category = IntentCategory.TREND_QUERY
    elif wants_performance:
        category = IntentCategory.PERFORMANCE_QUERY
    elif aggregation is not None and len(tables) > 1:
        category = IntentCategory.AGGREGATION_QUERY
    else:
        category = TABLE_CATEGORY[tables[0]]

    confidence = 0.4
    if aggregation is not None:
        confidence += 0.1
    if filters or time_range is not None:
        confidence += 0.1

    return Intent(
        category=category,
        target_entities=tables,
        filters=filters,
        aggregation=aggregation,
        time_range=time_range,
        confidence=min(confidence, 0.6),
        explanation=f"Keyword match on {', '.join(tables)}",
        source="heuristic",
    )


# =========================
# Model answer schema
# =========================
class ModelIntentBody(BaseModel):
    category: IntentCategory = IntentCategory.CONTACT_QUERY
    tables: List[str] = Field(default_factory=list)
    filters: Dict[str, Any] = Field(default_factory=dict)
    aggregation_type: Optional[Aggregation] = Field(default=None, alias="aggregationType")
    time_range: Optional[TimeRange] = Field(default=None, alias="timeRange")

    @field_validator("category", mode="before")
    @classmethod
    def known_category(cls, value):
        if isinstance(value, str) and value.strip().upper() in IntentCategory.__members__:
            return value.strip().upper()
        return IntentCategory.CONTACT_QUERY

    @field_validator("tables", mode="before")
    @classmethod
    def tables_list(cls, value):
        if isinstance(value, str):
            return [value]
        return value if isinstance(value, list) else []

    @field_validator("filters", mode="before")
    @classmethod
    def filters_dict(cls, value):
        if not isinstance(value, dict):
            return {}
        # Keep plain values only, nested structures are not filterable
        return {
            str(key).strip().lower(): item
            for key, item in value.items()
            if isinstance(item, (str, int, float, bool)) and str(item).strip() != ""
        }

    @field_validator("aggregation_type", mode="before")
    @classmethod
    def known_aggregation(cls, value):
        if not isinstance(value, str):
            return None
        return AGGREGATION_ALIASES.get(value.strip().lower())

    @field_validator("time_range", mode="before")
    @classmethod
    def time_range_dict(cls, value):
        return value if isinstance(value, dict) else None


class ModelIntent(BaseModel):
    intent: ModelIntentBody = Field(default_factory=ModelIntentBody)
    confidence: float = 0.5
    explanation: str = "Intent classified based on question analysis"

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value):
        try:
            return max(0.0, min(1.0, float(value)))
        except (TypeError, ValueError):
            return 0.5

    @field_validator("explanation", mode="before")
    @classmethod
    def explanation_text(cls, value):
        return str(value) if value else "Intent classified based on question analysis"

    def to_intent(self) -> Intent:
        body = self.intent
        tables = normalize_tables(body.tables) or ["contacts"]
        time_range = body.time_range
        if time_range is not None and time_range.is_empty():
            time_range = None
        return Intent(
            category=body.category,
            target_entities=tables,
            filters=body.filters,
            aggregation=body.aggregation_type,
            time_range=time_range,
            confidence=self.confidence,
            explanation=self.explanation,
            source="model",
        )


def build_intent_prompt(message: str, caller_role: str) -> str:
    today = datetime.now(timezone.utc).date().isoformat()
    categories = ", ".join(category.value for category in IntentCategory)
    return (
        "You are an intent classification system for a CRM database query engine.\n"
        f"Categories: {categories}.\n"
        f"Tables: {', '.join(KNOWN_TABLES)}. Sub-accounts are stored in accounts, "
        "follow-ups and tasks in activities, quotes in quotations.\n"
        "Filters may use: status, name_prefix, name, city, industry, source, activity_type.\n"
        f"Today is {today}. The user's role is {caller_role}.\n\n"
        f'Question: "{message}"\n\n'
        "Respond with valid JSON only, no markdown:\n"
        '{"intent": {"category": "<category>", "tables": ["<table>"], '
        '"filters": {"<field>": "<value>"}, '
        '"aggregationType": "<count|sum|average|max|min|none>", '
        '"timeRange": {"start": "<ISO date or null>", "end": "<ISO date or null>"}}, '
        '"confidence": <0.0-1.0>, "explanation": "<why>"}'
    )


class IntentClassifier:
    def __init__(self, llm: Optional[TextCompletionClient], timeout: float = 8.0):
        self.llm = llm
        self.timeout = timeout

    async def _classify_with_model(self, message: str, caller_role: str) -> Intent:
        text = await self.llm.complete(
            build_intent_prompt(message, caller_role), max_tokens=400, temperature=0.1
        )
        try:
            return ModelIntent.model_validate(parse_json_object(text)).to_intent()
        except ValidationError as error:
            raise CompletionError(f"Intent answer has the wrong shape: {error}") from error

    async def classify(
        self, message: str, caller_id: int, caller_role: str = "employee"
    ) -> Intent:
        if self.llm is None:
            return classify_with_heuristics(message)

        outcome = await run_stage(
            "intent classification",
            self._classify_with_model(message, caller_role),
            self.timeout,
        )
        if outcome.ok:
            return outcome.value

        logger.warning(
            f"Intent classification degraded to keywords for user {caller_id}: {outcome.reason}"
        )
        return classify_with_heuristics(message)


CATEGORY_WEIGHT = {
    IntentCategory.CONTACT_QUERY: 1,
    IntentCategory.ACCOUNT_QUERY: 1,
    IntentCategory.ACTIVITY_QUERY: 1,
    IntentCategory.LEAD_QUERY: 1,
    IntentCategory.QUOTATION_QUERY: 2,
    IntentCategory.PERFORMANCE_QUERY: 3,
    IntentCategory.AGGREGATION_QUERY: 2,
    IntentCategory.COMPARISON_QUERY: 3,
    IntentCategory.TREND_QUERY: 3,
    IntentCategory.PREDICTION_QUERY: 4,
}


def estimate_complexity(intent: Intent) -> str:
    """SIMPLE / MODERATE / COMPLEX, from category weight plus what the query has to do."""
    score = CATEGORY_WEIGHT.get(intent.category, 2)
    score += max(0, len(intent.target_entities) - 1)
    if intent.aggregation is not None:
        score += 1
    if intent.time_range is not None:
        score += 1
    if len(intent.filters) > 2:
        score += len(intent.filters) - 2

    if score <= 2:
        return "SIMPLE"
    if score <= 4:
        return "MODERATE"
    return "COMPLEX"
