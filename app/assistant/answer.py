import asyncio
import json
import logging
import re
from contextlib import aclosing
from dataclasses import dataclass
from functools import partial
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from app.assistant.intent import Intent
from app.assistant.llm import TextCompletionClient
from app.assistant.memory import TurnRecord
from app.assistant.query_engine import QueryResult
from app.assistant.streaming import split_chunks
from app.core.security import Caller

logger = logging.getLogger(__name__)

VERIFY_NOTE = (
    "**Note:** Some numbers in this response may need verification. "
    "Please cross-reference with the source data."
)
RESULTS_NOTE = "_Based on the query results._"
INTERRUPTED_NOTE = "_The answer was cut short. Ask again for the full reply._"

COACH_FALLBACK = (
    "I'm here to help, but I couldn't put together coaching advice right now. "
    "A good next step is to review your open leads and follow up on the ones you "
    "haven't contacted this week. Feel free to ask again or rephrase your question."
)

ADD_HINTS = {
    "contacts": "add contacts to your accounts from the Contacts page",
    "accounts": "create an account from the Accounts page",
    "leads": "capture a new lead from the Leads page",
    "activities": "log a call, meeting or follow-up against one of your accounts",
    "quotations": "create a quotation for one of your accounts",
}


@dataclass(frozen=True)
class Answer:
    text: str
    source: str  # model/fallback/partial/fixed


# =========================
# Answer hygiene
# =========================
_NUMBER = re.compile(r"\d[\d,]*\.?\d*")
_LIST_MARKER = re.compile(r"^\s*\d+[.)]\s+", re.MULTILINE)


def extract_numbers(text: str) -> List[float]:
    numbers = []
    for match in _NUMBER.findall(_LIST_MARKER.sub("", text)):
        try:
            numbers.append(float(match.replace(",", "").rstrip(".")))
        except ValueError:
            continue
    return numbers


def check_answer(answer: str, context: str) -> str:
    """
    Flag numbers the data does not back up, and make sure a data answer
    says where it came from. Notes go after the answer, which has already
    been streamed by the time it can be checked.
    """
    known = extract_numbers(context)
    suspicious = [
        number
        for number in extract_numbers(answer)
        if not any(abs(number - value) < 0.01 for value in known)
    ]
    if suspicious:
        logger.warning(f"Answer cites numbers missing from the data: {suspicious[:5]}")
        return f"{answer}\n\n{VERIFY_NOTE}"

    lowered = answer.lower()
    if not any(word in lowered for word in ("query", "data", "result")):
        return f"{answer}\n\n{RESULTS_NOTE}"
    return answer


# =========================
# Deterministic answers
# =========================
def _format_value(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:,.2f}"
    if isinstance(value, int):
        return f"{value:,}"
    return str(value)


def _row_label(row: Dict[str, Any]) -> str:
    for key in ("name", "title", "activity_type"):
        if row.get(key):
            return str(row[key])
    return f"#{row.get('id', '?')}"


def summarize_rows(result: QueryResult) -> str:
    """Plain-text answer built straight from the rows."""
    lines = ["Here is what the query returned:"]

    aggregates = [row for row in result.rows if "aggregation" in row]
    for row in aggregates:
        table = row["_source"]
        if row["aggregation"] == "count":
            lines.append(f"- {table}: {_format_value(row['value'])} records")
        else:
            lines.append(
                f"- {table}: {row['aggregation']} of {row['field']} is {_format_value(row['value'])}"
            )

    records = [row for row in result.rows if "aggregation" not in row]
    by_table: Dict[str, List[Dict[str, Any]]] = {}
    for row in records:
        by_table.setdefault(row["_source"], []).append(row)
    for table, rows in by_table.items():
        shown = ", ".join(_row_label(row) for row in rows[:5])
        more = f" and {len(rows) - 5} more" if len(rows) > 5 else ""
        lines.append(f"- {len(rows)} {table}: {shown}{more}")

    return "\n".join(lines)


def data_type_for(result: Optional[QueryResult], intent: Optional[Intent]) -> str:
    if result is not None and result.provenance_tables:
        return result.provenance_tables[0]
    if intent is not None and intent.target_entities:
        return intent.target_entities[0]
    return "records"


def empty_result_nudge(data_type: str, intent: Optional[Intent] = None) -> str:
    hint = ADD_HINTS.get(data_type, "add some records to your CRM")
    narrowing = ""
    if intent is not None and (intent.filters or intent.time_range is not None):
        narrowing = " The filters in your question (such as status, name or date range) may also be narrower than you meant."
    return (
        f"I couldn't find any {data_type} matching your question. "
        f"You may not have any {data_type} assigned to you in the CRM yet.{narrowing} "
        f"To get started, {hint}, or try a broader question such as "
        f"\"Show me all my {data_type}\"."
    )


def is_empty(result: QueryResult) -> bool:
    if not result.rows:
        return True
    # A lone count of zero is as empty as no rows at all
    return all(
        row.get("aggregation") == "count" and not row.get("value") for row in result.rows
    )


# =========================
# Prompts
# =========================
def _history_text(history: Sequence[TurnRecord]) -> str:
    if not history:
        return ""
    lines = [
        f"{'User' if turn.role == 'user' else 'Assistant'}: {turn.content}"
        for turn in history[-6:]
    ]
    return "\nRecent conversation:\n" + "\n".join(lines) + "\n"


def build_query_prompt(question: str, result: QueryResult, caller: Caller) -> str:
    rows = json.dumps(result.rows[:50], default=str)
    return (
        "You are a precise CRM data analyst. Answer using only the query results below.\n"
        f"User role: {caller.role}\n"
        "Guidelines:\n"
        "- Cite specific numbers, dates and names from the results.\n"
        "- If something is not in the results, say so. Never invent data.\n"
        "- Use markdown for lists and tables. Be concise.\n\n"
        f"Question: {question}\n"
        f"Tables queried: {', '.join(result.provenance_tables)}\n"
        f"Query results ({result.row_count} rows):\n{rows}"
    )


def build_empty_prompt(question: str, data_type: str, intent: Optional[Intent]) -> str:
    filters = json.dumps(intent.to_public(), default=str) if intent else "{}"
    return (
        f'The user asked: "{question}"\n\n'
        "The query returned no results. Write a helpful, friendly reply that:\n"
        f"1. Acknowledges that no {data_type} data was found\n"
        f"2. Says they might not have any {data_type} yet, or that the filters may be too narrow\n"
        f"3. Explains how to add {data_type} to their CRM\n"
        "4. Suggests an alternative question they could ask\n"
        "Keep it to 2-3 encouraging, actionable sentences.\n\n"
        f"Interpreted query: {filters}"
    )


def build_coach_prompt(
    question: str,
    caller: Caller,
    snapshot: Optional[Dict[str, Any]],
    history: Sequence[TurnRecord],
) -> str:
    stats = json.dumps(snapshot, default=str) if snapshot else "not available"
    return (
        "You are an expert CRM sales coach. Give strategic guidance, encouragement and "
        "actionable tips.\n"
        f"User: {caller.name or caller.id} ({caller.role})\n"
        f"Their CRM snapshot: {stats}\n"
        "Guidelines:\n"
        "- Be encouraging and specific. Suggest concrete next steps.\n"
        "- Reference the snapshot where it helps. Never make up statistics.\n"
        "- Use markdown headers and bullet points. Be concise.\n"
        f"{_history_text(history)}\n"
        f"Question: {question}"
    )


class AnswerStream:
    """
    An answer as it is produced.

    Iterating yields the text piece by piece: the model's output as it
    arrives, or the fixed fallback cut into chunks when the model gives
    nothing usable in time. Once iteration ends, `answer` holds the whole
    text, which is always the pieces joined.
    """

    def __init__(
        self,
        llm: Optional[TextCompletionClient],
        stage: str,
        prompt: str,
        caller: Optional[Caller],
        fallback: str,
        timeout: float = 20.0,
        chunk_size: int = 48,
        review: Optional[Callable[[str], str]] = None,
        fallback_source: str = "fallback",
    ):
        self.llm = llm
        self.stage = stage
        self.prompt = prompt
        self.caller = caller
        self.fallback = fallback
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.review = review
        self.fallback_source = fallback_source
        self.answer: Optional[Answer] = None

    @classmethod
    def fixed(cls, text: str, chunk_size: int = 48) -> "AnswerStream":
        return cls(
            None, "fixed answer", "", None, text, chunk_size=chunk_size, fallback_source="fixed"
        )

    def __aiter__(self) -> AsyncIterator[str]:
        return self._pieces()

    async def collect(self) -> Answer:
        async with aclosing(self._pieces()) as pieces:
            async for _ in pieces:
                pass
        return self.answer

    async def _model_pieces(self) -> AsyncIterator[str]:
        # One deadline for the whole answer, not per piece
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        async with aclosing(self.llm.stream_complete(self.prompt)) as pieces:
            while True:
                remaining = max(deadline - loop.time(), 0)
                try:
                    piece = await asyncio.wait_for(anext(pieces), timeout=remaining)
                except StopAsyncIteration:
                    return
                yield piece

    async def _pieces(self) -> AsyncIterator[str]:
        text = ""
        failure = None
        if self.llm is not None:
            try:
                async with aclosing(self._model_pieces()) as pieces:
                    async for piece in pieces:
                        if not text:
                            piece = piece.lstrip()
                        if piece:
                            text += piece
                            yield piece
            except asyncio.TimeoutError:
                failure = f"timed out after {self.timeout:.1f}s"
            except Exception as error:
                failure = str(error) or type(error).__name__
            if failure is None and not text:
                failure = "empty answer"

        caller_id = self.caller.id if self.caller is not None else None
        if not text:
            if failure is not None:
                logger.warning(
                    f"{self.stage} fell back to a fixed answer for user {caller_id}: {failure}"
                )
            for piece in split_chunks(self.fallback, self.chunk_size):
                yield piece
            self.answer = Answer(self.fallback, self.fallback_source)
            return

        if failure is not None:
            logger.warning(f"{self.stage} was cut short for user {caller_id}: {failure}")
            tail = f"\n\n{INTERRUPTED_NOTE}"
            yield tail
            self.answer = Answer(text + tail, "partial")
            return

        if self.review is not None:
            reviewed = self.review(text)
            # Review only ever adds to the end of what was already sent
            tail = reviewed[len(text):]
            if tail:
                yield tail
            text = reviewed
        self.answer = Answer(text, "model")


class AnswerSynthesizer:
    def __init__(
        self, llm: Optional[TextCompletionClient], timeout: float = 20.0, chunk_size: int = 48
    ):
        self.llm = llm
        self.timeout = timeout
        self.chunk_size = chunk_size

    def _stream(
        self,
        stage: str,
        prompt: str,
        caller: Caller,
        fallback: str,
        review: Optional[Callable[[str], str]] = None,
    ) -> AnswerStream:
        return AnswerStream(
            self.llm,
            stage,
            prompt,
            caller,
            fallback,
            timeout=self.timeout,
            chunk_size=self.chunk_size,
            review=review,
        )

    def fixed(self, text: str) -> AnswerStream:
        return AnswerStream.fixed(text, self.chunk_size)

    def answer_query(self, question: str, result: QueryResult, caller: Caller) -> AnswerStream:
        context = json.dumps(result.rows, default=str)
        return self._stream(
            "answer synthesis",
            build_query_prompt(question, result, caller),
            caller,
            summarize_rows(result),
            review=partial(check_answer, context=context),
        )

    def answer_empty(
        self, question: str, result: Optional[QueryResult], intent: Optional[Intent], caller: Caller
    ) -> AnswerStream:
        data_type = data_type_for(result, intent)
        return self._stream(
            "empty-result answer",
            build_empty_prompt(question, data_type, intent),
            caller,
            empty_result_nudge(data_type, intent),
        )

    def answer_coach(
        self,
        question: str,
        caller: Caller,
        snapshot: Optional[Dict[str, Any]],
        history: Sequence[TurnRecord],
    ) -> AnswerStream:
        return self._stream(
            "coaching answer",
            build_coach_prompt(question, caller, snapshot, history),
            caller,
            COACH_FALLBACK,
        )
