import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, Dict, Optional

from app.assistant.answer import AnswerSynthesizer, is_empty
from app.assistant.intent import IntentClassifier
from app.assistant.keyword_engine import KeywordQueryEngine
from app.assistant.memory import ConversationMemory
from app.assistant.mode_router import ModeRouter
from app.assistant.monitoring import QueryLogEntry, QueryMonitor, StageTimer
from app.assistant.outcome import Outcome, run_stage
from app.assistant.query_engine import QueryExecutor, QueryResult
from app.assistant.sessions import SessionManager
from app.assistant.streaming import EventType, StreamEvent
from app.core.schemas import ChatMode
from app.core.security import Caller

logger = logging.getLogger(__name__)

# Messages shown to the user. Internal error text never leaves the server
QUERY_FAILED_MESSAGE = (
    "I couldn't retrieve your CRM data right now. "
    "Please try again in a moment or rephrase your question."
)
INTERNAL_ERROR_MESSAGE = (
    "Something went wrong while answering your question. Please try again."
)


def switch_acknowledgement(mode: ChatMode) -> str:
    if mode == ChatMode.COACH:
        return (
            "Switched to COACH mode. Ask me for advice, strategy or next steps "
            "and I'll coach you based on your CRM activity."
        )
    return (
        "Switched to QUERY mode. Ask me about your contacts, accounts, leads, "
        "activities or quotations and I'll look up the data."
    )


class ChatPipeline:
    """
    One chat turn, from session lookup to the final answer.

    `run` yields the turn as an ordered stream of events:

        status -> mode -> query -> data -> response_start -> chunk* -> response_end -> done

    Stages that do not apply are skipped (no `mode` when the client pinned one,
    no `query`/`data` for coaching). The last event is always `done` or `error`.
    The streaming endpoint forwards these events as they come, the JSON
    endpoint keeps only the last one, so both share every stage.
    `chunk` events carry the model's answer as it is generated.
    """

    def __init__(
        self,
        sessions: SessionManager,
        memory: ConversationMemory,
        router: ModeRouter,
        classifier: IntentClassifier,
        executor: QueryExecutor,
        keyword_engine: KeywordQueryEngine,
        synthesizer: AnswerSynthesizer,
        monitor: Optional[QueryMonitor] = None,
        history_limit: int = 10,
        confidence_floor: float = 0.5,
        fallback_timeout: float = 10.0,
    ):
        self.sessions = sessions
        self.memory = memory
        self.router = router
        self.classifier = classifier
        self.executor = executor
        self.keyword_engine = keyword_engine
        self.synthesizer = synthesizer
        self.monitor = monitor
        self.history_limit = history_limit
        self.confidence_floor = confidence_floor
        self.fallback_timeout = fallback_timeout

    async def run(
        self,
        caller: Caller,
        message: str,
        pinned_mode: Optional[ChatMode] = None,
        session_id: Optional[str] = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        timer = StageTimer()
        entry = QueryLogEntry(user_id=caller.id, question=message)
        stages = self._stages(caller, message, pinned_mode, session_id, timer, entry)
        try:
            async for event in stages:
                yield event
        except Exception as error:
            logger.exception(f"Chat pipeline failed for user {caller.id}")
            entry.outcome = "error"
            entry.error = str(error)
            yield StreamEvent(
                EventType.ERROR,
                {"error": "Internal server error", "message": INTERNAL_ERROR_MESSAGE},
            )
        finally:
            await stages.aclose()
            if self.monitor is not None:
                entry.timings = timer.timings
                entry.total_ms = timer.total_ms()
                self.monitor.record_in_background(entry)

    async def _query_with_fallback(
        self, intent, message: str, caller: Caller
    ) -> Outcome[QueryResult]:
        primary = await self.executor.execute(intent, caller)
        if primary.ok:
            return primary

        # Exactly one fallback, and its verdict is final
        logger.warning(
            f"Structured query failed for user {caller.id} ({primary.reason}), trying keyword engine"
        )
        fallback = await run_stage(
            "keyword query", self.keyword_engine.run(message, caller), self.fallback_timeout
        )
        if not fallback.ok:
            logger.error(f"Keyword engine failed for user {caller.id}: {fallback.reason}")
        return fallback

    async def _stages(
        self,
        caller: Caller,
        message: str,
        pinned_mode: Optional[ChatMode],
        supplied_session_id: Optional[str],
        timer: StageTimer,
        entry: QueryLogEntry,
    ) -> AsyncGenerator[StreamEvent, None]:
        yield StreamEvent(EventType.STATUS, {"message": "Processing your request..."})

        with timer.measure("session"):
            session = await self.sessions.resolve(caller.id, supplied_session_id)
            history = []
            if session.persisted:
                history = await self.memory.load_recent(
                    caller.id, session.session_id, self.history_limit
                )
        entry.session_id = session.session_id

        with timer.measure("routing"):
            decision = await self.router.route(message, caller.id, history, pinned=pinned_mode)
        mode = decision.mode
        entry.mode = mode.value
        if decision.source != "pinned":
            mode_payload: Dict[str, Any] = {
                "mode": mode.value,
                "confidence": decision.confidence,
                "reason": decision.reason,
            }
            if decision.suggested_mode is not None:
                mode_payload["suggestedMode"] = decision.suggested_mode.value
            yield StreamEvent(EventType.MODE, mode_payload)

        question = decision.message
        result: Optional[QueryResult] = None
        metadata = decision.as_metadata()

        if decision.switched and not question:
            draft = self.synthesizer.fixed(switch_acknowledgement(mode))
            confidence = 1.0

        elif mode == ChatMode.COACH:
            with timer.measure("snapshot"):
                snapshot_outcome = await run_stage(
                    "coach snapshot", self.executor.snapshot(caller), self.executor.timeout
                )
            snapshot = snapshot_outcome.value if snapshot_outcome.ok else None
            draft = self.synthesizer.answer_coach(question, caller, snapshot, history)
            confidence = decision.confidence

        else:
            with timer.measure("classification"):
                intent = await self.classifier.classify(question, caller.id, caller.role)
            entry.intent_category = intent.category.value
            yield StreamEvent(
                EventType.QUERY,
                {
                    "intent": intent.to_public(),
                    "confidence": intent.confidence,
                    "explanation": intent.explanation,
                },
            )

            with timer.measure("query"):
                outcome = await self._query_with_fallback(intent, question, caller)
            if not outcome.ok:
                entry.outcome = "query_failed"
                entry.error = outcome.reason
                yield StreamEvent(
                    EventType.ERROR,
                    {"error": "Query failed", "message": QUERY_FAILED_MESSAGE},
                )
                return

            result = outcome.value
            confidence = result.confidence if result.confidence is not None else intent.confidence
            metadata["intent_category"] = intent.category.value
            metadata["engine"] = result.engine
            entry.engine = result.engine
            entry.row_count = result.row_count
            entry.cached = result.cached

            yield StreamEvent(
                EventType.DATA,
                {
                    "rows": result.rows,
                    "rowCount": result.row_count,
                    "sources": result.provenance_tables,
                    "sql": result.query_text,
                    "engine": result.engine,
                    "cacheHit": result.cached,
                },
            )

            if is_empty(result):
                draft = self.synthesizer.answer_empty(question, result, intent, caller)
                confidence = max(confidence, self.confidence_floor)
            else:
                draft = self.synthesizer.answer_query(question, result, caller)

        yield StreamEvent(EventType.RESPONSE_START, {"mode": mode.value})
        started = timer.clock()
        async with aclosing(draft.__aiter__()) as pieces:
            async for piece in pieces:
                yield StreamEvent(EventType.CHUNK, {"text": piece})
        timer.record("synthesis", started)
        answer = draft.answer

        # The answer is final: persist it without holding up the response
        if session.persisted:
            self.memory.append_in_background(
                caller.id, session.session_id, message, answer.text, mode.value, metadata
            )

        yield StreamEvent(EventType.RESPONSE_END, {"length": len(answer.text)})

        entry.outcome = "done"
        entry.confidence = round(confidence, 3)
        body: Dict[str, Any] = {
            "answer": answer.text,
            "mode": mode.value,
            "confidence": round(confidence, 3),
            "sessionId": session.session_id,
        }
        if result is not None:
            body["data"] = result.rows
            body["sql"] = result.query_text
            body["sources"] = result.provenance_tables
        yield StreamEvent(EventType.DONE, body)


async def run_to_completion(events: AsyncGenerator[StreamEvent, None]) -> StreamEvent:
    """Drain the pipeline and return its terminal event."""
    last = None
    try:
        async for event in events:
            last = event
            if event.is_terminal:
                break
    finally:
        await events.aclose()
    return last
