from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.assistant.answer import AnswerSynthesizer
from app.assistant.intent import IntentClassifier
from app.assistant.keyword_engine import KeywordQueryEngine
from app.assistant.llm import TextCompletionClient, build_completion_client
from app.assistant.memory import ConversationMemory
from app.assistant.mode_router import ModeRouter
from app.assistant.monitoring import QueryMonitor
from app.assistant.query_cache import QueryCache
from app.assistant.query_engine import QueryExecutor
from app.assistant.rate_limiter import RateLimiter
from app.assistant.service import ChatPipeline
from app.assistant.sessions import SessionManager, session_cache
from app.core.config import settings
from app.core.database import get_session_factory

# Process-wide mutable state: request counters per caller and recent table results
rate_limiter = RateLimiter(
    max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
)
query_cache = QueryCache(max_entries=settings.QUERY_CACHE_MAX_ENTRIES)


def get_rate_limiter() -> RateLimiter:
    return rate_limiter


def get_query_cache() -> Optional[QueryCache]:
    return query_cache if settings.QUERY_CACHE_ENABLED else None


@lru_cache
def get_llm_client() -> Optional[TextCompletionClient]:
    return build_completion_client(settings.GEMINI_API_KEY, settings.GEMINI_MODEL)


factory_dep = Annotated[async_sessionmaker, Depends(get_session_factory)]
llm_dep = Annotated[Optional[TextCompletionClient], Depends(get_llm_client)]


def get_session_manager(session_factory: factory_dep) -> SessionManager:
    return SessionManager(
        session_factory, cache=session_cache, idle_minutes=settings.SESSION_IDLE_MINUTES
    )


def get_classifier(llm: llm_dep) -> IntentClassifier:
    return IntentClassifier(llm, timeout=settings.CLASSIFICATION_TIMEOUT_SECONDS)


def get_monitor(session_factory: factory_dep) -> QueryMonitor:
    return QueryMonitor(session_factory)


def get_pipeline(
    session_factory: factory_dep,
    llm: llm_dep,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    classifier: Annotated[IntentClassifier, Depends(get_classifier)],
    cache: Annotated[Optional[QueryCache], Depends(get_query_cache)],
    monitor: Annotated[QueryMonitor, Depends(get_monitor)],
) -> ChatPipeline:
    return ChatPipeline(
        sessions=sessions,
        memory=ConversationMemory(session_factory),
        router=ModeRouter(llm, timeout=settings.CLASSIFICATION_TIMEOUT_SECONDS),
        classifier=classifier,
        executor=QueryExecutor(
            session_factory,
            row_limit=settings.QUERY_ROW_LIMIT,
            timeout=settings.QUERY_TIMEOUT_SECONDS,
            cache=cache,
        ),
        keyword_engine=KeywordQueryEngine(session_factory, row_limit=settings.QUERY_ROW_LIMIT),
        synthesizer=AnswerSynthesizer(llm, timeout=settings.SYNTHESIS_TIMEOUT_SECONDS),
        monitor=monitor,
        history_limit=settings.HISTORY_LIMIT,
        confidence_floor=settings.EMPTY_RESULT_CONFIDENCE_FLOOR,
        fallback_timeout=settings.QUERY_TIMEOUT_SECONDS,
    )
