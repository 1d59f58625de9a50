import asyncio

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.assistant.answer import AnswerSynthesizer
from app.assistant.intent import IntentClassifier
from app.assistant.keyword_engine import KeywordQueryEngine
from app.assistant.memory import ConversationMemory
from app.assistant.mode_router import ModeRouter
from app.assistant.monitoring import QueryMonitor
from app.assistant.outcome import CompletionError
from app.assistant.query_engine import QueryExecutor
from app.assistant.service import ChatPipeline
from app.assistant.sessions import SessionManager, session_cache
from app.assistant.streaming import split_chunks

# Force to use a throwaway SQLite db for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test_crm.db"

# Create an engine and session (workers) factory
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
TestingSessionLocal = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)


class FakeLLM:
    """
    Scripted text-completion client.
    Each call pops the next reply; an exception in the script is raised instead.
    When streamed, a string reply arrives a few words at a time and a list
    reply arrives item by item, with any exception in it raised mid-stream.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []

    def _next_reply(self, prompt):
        self.prompts.append(prompt)
        if not self.replies:
            raise CompletionError("No scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def complete(self, prompt, max_tokens=1024, temperature=0.3):
        reply = self._next_reply(prompt)
        return reply if isinstance(reply, str) else "".join(reply)

    async def stream_complete(self, prompt, max_tokens=1024, temperature=0.3):
        reply = self._next_reply(prompt)
        pieces = split_chunks(reply, 12) if isinstance(reply, str) else reply
        for piece in pieces:
            if isinstance(piece, BaseException):
                raise piece
            yield piece


class SlowLLM:
    """Completion client that takes far longer than any stage deadline."""

    async def complete(self, prompt, max_tokens=1024, temperature=0.3):
        await asyncio.sleep(5)
        return '{"mode": "COACH", "confidence": 0.9}'

    async def stream_complete(self, prompt, max_tokens=1024, temperature=0.3):
        await asyncio.sleep(5)
        yield "Too late to matter."


class BrokenSessionFactory:
    """Session factory whose every session fails on first use."""

    def __call__(self):
        raise RuntimeError("database is unreachable")


def build_pipeline(session_factory=None, llm=None, **overrides):
    """ChatPipeline wired to the test database; any stage can be swapped out."""
    session_factory = session_factory or TestingSessionLocal
    parts = dict(
        sessions=SessionManager(session_factory, cache=session_cache),
        memory=ConversationMemory(session_factory),
        router=ModeRouter(llm),
        classifier=IntentClassifier(llm),
        executor=QueryExecutor(session_factory),
        keyword_engine=KeywordQueryEngine(session_factory),
        synthesizer=AnswerSynthesizer(llm),
        monitor=QueryMonitor(session_factory),
    )
    parts.update(overrides)
    return ChatPipeline(**parts)
