import pytest
from sqlalchemy import func, select

from app.assistant.memory import ConversationMemory, wait_for_pending_writes
from app.core import models
from tests.helpers import BrokenSessionFactory, TestingSessionLocal


@pytest.mark.asyncio
async def test_append_then_load_round_trip():
    memory = ConversationMemory(TestingSessionLocal)

    saved = await memory.append(
        7, "session-a", "How many leads?", "You have 2 leads.", "QUERY", {"engine": "structured"}
    )
    turns = await memory.load_recent(7, "session-a")
    again = await memory.load_recent(7, "session-a")

    assert saved is True
    assert again == turns
    assert [(t.role, t.content) for t in turns] == [
        ("user", "How many leads?"),
        ("assistant", "You have 2 leads."),
    ]
    assert turns[0].timestamp == turns[1].timestamp
    assert turns[1].routing_metadata == {"engine": "structured"}


@pytest.mark.asyncio
async def test_load_returns_latest_messages_oldest_first():
    memory = ConversationMemory(TestingSessionLocal)
    for i in range(4):
        await memory.append(7, "session-a", f"question {i}", f"answer {i}", "QUERY")

    turns = await memory.load_recent(7, "session-a", limit=3)

    assert [t.content for t in turns] == ["answer 2", "question 3", "answer 3"]


@pytest.mark.asyncio
async def test_sessions_and_callers_are_kept_apart():
    memory = ConversationMemory(TestingSessionLocal)
    await memory.append(7, "session-a", "mine", "ok", "COACH")
    await memory.append(8, "session-a", "someone else", "ok", "COACH")
    await memory.append(7, "session-b", "older chat", "ok", "COACH")

    turns = await memory.load_recent(7, "session-a")

    assert [t.content for t in turns] == ["mine", "ok"]


@pytest.mark.asyncio
async def test_zero_limit_loads_nothing():
    memory = ConversationMemory(TestingSessionLocal)
    await memory.append(7, "session-a", "hi", "hello", "COACH")

    assert await memory.load_recent(7, "session-a", limit=0) == []


@pytest.mark.asyncio
async def test_unreachable_store_degrades_quietly():
    memory = ConversationMemory(BrokenSessionFactory())

    assert await memory.load_recent(7, "session-a") == []
    assert await memory.append(7, "session-a", "hi", "hello", "COACH") is False


@pytest.mark.asyncio
async def test_background_append_lands(db_session):
    memory = ConversationMemory(TestingSessionLocal)

    task = memory.append_in_background(9, "session-z", "tips?", "Call your top leads.", "COACH")
    await wait_for_pending_writes(timeout=5)

    assert task.done() and task.result() is True
    count = await db_session.execute(
        select(func.count()).select_from(models.ConversationTurn).where(
            models.ConversationTurn.session_id == "session-z"
        )
    )
    assert count.scalar() == 2
