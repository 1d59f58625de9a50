from datetime import datetime, timezone

import pytest

from app.assistant.memory import TurnRecord
from app.assistant.mode_router import (
    ModeRouter,
    classify_with_heuristics,
    detect_switch,
)
from app.assistant.outcome import CompletionError
from app.core.schemas import ChatMode
from tests.helpers import FakeLLM, SlowLLM


def turn(content: str, role: str = "user") -> TurnRecord:
    return TurnRecord(
        caller_id=1,
        session_id="s",
        role=role,
        content=content,
        mode="QUERY",
        timestamp=datetime.now(timezone.utc),
    )


def test_detect_switch_extracts_remaining_text():
    mode, remainder = detect_switch("Switch to coach mode, how can I close more deals?")

    assert mode == ChatMode.COACH
    assert remainder == "how can I close more deals?"


def test_detect_switch_with_nothing_left():
    assert detect_switch("please switch to query mode.") == (ChatMode.QUERY, "")
    assert detect_switch("go back to assistant mode") == (ChatMode.QUERY, "")


def test_no_switch_phrase():
    assert detect_switch("How many contacts do I have?") is None


def test_heuristics_pick_query_for_data_questions():
    decision = classify_with_heuristics("How many contacts do I have?")

    assert decision.mode == ChatMode.QUERY
    assert 0.5 < decision.confidence <= 0.9


def test_heuristics_pick_coach_for_advice():
    decision = classify_with_heuristics("What should I do to improve my follow up strategy?")

    assert decision.mode == ChatMode.COACH


def test_greetings_go_to_coach():
    assert classify_with_heuristics("Hello!").mode == ChatMode.COACH


def test_ambiguous_message_defaults_to_query():
    decision = classify_with_heuristics("hmm okay")

    assert decision.mode == ChatMode.QUERY
    assert decision.confidence == 0.4


def test_history_tilts_follow_ups():
    decision = classify_with_heuristics("and for last week?", [turn("show me my quotations")])

    assert decision.mode == ChatMode.QUERY
    assert "history" in decision.reason


@pytest.mark.asyncio
async def test_switch_phrase_beats_pinned_mode_and_model():
    llm = FakeLLM('{"mode": "QUERY", "confidence": 0.99}')
    router = ModeRouter(llm)

    decision = await router.route(
        "switch to coach mode and tell me how many leads I have",
        caller_id=1,
        pinned=ChatMode.QUERY,
    )

    assert decision.mode == ChatMode.COACH
    assert decision.source == "switch"
    assert decision.message == "tell me how many leads I have"
    assert llm.prompts == []


@pytest.mark.asyncio
async def test_pinned_mode_skips_classification():
    llm = FakeLLM('{"mode": "COACH", "confidence": 0.99}')
    decision = await ModeRouter(llm).route("Give me tips", caller_id=1, pinned=ChatMode.QUERY)

    assert decision.mode == ChatMode.QUERY
    assert decision.source == "pinned"
    assert llm.prompts == []


@pytest.mark.asyncio
async def test_confident_model_wins():
    llm = FakeLLM('```json\n{"mode": "COACH", "confidence": 0.85, "reason": "advice"}\n```')
    decision = await ModeRouter(llm).route("show me data", caller_id=1)

    assert decision.mode == ChatMode.COACH
    assert decision.confidence == 0.85
    assert decision.source == "model"


@pytest.mark.asyncio
async def test_medium_model_confidence_agreeing_with_heuristics_is_boosted():
    llm = FakeLLM('{"mode": "QUERY", "confidence": 0.6}')
    decision = await ModeRouter(llm).route("How many contacts do I have?", caller_id=1)

    assert decision.mode == ChatMode.QUERY
    assert decision.confidence == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_medium_model_confidence_disagreeing_uses_heuristics():
    llm = FakeLLM('{"mode": "COACH", "confidence": 0.55}')
    decision = await ModeRouter(llm).route("How many contacts do I have?", caller_id=1)

    assert decision.mode == ChatMode.QUERY
    assert decision.confidence == 0.6
    assert decision.suggested_mode == ChatMode.COACH
    assert decision.as_metadata()["suggested_mode"] == "COACH"


@pytest.mark.asyncio
async def test_model_failure_defaults_to_query():
    router = ModeRouter(FakeLLM(CompletionError("boom")))

    decision = await router.route("Give me some tips", caller_id=1)

    assert decision.mode == ChatMode.QUERY
    assert decision.confidence == 0.3
    assert decision.source == "default"


@pytest.mark.asyncio
async def test_malformed_model_output_defaults_to_query():
    router = ModeRouter(FakeLLM("I think this is a coaching question"))

    decision = await router.route("Give me some tips", caller_id=1)

    assert decision.mode == ChatMode.QUERY
    assert decision.source == "default"


@pytest.mark.asyncio
async def test_model_timeout_defaults_to_query():
    router = ModeRouter(SlowLLM(), timeout=0.05)

    decision = await router.route("Give me some tips", caller_id=1)

    assert decision.mode == ChatMode.QUERY
    assert decision.confidence == 0.3


@pytest.mark.asyncio
async def test_only_recent_history_reaches_the_model():
    llm = FakeLLM('{"mode": "QUERY", "confidence": 0.9}')
    history = [turn(f"message number {i}") for i in range(15)]

    await ModeRouter(llm).route("and now?", caller_id=1, history=history)

    assert "message number 14" in llm.prompts[0]
    assert "message number 4" not in llm.prompts[0]
