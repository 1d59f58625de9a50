import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ValidationError, field_validator

from app.assistant.llm import TextCompletionClient, parse_json_object
from app.assistant.memory import TurnRecord
from app.assistant.outcome import CompletionError, run_stage
from app.core.schemas import ChatMode

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# MODE ROUTER
# Purpose: decide whether a message is a data question (QUERY) or a request
# for advice (COACH). Order of precedence:
#   1. "switch to X mode" written in the message
#   2. mode pinned by the client
#   3. model classification blended with keyword heuristics
# Any failure while classifying lands on QUERY.
# ---------------------------------------------------------------------------

MAX_HISTORY_TURNS = 10

QUERY_KEYWORDS = [
    "how many", "how much", "count", "total", "sum", "average",
    "show me", "list", "display", "find", "search", "get",
    "what is", "what are", "which", "when did", "where is",
    "tell me about", "give me", "show", "see", "view",
    "quotation", "quote", "contact", "account", "activity", "lead",
    "performance", "statistics", "data", "report", "analytics",
]

COACH_KEYWORDS = [
    "how can i", "how should i", "what should i", "what can i",
    "help me", "advice", "suggest", "recommend", "tip", "tips",
    "improve", "better", "strategy", "strategic", "guidance",
    "coach", "mentor", "learn", "understand", "explain",
    "next step", "what to do", "how to", "best practice",
    "encourage", "motivate", "support",
]

QUESTION_WORDS = ("what", "when", "where", "who", "which", "how many", "how much")

GREETING = re.compile(
    r"^\s*(?:hi|hello|hey|good morning|good afternoon|good evening)\b[\s!.,]*",
    re.IGNORECASE,
)

SWITCH_PHRASE = re.compile(
    r"\b(?:switch|change|go|move)(?:\s+back)?\s+(?:over\s+)?to\s+(?:the\s+)?"
    r"(coach|coaching|query|data|assistant)\s+mode\b",
    re.IGNORECASE,
)

SWITCH_TARGETS = {
    "coach": ChatMode.COACH,
    "coaching": ChatMode.COACH,
    "query": ChatMode.QUERY,
    "data": ChatMode.QUERY,
    "assistant": ChatMode.QUERY,
}


def _keyword_hits(text: str, keywords: Sequence[str]) -> int:
    # Leading boundary only, so plurals still count
    return sum(1 for keyword in keywords if re.search(rf"\b{re.escape(keyword)}", text))


@dataclass
class RoutingDecision:
    mode: ChatMode
    confidence: float
    reason: str
    source: str  # switch/pinned/model/blended/heuristic/default
    message: str  # text routed forward, switch phrase removed
    suggested_mode: Optional[ChatMode] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def switched(self) -> bool:
        return self.source == "switch"

    def as_metadata(self) -> Dict[str, Any]:
        """Shape stored with the turn as routing_metadata."""
        metadata = {
            "mode": self.mode.value,
            "confidence": round(self.confidence, 3),
            "reason": self.reason,
            "source": self.source,
        }
        if self.suggested_mode is not None:
            metadata["suggested_mode"] = self.suggested_mode.value
        metadata.update(self.extras)
        return metadata


class ModelRouting(BaseModel):
    """What the model is asked to return. Every field has a safe default."""

    mode: ChatMode = ChatMode.QUERY
    confidence: float = 0.5
    reason: str = "Classified by AI"

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, value):
        if isinstance(value, str) and value.strip().upper() in ("COACH", "QUERY"):
            return value.strip().upper()
        return ChatMode.QUERY

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, value):
        try:
            return max(0.0, min(1.0, float(value)))
        except (TypeError, ValueError):
            return 0.5

    @field_validator("reason", mode="before")
    @classmethod
    def reason_text(cls, value):
        return str(value) if value else "Classified by AI"


def detect_switch(message: str) -> Optional[tuple]:
    """
    Find a literal mode switch such as "switch to coach mode".

    Returns (mode, remaining_text) or None. The remaining text has the
    phrase and any dangling punctuation stripped and may be empty.
    """
    match = SWITCH_PHRASE.search(message)
    if match is None:
        return None

    mode = SWITCH_TARGETS[match.group(1).lower()]
    remainder = (message[: match.start()] + " " + message[match.end():]).strip()
    remainder = re.sub(r"^(?:please\b)?[\s,.;:!\-]*", "", remainder, flags=re.IGNORECASE)
    remainder = re.sub(r"[\s,;:\-]*(?:please)?[\s,;:\-]*$", "", remainder, flags=re.IGNORECASE)
    remainder = re.sub(r"^(?:and|then)\b[\s,]*", "", remainder, flags=re.IGNORECASE)
    return mode, remainder.strip()


def classify_with_heuristics(
    message: str, history: Sequence[TurnRecord] = ()
) -> RoutingDecision:
    text = message.lower().strip()

    if GREETING.match(text) and _keyword_hits(text, QUERY_KEYWORDS) == 0:
        return RoutingDecision(
            mode=ChatMode.COACH,
            confidence=0.8,
            reason="Greeting",
            source="heuristic",
            message=message,
        )

    query_score = _keyword_hits(text, QUERY_KEYWORDS)
    coach_score = _keyword_hits(text, COACH_KEYWORDS)
    has_question_word = text.startswith(QUESTION_WORDS)

    # Follow-ups tend to stay in the mode of the previous message
    history_bias = 0.0
    if history:
        last = history[-1].content.lower()
        if _keyword_hits(last, QUERY_KEYWORDS):
            history_bias = 0.3
        elif _keyword_hits(last, COACH_KEYWORDS):
            history_bias = -0.3

    final_query = query_score + (1 if has_question_word else 0) + history_bias
    final_coach = coach_score - history_bias
    total = final_query + final_coach

    if final_query > final_coach:
        mode = ChatMode.QUERY
        confidence = min(0.9, 0.5 + (final_query / max(1.0, total)) * 0.4) if total > 0 else 0.5
        reason = f"Detected query patterns: {query_score} query keywords"
        if has_question_word:
            reason += ", question word detected"
    elif final_coach > final_query:
        mode = ChatMode.COACH
        confidence = min(0.9, 0.5 + (final_coach / max(1.0, total)) * 0.4) if total > 0 else 0.5
        reason = f"Detected coaching patterns: {coach_score} coach keywords"
    else:
        mode = ChatMode.QUERY
        confidence = 0.4
        reason = "Ambiguous message, defaulting to QUERY mode"

    if history_bias:
        reason += " (influenced by conversation history)"

    return RoutingDecision(
        mode=mode,
        confidence=confidence,
        reason=reason,
        source="heuristic",
        message=message,
    )


def blend(model: ModelRouting, heuristic: RoutingDecision, message: str) -> RoutingDecision:
    """Combine the model's verdict with the keyword heuristic."""
    if model.confidence >= 0.7:
        return RoutingDecision(
            mode=model.mode,
            confidence=model.confidence,
            reason=model.reason,
            source="model",
            message=message,
        )

    if model.confidence >= 0.5:
        if heuristic.mode == model.mode:
            return RoutingDecision(
                mode=model.mode,
                confidence=min(0.95, model.confidence + 0.1),
                reason=f"{model.reason} (confirmed by heuristics)",
                source="blended",
                message=message,
            )
        return RoutingDecision(
            mode=heuristic.mode,
            confidence=0.6,
            reason=f"Model and heuristics disagree. Using heuristics: {heuristic.reason}",
            source="blended",
            message=message,
            suggested_mode=model.mode,
        )

    return RoutingDecision(
        mode=heuristic.mode,
        confidence=heuristic.confidence,
        reason=f"Low model confidence. Using heuristics: {heuristic.reason}",
        source="heuristic",
        message=message,
        suggested_mode=model.mode if model.mode != heuristic.mode else None,
    )


def _format_history(history: Sequence[TurnRecord]) -> str:
    lines = []
    for turn in history[-3:]:
        speaker = "User" if turn.role == "user" else "Assistant"
        lines.append(f"{speaker}: {turn.content}")
    return "\n".join(lines)


def build_routing_prompt(message: str, history: Sequence[TurnRecord]) -> str:
    prompt = (
        "You are a conversation router for a CRM AI assistant. "
        "Classify the user's message into one of two modes:\n\n"
        "1. QUERY mode: the user wants to retrieve data, see information or get facts "
        'from the CRM. Examples: "How many contacts do I have?", "Show me my activities", '
        '"List all accounts".\n'
        "2. COACH mode: the user wants advice, guidance, strategic help or coaching. "
        'Examples: "How can I improve my sales?", "What should I do next?", "Give me tips".\n\n'
        "Follow-up questions often stay in the previous mode.\n\n"
        'Respond with JSON only: {"mode": "QUERY" or "COACH", "confidence": 0.0 to 1.0, '
        '"reason": "brief explanation"}\n\n'
        f'Message to classify: "{message}"'
    )
    if history:
        prompt += f"\n\nConversation history:\n{_format_history(history)}"
    return prompt


class ModeRouter:
    def __init__(self, llm: Optional[TextCompletionClient], timeout: float = 8.0):
        self.llm = llm
        self.timeout = timeout

    async def _classify_with_model(
        self, message: str, history: Sequence[TurnRecord]
    ) -> ModelRouting:
        text = await self.llm.complete(
            build_routing_prompt(message, history), max_tokens=200, temperature=0.1
        )
        try:
            return ModelRouting.model_validate(parse_json_object(text))
        except ValidationError as error:
            raise CompletionError(f"Routing answer has the wrong shape: {error}") from error

    async def route(
        self,
        message: str,
        caller_id: int,
        history: Sequence[TurnRecord] = (),
        pinned: Optional[ChatMode] = None,
    ) -> RoutingDecision:
        switch = detect_switch(message)
        if switch is not None:
            mode, remainder = switch
            return RoutingDecision(
                mode=mode,
                confidence=1.0,
                reason=f"Switched to {mode.value} mode on request",
                source="switch",
                message=remainder,
            )

        if pinned is not None:
            return RoutingDecision(
                mode=pinned,
                confidence=1.0,
                reason="Mode selected by the client",
                source="pinned",
                message=message,
            )

        recent: List[TurnRecord] = list(history)[-MAX_HISTORY_TURNS:]
        heuristic = classify_with_heuristics(message, recent)

        if self.llm is None:
            return heuristic

        outcome = await run_stage(
            "mode routing", self._classify_with_model(message, recent), self.timeout
        )
        if not outcome.ok:
            logger.warning(f"Mode routing degraded to QUERY for user {caller_id}: {outcome.reason}")
            return RoutingDecision(
                mode=ChatMode.QUERY,
                confidence=0.3,
                reason="Classification failed, defaulting to QUERY mode",
                source="default",
                message=message,
            )

        return blend(outcome.value, heuristic, message)
