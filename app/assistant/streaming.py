import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    STATUS = "status"
    MODE = "mode"
    QUERY = "query"
    DATA = "data"
    RESPONSE_START = "response_start"
    CHUNK = "chunk"
    RESPONSE_END = "response_end"
    DONE = "done"
    ERROR = "error"


TERMINAL_EVENTS = (EventType.DONE, EventType.ERROR)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    # Stop nginx and friends from holding events back
    "X-Accel-Buffering": "no",
}


@dataclass(frozen=True)
class StreamEvent:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS


def encode_sse(event: StreamEvent) -> str:
    data = json.dumps(event.payload, ensure_ascii=False, default=str)
    return f"event: {event.type.value}\ndata: {data}\n\n"


_CHUNK_BOUNDARY = re.compile(r"(?<=\s)")


def split_chunks(text: str, size: int = 48) -> List[str]:
    """
    Cut an answer into pieces of roughly `size` characters, breaking on
    whitespace so words arrive whole. Joining the pieces gives back `text`.
    """
    chunks: List[str] = []
    current = ""
    for piece in _CHUNK_BOUNDARY.split(text):
        if current and len(current) + len(piece) > size:
            chunks.append(current)
            current = ""
        current += piece
    if current:
        chunks.append(current)
    return chunks


async def sse_body(
    events: AsyncGenerator[StreamEvent, None],
    is_disconnected: Callable[[], Awaitable[bool]],
    caller_id: Any = None,
) -> AsyncIterator[str]:
    """
    Drain the pipeline into SSE frames until a terminal event or until the
    client goes away. The client is checked before each event is pulled, and
    on disconnect the pipeline generator is closed, so no later stage runs
    for this request.
    """
    sent = "nothing"
    try:
        while True:
            if await is_disconnected():
                logger.warning(
                    f"Client disconnected mid-stream for user {caller_id}, stopped after {sent}"
                )
                break
            try:
                event = await anext(events)
            except StopAsyncIteration:
                break
            yield encode_sse(event)
            sent = event.type.value
            if event.is_terminal:
                break
    finally:
        await events.aclose()
