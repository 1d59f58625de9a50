import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Coroutine, Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core import models
from app.core.models import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnRecord:
    """One stored message, as read back for routing and answer context."""

    caller_id: int
    session_id: str
    role: str  # user/assistant
    content: str
    mode: str
    timestamp: datetime
    routing_metadata: Optional[Dict[str, Any]] = None


# Writes dispatched in the background (turns and query logs). Held here so
# they are not garbage collected mid-flight and so shutdown can wait for them
_pending_writes: Set[asyncio.Task] = set()


class ConversationMemory:
    """
    Append-only conversation log backed by ai_conversation_turns.

    Reads degrade to an empty history and writes never raise: the chat
    must answer whether or not the log is reachable.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def load_recent(
        self, caller_id: int, session_id: str, limit: int = 10
    ) -> List[TurnRecord]:
        """Last `limit` messages of the session, oldest first."""
        if limit <= 0:
            return []

        query = (
            select(models.ConversationTurn)
            .where(
                models.ConversationTurn.user_id == caller_id,
                models.ConversationTurn.session_id == session_id,
            )
            .order_by(models.ConversationTurn.id.desc())
            .limit(limit)
        )

        try:
            async with self.session_factory() as db:
                result = await db.execute(query)
                rows = result.scalars().all()
        except Exception as error:
            logger.warning(
                f"Could not load history for user {caller_id}, session {session_id}: {error}"
            )
            return []

        return [
            TurnRecord(
                caller_id=row.user_id,
                session_id=row.session_id,
                role=row.role,
                content=row.content,
                mode=row.mode,
                timestamp=row.created_at,
                routing_metadata=row.routing_metadata,
            )
            for row in reversed(rows)
        ]

    async def append(
        self,
        caller_id: int,
        session_id: str,
        user_message: str,
        assistant_message: str,
        mode: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Store the question and its answer in one transaction.

        Returns False when the write failed. The failure is logged, never raised.
        """
        now = utc_now()
        try:
            async with self.session_factory() as db:
                db.add_all(
                    [
                        models.ConversationTurn(
                            user_id=caller_id,
                            session_id=session_id,
                            role="user",
                            content=user_message,
                            mode=mode,
                            routing_metadata=metadata,
                            created_at=now,
                        ),
                        models.ConversationTurn(
                            user_id=caller_id,
                            session_id=session_id,
                            role="assistant",
                            content=assistant_message,
                            mode=mode,
                            routing_metadata=metadata,
                            created_at=now,
                        ),
                    ]
                )
                await db.commit()
        except Exception as error:
            logger.error(
                f"Failed to save conversation turn for user {caller_id}, session {session_id}: {error}"
            )
            return False
        return True

    def append_in_background(self, *args, **kwargs) -> asyncio.Task:
        """Fire-and-forget `append`. The response path never awaits the task."""
        return dispatch_write(self.append(*args, **kwargs))


def dispatch_write(write: Coroutine[Any, Any, Any]) -> asyncio.Task:
    """Run a write in the background, tracked so shutdown can wait for it."""
    task = asyncio.create_task(write)
    _pending_writes.add(task)
    task.add_done_callback(_pending_writes.discard)
    return task


async def wait_for_pending_writes(timeout: Optional[float] = None) -> None:
    if not _pending_writes:
        return
    pending = list(_pending_writes)
    logger.info(f"Waiting for {len(pending)} background writes to finish")
    done, not_done = await asyncio.wait(pending, timeout=timeout)
    if not_done:
        logger.warning(f"{len(not_done)} background writes still running at shutdown")
