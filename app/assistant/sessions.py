import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core import models
from app.core.models import utc_now

logger = logging.getLogger(__name__)


@dataclass
class CachedSession:
    session_id: str
    last_activity_at: datetime


@dataclass(frozen=True)
class SessionResolution:
    session_id: str
    # False when the session could not be stored: history is empty and the turn is not kept
    persisted: bool = True
    created: bool = False


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionCache:
    """Process-local map of caller id -> their current session."""

    def __init__(self):
        self._sessions: Dict[int, CachedSession] = {}

    def get(self, caller_id: int) -> Optional[CachedSession]:
        return self._sessions.get(caller_id)

    def put(self, caller_id: int, session_id: str, now: datetime) -> None:
        self._sessions[caller_id] = CachedSession(session_id, now)

    def pop(self, caller_id: int) -> Optional[CachedSession]:
        return self._sessions.pop(caller_id, None)

    def items(self):
        return list(self._sessions.items())

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)


class SessionManager:
    """
    Resolves the conversation session a message belongs to.

    A session id sent by the client is trusted as is. Otherwise the caller's
    latest open session is reused while it has seen activity within the idle
    window, and a fresh one is started when it has gone quiet.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: Optional[SessionCache] = None,
        idle_minutes: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.cache = cache if cache is not None else SessionCache()
        self.idle_window = timedelta(minutes=idle_minutes)
        self._clock = clock

    def _is_active(self, last_activity_at: datetime, now: datetime) -> bool:
        return now - _as_utc(last_activity_at) <= self.idle_window

    async def resolve(
        self, caller_id: int, supplied_session_id: Optional[str] = None
    ) -> SessionResolution:
        if supplied_session_id:
            return SessionResolution(session_id=supplied_session_id)

        now = self._clock()
        try:
            return await self._resolve_stored(caller_id, now)
        except Exception as error:
            # Answer anyway, just without memory for this call
            logger.warning(
                f"Session lookup failed for user {caller_id}, continuing without memory: {error}"
            )
            return SessionResolution(
                session_id=str(uuid.uuid4()), persisted=False, created=True
            )

    async def _resolve_stored(self, caller_id: int, now: datetime) -> SessionResolution:
        cached = self.cache.get(caller_id)

        async with self.session_factory() as db:
            if cached is not None:
                if self._is_active(cached.last_activity_at, now):
                    await self._touch(db, cached.session_id, now)
                    await db.commit()
                    self.cache.put(caller_id, cached.session_id, now)
                    return SessionResolution(session_id=cached.session_id)

                await self._close(db, cached.session_id, now)
                self.cache.pop(caller_id)

            query = (
                select(models.ChatSession)
                .where(
                    models.ChatSession.user_id == caller_id,
                    models.ChatSession.ended_at.is_(None),
                )
                .order_by(models.ChatSession.last_activity_at.desc())
                .limit(1)
            )
            result = await db.execute(query)
            latest = result.scalars().first()

            if latest is not None:
                if self._is_active(latest.last_activity_at, now):
                    latest.last_activity_at = now
                    await db.commit()
                    self.cache.put(caller_id, latest.id, now)
                    return SessionResolution(session_id=latest.id)
                latest.ended_at = now

            new_session = models.ChatSession(
                id=str(uuid.uuid4()),
                user_id=caller_id,
                started_at=now,
                last_activity_at=now,
            )
            db.add(new_session)
            await db.commit()

        self.cache.put(caller_id, new_session.id, now)
        logger.info(f"Started conversation session {new_session.id} for user {caller_id}")
        return SessionResolution(session_id=new_session.id, created=True)

    async def _touch(self, db, session_id: str, now: datetime) -> None:
        await db.execute(
            update(models.ChatSession)
            .where(models.ChatSession.id == session_id)
            .values(last_activity_at=now)
        )

    async def _close(self, db, session_id: str, now: datetime) -> None:
        await db.execute(
            update(models.ChatSession)
            .where(
                models.ChatSession.id == session_id,
                models.ChatSession.ended_at.is_(None),
            )
            .values(ended_at=now)
        )

    async def end(self, caller_id: int) -> int:
        """End every open session of the caller. Returns how many were closed."""
        now = self._clock()
        self.cache.pop(caller_id)

        async with self.session_factory() as db:
            result = await db.execute(
                update(models.ChatSession)
                .where(
                    models.ChatSession.user_id == caller_id,
                    models.ChatSession.ended_at.is_(None),
                )
                .values(ended_at=now)
            )
            await db.commit()
        return result.rowcount or 0

    async def sweep(self) -> int:
        now = self._clock()
        idle = [
            (caller_id, cached)
            for caller_id, cached in self.cache.items()
            if not self._is_active(cached.last_activity_at, now)
        ]
        if not idle:
            return 0

        for caller_id, _ in idle:
            self.cache.pop(caller_id)

        try:
            async with self.session_factory() as db:
                for _, cached in idle:
                    await self._close(db, cached.session_id, now)
                await db.commit()
        except Exception as error:
            logger.error(f"Failed to end {len(idle)} idle sessions: {error}")

        logger.info(f"Session sweep ended {len(idle)} idle sessions")
        return len(idle)


# One cache per process, shared by every request
session_cache = SessionCache()
