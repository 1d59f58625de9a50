import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI
import alembic.config
import alembic.command
from app.core.config import settings
from app.core.database import engine, get_session_factory
from app.api.router import api_router
from app.assistant.dependencies import get_rate_limiter, query_cache
from app.assistant.memory import wait_for_pending_writes
from app.assistant.sessions import SessionManager, session_cache

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic.command.upgrade(alembic_cfg, "head")


async def sweep_forever(interval: float):
    """
    Every `interval` seconds: drop expired rate-limit buckets and cached
    query results, and end idle sessions.
    """
    sessions = SessionManager(
        get_session_factory(),
        cache=session_cache,
        idle_minutes=settings.SESSION_IDLE_MINUTES,
    )
    while True:
        await asyncio.sleep(interval)
        try:
            await get_rate_limiter().sweep()
            await sessions.sweep()
            query_cache.clear_expired()
        except Exception as e:
            logger.error(f"Periodic sweep failed: {e}")


# Close the engine once everything is done and close all the sessions
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Apply any pending migrations automatically when the app starts
    try:
        await asyncio.to_thread(run_migrations)
        logger.info("Migrations applied successfully (or already up-to-date)")
    except Exception as e:
        logger.error(f"Migration error during startup: {e}")

    sweeper = asyncio.create_task(sweep_forever(settings.RATE_LIMIT_SWEEP_SECONDS))

    yield

    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    # Turns already answered still get written
    await wait_for_pending_writes(timeout=10)
    await engine.dispose()


app = FastAPI(title="CRM Assistant API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the CRM Assistant API"}
