import os
import uuid
from decimal import Decimal

# Settings are read at import time, so the test values must be in place first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_crm.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("ACCESS_TOKEN_EXPIRE_MINUTES", "30")
os.environ["GEMINI_API_KEY"] = ""

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import Caller, create_access_token, hash_password
from app.main import app
from app.core import models
from app.core.database import Base, get_db, get_session_factory
from app.assistant.dependencies import get_llm_client, get_query_cache, get_rate_limiter
from app.assistant.memory import wait_for_pending_writes
from app.assistant.query_cache import QueryCache
from app.assistant.rate_limiter import RateLimiter
from app.assistant.sessions import session_cache
from tests.helpers import TestingSessionLocal, test_engine


# Fresh schema for every test and drop it once the test is done
@pytest_asyncio.fixture(scope="function", autouse=True)
async def set_up_db():
    async with test_engine.begin() as conn:
        # Create all tables
        await conn.run_sync(Base.metadata.create_all)
    session_cache.clear()
    yield  # Tests happens here
    # Background conversation writes must land before the tables go
    await wait_for_pending_writes(timeout=5)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# Create session and rollback once it is done
@pytest_asyncio.fixture(scope="function")
async def db_session():
    async with TestingSessionLocal() as session:
        yield session
        await session.rollback()
        await session.close()


@pytest_asyncio.fixture(scope="function")
async def limiter():
    return RateLimiter(max_requests=5, window_seconds=3600)


@pytest_asyncio.fixture(scope="function")
async def query_cache():
    return QueryCache()


# Client
@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, limiter: RateLimiter, query_cache: QueryCache):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    # No completion service unless a test scripts one
    app.dependency_overrides[get_llm_client] = lambda: None
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_query_cache] = lambda: query_cache

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def _make_user(db_session: AsyncSession, prefix: str, role: str, name: str):
    # Generate unique email for each test to avoid duplicates
    unique_email = f"{prefix}_{uuid.uuid4().hex[:8]}@gmail.com"
    user = models.User(
        email=unique_email,
        password=hash_password("password123"),
        name=name,
        role=role,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


# Employee
@pytest_asyncio.fixture(scope="function")
async def test_user(db_session: AsyncSession):
    return await _make_user(db_session, "test", "employee", "Asha")


# Another employee, owns records test_user must never see
@pytest_asyncio.fixture(scope="function")
async def other_user(db_session: AsyncSession):
    return await _make_user(db_session, "other", "employee", "Ravi")


# Admin
@pytest_asyncio.fixture(scope="function")
async def test_admin(db_session: AsyncSession):
    return await _make_user(db_session, "admin", "admin", "Meera")


@pytest_asyncio.fixture(scope="function")
async def caller(test_user):
    return Caller(id=test_user.id, role=test_user.role, name=test_user.name)


# Gateway-style identity header
@pytest_asyncio.fixture(scope="function")
async def user_headers(test_user):
    return {"X-User-Id": str(test_user.id)}


# Token for user
@pytest_asyncio.fixture(scope="function")
async def auth_headers_user(test_user):
    token = create_access_token({"user_id": test_user.id})
    return {"Authorization": f"Bearer {token}"}


# CRM records: three contacts, two accounts, a lead and quotations for test_user,
# plus one of each for other_user
@pytest_asyncio.fixture(scope="function")
async def crm_data(db_session: AsyncSession, test_user, other_user):
    mine = models.Account(
        name="Acme Steel", industry="Manufacturing", city="Pune",
        potential_value=Decimal("250000.00"), assigned_employee_id=test_user.id,
    )
    also_mine = models.Account(
        name="Bharat Infra", industry="Construction", city="Mumbai",
        potential_value=Decimal("100000.00"), assigned_employee_id=test_user.id,
    )
    theirs = models.Account(
        name="Zenith Roads", industry="Construction", city="Delhi",
        potential_value=Decimal("900000.00"), assigned_employee_id=other_user.id,
    )
    db_session.add_all([mine, also_mine, theirs])
    await db_session.flush()

    db_session.add_all(
        [
            models.Contact(name="Megha Rao", account_id=mine.id, assigned_to=test_user.id, status="active"),
            models.Contact(name="Manoj Shah", account_id=mine.id, assigned_to=test_user.id, status="active"),
            models.Contact(name="Kiran Das", account_id=also_mine.id, created_by=test_user.id, status="inactive"),
            models.Contact(name="Other Person", account_id=theirs.id, assigned_to=other_user.id),
            models.Lead(name="Metro Project", status="qualified", value=Decimal("50000.00"), assigned_to=test_user.id),
            models.Lead(name="Hidden Lead", status="new", value=Decimal("70000.00"), assigned_to=other_user.id),
            models.Quotation(title="Q-101 Guard rails", status="sent", total_price=Decimal("1200.50"), account_id=mine.id, created_by=test_user.id),
            models.Quotation(title="Q-102 Crash barriers", status="won", total_price=Decimal("800.00"), account_id=also_mine.id, created_by=test_user.id),
            models.Quotation(title="Q-900 Not yours", status="sent", total_price=Decimal("5000.00"), account_id=theirs.id, created_by=other_user.id),
            models.Activity(activity_type="call", description="Intro call", account_id=mine.id, created_by=test_user.id),
        ]
    )
    await db_session.commit()
    return {"account": mine, "other_account": theirs}
