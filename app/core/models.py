from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    String,
    Numeric,
    Boolean,
    Float,
    TIMESTAMP,
    Text,
    JSON,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =========================
# User (CRM employee)
# =========================
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    email = Column(String, nullable=False, unique=True, index=True)
    password = Column(String, nullable=False)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, server_default="employee")

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# CRM records queried by the assistant
# =========================
class Account(Base):
    """
    A customer company (sub-accounts are folded in here).
    Scoped to the employee it is assigned to.
    """

    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String, nullable=False, index=True)
    industry = Column(String)
    city = Column(String)
    status = Column(String, server_default="active")
    engagement_score = Column(Numeric(5, 2))
    potential_value = Column(Numeric(14, 2))
    is_active = Column(Boolean, default=True)

    assigned_employee_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utc_now)

    contacts = relationship("Contact", back_populates="account")


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String, nullable=False, index=True)
    email = Column(String)
    phone = Column(String)
    designation = Column(String)
    status = Column(String, server_default="active")

    account_id = Column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True
    )
    assigned_to = Column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_by = Column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utc_now)

    account = relationship("Account", back_populates="contacts")


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String, nullable=False, index=True)
    source = Column(String)
    status = Column(String, server_default="new")  # new/contacted/qualified/won/lost
    value = Column(Numeric(14, 2))

    assigned_to = Column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utc_now)


class Activity(Base):
    """Calls, meetings, follow-ups and notes logged against an account."""

    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, autoincrement=True)

    activity_type = Column(String, nullable=False)  # call/meeting/email/follow_up/note
    description = Column(Text)
    status = Column(String, server_default="completed")

    account_id = Column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True
    )
    created_by = Column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    due_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utc_now)


class Quotation(Base):
    __tablename__ = "quotations"

    id = Column(Integer, primary_key=True, autoincrement=True)

    title = Column(String, nullable=False)
    status = Column(String, server_default="draft")  # draft/sent/won/lost
    total_price = Column(Numeric(14, 2))

    account_id = Column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=True
    )
    created_by = Column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utc_now)


# =========================
# Assistant state
# =========================
class ChatSession(Base):
    """Durable conversation session. Never mutated apart from activity bookkeeping."""

    __tablename__ = "ai_sessions"

    id = Column(String(36), primary_key=True)

    # No FK: callers identified only by header still get a session
    user_id = Column(Integer, nullable=False, index=True)

    started_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utc_now)
    last_activity_at = Column(
        TIMESTAMP(timezone=True), nullable=False, default=utc_now
    )
    ended_at = Column(TIMESTAMP(timezone=True), nullable=True)


class ConversationTurn(Base):
    """
    Append-only conversation log.
    One row per message: the user's question and the assistant's answer
    are written together once the answer is final.
    """

    __tablename__ = "ai_conversation_turns"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # No FK, same as ai_sessions
    user_id = Column(Integer, nullable=False, index=True)
    session_id = Column(String(36), nullable=False, index=True)

    role = Column(String(16), nullable=False)  # user/assistant
    content = Column(Text, nullable=False)
    mode = Column(String(8), nullable=False)  # COACH/QUERY

    routing_metadata = Column(JSON, nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=utc_now)


class QueryLog(Base):
    """
    One row per chat turn: how it was answered and how long each stage took.
    `timings` maps stage name to milliseconds.
    """

    __tablename__ = "ai_query_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # No FK, same as ai_sessions
    user_id = Column(Integer, nullable=False, index=True)
    session_id = Column(String(36), nullable=True)

    question = Column(Text, nullable=False)
    mode = Column(String(8), nullable=True)
    intent_category = Column(String(32), nullable=True)
    engine = Column(String(16), nullable=True)  # structured/keyword
    row_count = Column(Integer, nullable=False, default=0)
    cached = Column(Boolean, nullable=False, default=False)
    confidence = Column(Float, nullable=True)

    outcome = Column(String(16), nullable=False)  # done/query_failed/error/cancelled
    error = Column(Text, nullable=True)

    timings = Column(JSON, nullable=True)
    total_ms = Column(Float, nullable=False, default=0.0)

    created_at = Column(
        TIMESTAMP(timezone=True), nullable=False, default=utc_now, index=True
    )
