from datetime import datetime
from typing import Optional, List, Dict, Any
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator


# =========================
# Enums
# =========================
class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"


class ChatMode(str, Enum):
    COACH = "COACH"
    QUERY = "QUERY"


# =========================
# USER
# =========================
class UserBase(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    role: UserRole = UserRole.EMPLOYEE


class CreateUser(UserBase):
    password: str = Field(min_length=8)
    model_config = ConfigDict(from_attributes=True)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserResponse(UserBase):
    id: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =========================
# CHAT
# =========================
class ChatRequest(BaseModel):
    """
    Body of POST /chat.
    The message is trimmed here so every later stage sees the same text.
    """

    message: str
    mode: Optional[ChatMode] = None
    # Session ids are stored in a 36-character column (uuid4)
    session_id: Optional[str] = Field(default=None, alias="sessionId", max_length=36)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message is required and must be a non-empty string")
        return value

    @field_validator("session_id")
    @classmethod
    def blank_session_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class ChatResponse(BaseModel):
    answer: str
    mode: ChatMode
    data: Optional[List[Dict[str, Any]]] = None
    confidence: float
    session_id: str = Field(serialization_alias="sessionId")
    sql: Optional[str] = None
    sources: Optional[List[str]] = None


class ErrorResponse(BaseModel):
    error: str
    message: str


class RateLimitErrorResponse(ErrorResponse):
    reset_at: str = Field(serialization_alias="resetAt")


class IntentPreviewRequest(BaseModel):
    message: str

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message is required and must be a non-empty string")
        return value


class IntentPreviewResponse(BaseModel):
    intent: Dict[str, Any]
    confidence: float
    explanation: str
    estimated_complexity: str = Field(serialization_alias="estimatedComplexity")
