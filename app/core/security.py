from dataclasses import dataclass
from passlib.context import CryptContext
from datetime import datetime, timedelta, timezone
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from typing import Annotated, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import jwt

from app.core.database import get_db
from app.core import models
from app.core.config import settings

db_dep = Annotated[AsyncSession, Depends(get_db)]
# Hash mechanism
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

DEFAULT_ROLE = "employee"


@dataclass(frozen=True)
class Caller:
    """Who is talking to the assistant. Only the id and role matter downstream."""

    id: int
    role: str = DEFAULT_ROLE
    name: Optional[str] = None

    @property
    def is_elevated(self) -> bool:
        return self.role.lower() in {r.lower() for r in settings.ELEVATED_ROLES}


# Hash the password
def hash_password(password: str):
    return pwd_context.hash(password)


# Verify the password
def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict):
    to_encode = data.copy()

    expire_time = datetime.now(timezone.utc) + timedelta(
        minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    to_encode.update({"exp": expire_time})

    encoded_jwt = jwt.encode(
        to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM
    )

    return encoded_jwt


# auto_error=False: the X-User-Id header is an equally valid way in
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="profile/login", auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _load_user(user_id: int, db: AsyncSession) -> Optional[models.User]:
    query = select(models.User).where(models.User.id == user_id)
    result = await db.execute(query)
    return result.scalars().first()


# Figure out who is calling: trusted gateway header first, then bearer token
async def get_current_caller(
    db: db_dep,
    token: Annotated[Optional[str], Depends(oauth2_scheme)] = None,
    x_user_id: Annotated[Optional[str], Header()] = None,
) -> Caller:
    if x_user_id:
        try:
            user_id = int(x_user_id.strip())
        except ValueError:
            raise _unauthorized("Invalid x-user-id header")

        user = await _load_user(user_id, db)
        if user is None:
            # Known only by id: least privileged role, scoping still applies
            return Caller(id=user_id)
        return Caller(id=user.id, role=user.role or DEFAULT_ROLE, name=user.name)

    if not token:
        raise _unauthorized(
            "Unauthorized: User not found. Please provide x-user-id header or authenticate."
        )

    try:
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
        )
        user_id = payload.get("user_id")
    # Expired or tampered token
    except jwt.PyJWTError:
        raise _unauthorized("Could not validate credentials")

    if user_id is None:
        raise _unauthorized("Could not validate credentials")

    user = await _load_user(user_id, db)
    if user is None:
        raise _unauthorized("Could not validate credentials")

    return Caller(id=user.id, role=user.role or DEFAULT_ROLE, name=user.name)
