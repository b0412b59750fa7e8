"""Identity provider — JWT bearer tokens and bcrypt password hashing.

The planner only needs the authenticated user id, which partitions
conversations, jobs and credit accounts.
"""
import os
from datetime import datetime, timezone, timedelta
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.models_db import User

SECRET_KEY = os.getenv("SECRET_KEY", "travelplanner-dev-secret-change-in-production")
ALGORITHM = "HS256"
# Long-lived so a trip can be planned across several days on one device
TOKEN_EXPIRE_HOURS = int(os.getenv("TOKEN_EXPIRE_HOURS", str(24 * 7)))

bearer = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


def create_access_token(user_id: str) -> str:
    issued = datetime.now(timezone.utc)
    claims = {"sub": user_id, "iat": issued, "exp": issued + timedelta(hours=TOKEN_EXPIRE_HOURS)}
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def user_id_from_token(token: str) -> Optional[str]:
    """The token's subject, or None if the token is invalid or expired."""
    try:
        claims = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    subject = claims.get("sub")
    return subject if isinstance(subject, str) and subject else None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    """FastAPI dependency — the signed-in user; 401 otherwise."""
    if credentials is None:
        raise _unauthorized("Not authenticated")
    user_id = user_id_from_token(credentials.credentials)
    if user_id is None:
        raise _unauthorized("Invalid or expired token")
    user = db.get(User, user_id)
    if user is None:
        raise _unauthorized("User not found")
    return user


async def current_user_id(user: User = Depends(get_current_user)) -> str:
    """FastAPI dependency — the partition key for planner state."""
    return user.id
