from datetime import datetime, timedelta, timezone
from typing import Annotated

import bcrypt
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlmodel import Session, select

from .db import get_session
from .errors import (
    ExpiredSessionError,
    InvalidSessionError,
    SessionClearedError,
    UnauthorizedError,
)
from .models import TableSession, User, as_utc, utcnow
from .permissions import PermissionService, Permissions
from .settings import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/staff/auth/token", auto_error=False)

SESSION_TOKEN_TYPE = "table_session"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"), hashed_password.encode("utf-8")
        )
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


def decode_staff_token(token: str) -> dict | None:
    """Claims of a staff access token, or None when it does not verify."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("sub") is None or payload.get("tenant_id") is None:
        return None
    if payload.get("type") == SESSION_TOKEN_TYPE:
        return None
    return payload


async def get_token_from_cookie(
    request: Request,
    token: Annotated[str | None, Depends(oauth2_scheme)]
) -> str:
    """
    Get token from cookie (primary) or Authorization header (fallback).
    """
    cookie_token = request.cookies.get("access_token")
    if cookie_token:
        return cookie_token

    if token:
        return token

    raise UnauthorizedError("Not authenticated")


async def get_current_user(
    token: Annotated[str, Depends(get_token_from_cookie)],
    session: Annotated[Session, Depends(get_session)],
) -> User:
    credentials_exception = UnauthorizedError()
    payload = decode_staff_token(token)
    if payload is None:
        raise credentials_exception

    email: str = payload["sub"]
    tenant_id: int = payload["tenant_id"]
    token_version: int = payload.get("token_version", 0)

    statement = select(User).where(User.email == email).where(User.tenant_id == tenant_id)
    user = session.exec(statement).first()

    if user is None:
        raise credentials_exception

    # Check token version for revocation support
    if user.token_version != token_version:
        raise credentials_exception

    return user


class PermissionChecker:
    """Dependency: the current staff user, provided their role grants `permission`."""

    def __init__(self, permission: Permissions):
        self.permission = permission

    def __call__(self, user: Annotated[User, Depends(get_current_user)]) -> User:
        if not PermissionService.has_permission(user, self.permission):
            raise UnauthorizedError(
                f"Missing permission: {self.permission.value}",
                {"permission": self.permission.value},
            )
        return user


# ============ TABLE SESSIONS ============

def create_session_token(table_session: TableSession) -> str:
    """Signed cookie value carrying the session id until the session deadline."""
    return jwt.encode(
        {
            "sid": table_session.id,
            "tenant_id": table_session.tenant_id,
            "type": SESSION_TOKEN_TYPE,
            "exp": as_utc(table_session.expires_at),
        },
        settings.secret_key,
        algorithm=settings.algorithm,
    )


def decode_session_token(token: str | None) -> str:
    """Session id from a cookie value; raises the matching session error."""
    if not token:
        raise InvalidSessionError()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError:
        raise ExpiredSessionError()
    except JWTError:
        raise InvalidSessionError("Session credential is not valid")
    if payload.get("type") != SESSION_TOKEN_TYPE or not payload.get("sid"):
        raise InvalidSessionError("Session credential is not valid")
    return payload["sid"]


def load_table_session(session: Session, session_id: str) -> TableSession:
    table_session = session.get(TableSession, session_id)
    if table_session is None:
        raise InvalidSessionError()
    if table_session.cleared_at is not None:
        raise SessionClearedError()
    if not table_session.active or as_utc(table_session.expires_at) <= utcnow():
        raise ExpiredSessionError()
    return table_session


def get_table_session(
    request: Request,
    session: Annotated[Session, Depends(get_session)],
) -> TableSession:
    """Dependency: the diner's table session from the HttpOnly cookie."""
    session_id = decode_session_token(request.cookies.get(settings.session_cookie_name))
    return load_table_session(session, session_id)
