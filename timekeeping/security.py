from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from timekeeping.db import get_db
from timekeeping.errors import ForbiddenError, UnauthorizedError
from timekeeping.models import User, UserRole, UserStatus
from timekeeping.settings import get_settings

ACCESS_TOKEN_COOKIE = "access_token"
JWT_ALGORITHM = "HS256"

bearer_scheme = HTTPBearer(auto_error=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(user_id: int, role: str) -> str:
    settings = get_settings()
    now = _utcnow()
    claims = {
        "sub": str(user_id),
        "role": role,
        "typ": "access",
        "iat": int(now.timestamp()),
        "exp": int((now + settings.auth_access_token_ttl).timestamp()),
        "jti": str(uuid4()),
    }
    return jwt.encode(claims, settings.auth_jwt_secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[JWT_ALGORITHM],
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise UnauthorizedError("Invalid token") from exc

    if payload.get("typ") != "access":
        raise UnauthorizedError("Invalid token type")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise UnauthorizedError("Invalid token subject")
    return payload


def _extract_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None,
) -> str | None:
    cookie_token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if cookie_token:
        return cookie_token
    if credentials is not None and credentials.scheme.lower() == "bearer":
        return credentials.credentials
    return None


def require_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    token = _extract_token(request, credentials)
    if not token:
        raise UnauthorizedError("Missing access token")

    payload = decode_access_token(token)
    user = db.get(User, int(payload["sub"]))
    if user is None:
        raise UnauthorizedError("User not found")
    if user.status != UserStatus.active:
        raise ForbiddenError("Account disabled")

    request.state.actor = user.role.value
    request.state.actor_id = str(user.id)
    return user


def require_admin(user: User = Depends(require_user)) -> User:
    if user.role != UserRole.admin:
        raise ForbiddenError("Forbidden")
    return user
