"""Identity token encode/verify primitives.

Tokens are issued by the identity provider; ``sub`` carries the user id and
the audience is ``authenticated``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import HTTPException, status

from src.core.config import get_settings


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str


def _signing_secret() -> str:
    settings = get_settings()
    return settings.identity_jwt_secret or settings.secret_key


def create_identity_token(context: AuthContext, *, expires_in: int = 3600) -> str:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": context.user_id,
        "email": context.email,
        "aud": settings.identity_jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
    }
    return jwt.encode(payload, _signing_secret(), algorithm=settings.identity_jwt_algorithm)


def decode_identity_token(token: str) -> AuthContext:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            _signing_secret(),
            algorithms=[settings.identity_jwt_algorithm],
            audience=settings.identity_jwt_audience,
        )
        return AuthContext(
            user_id=str(payload["sub"]),
            email=str(payload.get("email", "")),
        )
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from exc
