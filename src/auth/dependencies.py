"""FastAPI dependencies for caller identity checks."""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request, status

from src.auth.jwt import AuthContext
from src.auth.middleware import AUTH_CONTEXT_KEY, AUTH_ERROR_KEY
from src.core.config import get_settings


def get_optional_auth_context(request: Request) -> Optional[AuthContext]:
    if getattr(request.state, AUTH_ERROR_KEY, False):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return getattr(request.state, AUTH_CONTEXT_KEY, None)


def ensure_caller_matches(auth: Optional[AuthContext], user_id: str) -> None:
    """Bind the body/query ``user_id`` to the bearer token when one is presented."""

    if auth is None:
        if get_settings().auth_required:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
            )
        return
    if auth.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token subject does not match user_id",
        )
