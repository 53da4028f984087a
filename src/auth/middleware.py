"""Authentication middleware helpers."""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from src.auth.jwt import AuthContext, decode_identity_token


AUTH_CONTEXT_KEY = "auth_context"
AUTH_ERROR_KEY = "auth_error"


def _extract_bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization")
    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_auth_context(request: Request) -> Optional[AuthContext]:
    """Decode the bearer token, if any; a bad token is remembered on request state."""

    token = _extract_bearer_token(request)
    if not token:
        return None

    try:
        return decode_identity_token(token)
    except HTTPException:
        setattr(request.state, AUTH_ERROR_KEY, True)
        return None
