"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the login and federated callback flows.
  2. Authorization: Bearer <token> header -- API clients.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi because it is part of
the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.tokens import decode_access_token


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via cookie or Bearer token. Never raises."""
    store = request.app.state.store

    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if token:
        payload = decode_access_token(token)
        if payload:
            # Re-read the record: flags and is_active may have changed since issue.
            user = store.find_user_by_id(payload["user_id"])
            if user and user.is_active:
                return user
    return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
