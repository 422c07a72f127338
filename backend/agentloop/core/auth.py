"""Caller identity for the control API.

Authentication happens in front of this service (gateway or auth proxy); the
resolved user id arrives in the ``X-User-ID`` header. Swap ``require_auth``
through ``app.dependency_overrides`` to plug in a different scheme.
"""

from dataclasses import dataclass

from fastapi import HTTPException, Request

USER_HEADER = "X-User-ID"


@dataclass(frozen=True)
class AuthUser:
    """Caller identity resolved for one request."""

    user_id: str


async def require_auth(request: Request) -> AuthUser:
    """Resolve the caller or reject the request with 401."""
    user_id = (request.headers.get(USER_HEADER) or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail=f"Missing {USER_HEADER} header")
    request.state.user_id = user_id
    return AuthUser(user_id=user_id)
