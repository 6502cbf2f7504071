"""Per-request caller identity."""

from __future__ import annotations

from fastapi import HTTPException, Request

from core.config import Settings


def resolve_user(request: Request, settings: Settings) -> str:
    """Map the request to an owner.

    With ``api_tokens`` configured, a matching ``Authorization: Bearer`` token
    is required. Without tokens the service runs single-user: the caller is the
    ``X-User-Id`` header, or ``default_user``.
    """
    if not settings.api_tokens:
        return request.headers.get("X-User-Id") or settings.default_user

    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            401, detail="Missing bearer token", headers={"WWW-Authenticate": "Bearer"},
        )
    user = settings.api_tokens.get(token.strip())
    if user is None:
        raise HTTPException(
            401, detail="Invalid token", headers={"WWW-Authenticate": "Bearer"},
        )
    return user
