from __future__ import annotations

import hmac

from fastapi import HTTPException, Request, status

from app.core.config import settings


def _extract_admin_token(request: Request) -> str | None:
    return request.headers.get(settings.ADMIN_TOKEN_HEADER)


def require_admin_token(default_actor: str = "admin"):
    """Guard a route with the shared admin token; resolves to the acting user label."""

    def dependency(request: Request) -> str:
        expected = settings.ADMIN_API_TOKEN
        provided = _extract_admin_token(request)
        if not expected or not provided or not hmac.compare_digest(expected, provided):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid admin token",
            )
        actor = (request.headers.get("X-Admin-Actor") or "").strip()
        return actor or default_actor

    return dependency
