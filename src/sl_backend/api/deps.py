from __future__ import annotations

from typing import Iterator, Optional

from fastapi import Header, HTTPException, Request, status

from sl_backend.config import get_admin_token, get_environment
from sl_backend.embedding_provider import EmbeddingProvider, HttpEmbeddingProvider


async def require_admin(
    request: Request,
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> None:
    """
    Dependency that enforces a simple token-based admin auth scheme.

    Behaviour:
    - If SEMANTICLINKER_ENV is "production" or "staging" and
      SEMANTICLINKER_ADMIN_TOKEN is unset, fail closed with HTTP 500.
    - If SEMANTICLINKER_ADMIN_TOKEN is unset in other environments, allow all
      requests (dev mode).
    - If set, require the same token via either:
      * Authorization: Bearer <token>
      * X-Admin-Token: <token>
    """
    expected = get_admin_token()
    if get_environment() in {"production", "staging"} and not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin token not configured for this environment",
        )

    if not expected:
        return

    presented: Optional[str] = None
    if authorization:
        parts = authorization.split(None, 1)
        if len(parts) == 2 and parts[0].lower() == "bearer":
            presented = parts[1]
    if not presented and x_admin_token:
        presented = x_admin_token

    if not presented or presented != expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin token required",
        )


def get_embedding_provider() -> Iterator[EmbeddingProvider]:
    """
    FastAPI dependency yielding an HTTP embedding provider for one request.
    """
    provider = HttpEmbeddingProvider()
    try:
        yield provider
    finally:
        provider.close()


__all__ = ["get_embedding_provider", "require_admin"]
