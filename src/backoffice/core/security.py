"""Operator API key authentication.

Operator endpoints (sync control, reconciliation) are guarded by a single
shared key configured as OPERATOR_API_KEY. Clients send it either as
``X-API-Key`` or as a bearer token. Webhook endpoints are authenticated by
their own signature schemes instead.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request, status

from src.backoffice.config import get_settings

logger = structlog.get_logger(__name__)


def verify_operator_key(provided: str | None, expected: str | None = None) -> bool:
    """Constant-time comparison of a presented key with the configured one."""
    if expected is None:
        expected = get_settings().OPERATOR_API_KEY
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _extract_key(request: Request) -> str | None:
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return api_key
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def require_operator(request: Request) -> None:
    """FastAPI dependency guarding operator endpoints.

    Raises:
        HTTPException(503): No operator key is configured.
        HTTPException(401): Key missing or wrong.
    """
    expected = get_settings().OPERATOR_API_KEY
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Operator API is disabled (OPERATOR_API_KEY not configured)",
        )
    if not verify_operator_key(_extract_key(request), expected):
        logger.warning("security.operator_key_rejected", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing operator API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
