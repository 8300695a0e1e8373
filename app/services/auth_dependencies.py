"""Operator credential check for the reconciliation endpoints."""

from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException

from app.config import settings

logger = logging.getLogger(__name__)


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def require_admin_key(authorization: str | None = Header(default=None)) -> None:
    """Require ``Authorization: Bearer <ADMIN_API_KEY>``.

    With no key configured every request is refused.
    """
    expected = settings.admin_api_key
    token = _extract_bearer_token(authorization)
    if not expected:
        logger.warning("admin_api_key_not_configured")
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not token or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
