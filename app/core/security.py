"""Internal API key guard for admin-only endpoints."""
import hmac
import logging

from fastapi import Header, HTTPException, status

from app.core.config import settings

logger = logging.getLogger(__name__)


async def require_internal_key(x_api_key: str | None = Header(default=None)) -> None:
    """
    FastAPI dependency validating the ``X-API-Key`` header.

    When ``INTERNAL_API_KEY`` is empty the guard is disabled (local
    development).
    """
    expected = settings.internal_api_key
    if not expected:
        return
    if not x_api_key or not hmac.compare_digest(x_api_key.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected request with missing or invalid API key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
