"""Admin authentication for operator endpoints.

Operators authenticate with a shared key in the ``X-Admin-Key`` header.
An unset ``admin_api_key`` disables the admin surface entirely (fail closed).
"""

import hmac

import structlog
from fastapi import Header, HTTPException

from app.core.config import get_settings

logger = structlog.get_logger(__name__)


async def require_admin(x_admin_key: str | None = Header(default=None)) -> str:
    """FastAPI dependency that requires a valid admin key.

    Returns:
        A short, non-secret operator tag for audit logging.
    """
    settings = get_settings()
    if not settings.admin_api_key:
        logger.error("admin_api_key_missing")
        raise HTTPException(status_code=503, detail="Admin endpoints are not configured")

    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.admin_api_key):
        logger.warning("admin_auth_rejected")
        raise HTTPException(status_code=403, detail="Admin access required")

    return "admin"
