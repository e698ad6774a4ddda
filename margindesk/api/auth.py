"""Request authentication and caller identity.

API key: in development mode with no key configured, auth is bypassed. In
production, mutating endpoints require a valid ``X-API-Key`` header.

Identity: sessions and tokens belong to the upstream identity provider, which
forwards the authenticated user id in ``X-User-Id``. This service never reads
tokens itself.
"""

import logging

from fastapi import Header, HTTPException, Security
from fastapi.security import APIKeyHeader

from margindesk.config import settings

logger = logging.getLogger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(api_key: str | None = Security(_api_key_header)) -> str:
    """Dependency that enforces API key authentication.

    Bypassed in development mode when no API key is configured.
    """
    if not settings.api_key and settings.app_env == "development":
        return "dev-bypass"

    if not settings.api_key:
        logger.warning("API key not configured but app_env=%s, blocking request", settings.app_env)
        raise HTTPException(status_code=403, detail="API key not configured on server")

    if not api_key or api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")

    return api_key


async def current_user_id(x_user_id: str | None = Header(None, alias="X-User-Id")) -> str:
    """Authenticated user id forwarded by the identity provider."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="User authentication failed")
    return x_user_id.strip()
