"""
Security utilities for API key authentication and caller identity.

Authentication proper (passwords, JWT) happens upstream. This service trusts
the gateway to pass the resolved user id in the X-User-Id header and only
checks the shared API key.
"""

import secrets
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from .config import get_settings

# API Key header
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Caller identity header (set by the auth gateway)
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


def verify_api_key(api_key: Optional[str]) -> bool:
    """
    Verify if the provided API key is valid.

    Uses constant-time comparison to prevent timing attacks.
    """
    settings = get_settings()
    valid_keys = settings.api_keys_list

    if not valid_keys:
        # No API keys configured - allow in development and tests only
        return settings.environment in ("development", "test")

    if not api_key:
        return False

    for valid_key in valid_keys:
        if secrets.compare_digest(api_key, valid_key):
            return True

    return False


async def get_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """
    Dependency to validate API key from request header.

    Usage:
        @router.get("/protected")
        async def protected_route(api_key: str = Depends(get_api_key)):
            ...
    """
    if not verify_api_key(api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return api_key or ""


async def get_caller_id(user_id: Optional[str] = Security(user_id_header)) -> str:
    """Dependency resolving the authenticated caller's user id."""
    if not user_id or not user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="You must be logged in to sync.",
        )
    return user_id.strip()
