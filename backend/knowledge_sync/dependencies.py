# backend/knowledge_sync/dependencies.py
"""
FastAPI dependency functions shared by the v1 routers.

Key Dependencies:
    - get_provider_token: Bearer token forwarded to the remote provider
    - get_user_id: Caller identity from the X-User-Id header
    - get_blob_store: Object storage client (None when disabled)
    - verify_webhook_secret: Enforce X-Webhook-Secret when one is configured

Usage:
    from fastapi import Depends
    from knowledge_sync.dependencies import get_provider_token

    @router.post("/{connection_id}/sync")
    async def start_sync(token: Optional[str] = Depends(get_provider_token)):
        ...
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from knowledge_sync.config import settings
from knowledge_sync.core.storage.minio_service import MinIOService, get_minio_service

logger = logging.getLogger("knowledge_sync.dependencies")

# HTTP Bearer scheme; the token is opaque to us and only forwarded
bearer_scheme = HTTPBearer(auto_error=False)


async def get_provider_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """Return the caller's remote provider token, if any."""
    if credentials is None:
        return None
    return credentials.credentials


async def get_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> Optional[str]:
    return x_user_id or None


def get_blob_store() -> Optional[MinIOService]:
    return get_minio_service()


async def verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
) -> None:
    """
    Reject webhook calls whose secret does not match ``settings.webhook_secret``.

    No check is made when no secret is configured.

    Raises:
        HTTPException: 401 if the header is missing or wrong
    """
    expected = settings.webhook_secret
    if not expected:
        return

    # Constant-time comparison
    if not secrets.compare_digest(expected, x_webhook_secret or ""):
        logger.warning("Rejected webhook with invalid secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )
