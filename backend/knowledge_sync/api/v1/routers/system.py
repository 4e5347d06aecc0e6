# backend/knowledge_sync/api/v1/routers/system.py
import asyncio
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter

from ....config import settings
from ....core.shared.database_service import database_service
from ....core.storage.minio_service import get_minio_service

router = APIRouter()


@router.get("/health", tags=["System"])
async def health_check() -> Dict[str, Any]:
    """Health check endpoint: database and object storage."""
    database = await database_service.health_check()

    storage: Dict[str, Any] = {"enabled": settings.use_object_storage}
    minio = get_minio_service()
    if minio is not None:
        connected, _, error = await asyncio.to_thread(minio.check_health)
        storage.update({"connected": connected, "error": error})

    healthy = database.get("status") == "healthy" and storage.get("connected", True)
    return {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(),
        "version": settings.api_version,
        "database": database,
        "storage": storage,
        "extraction_configured": settings.extraction_configured,
    }
