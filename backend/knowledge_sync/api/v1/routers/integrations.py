# backend/knowledge_sync/api/v1/routers/integrations.py
"""
Integrations API router.

Per-connection endpoints: start a sync, report its status, list and
subscribe documents, trigger a single download and disconnect.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ....core.database.base import get_db
from ....core.documents.document_store import document_store
from ....core.documents.subscription_service import TriggerOutcome, subscription_service
from ....core.storage.minio_service import MinIOService
from ....core.sync.sync_service import sync_service
from ....dependencies import get_blob_store, get_provider_token, get_user_id
from ....models import (
    DocumentListResponse,
    DocumentResponse,
    DownloadRequest,
    SubscribeRequest,
    SyncRequest,
    SyncStartResponse,
    SyncStatusResponse,
)

logger = logging.getLogger("knowledge_sync.api.integrations")

router = APIRouter(prefix="/integrations", tags=["Integrations"])


# =============================================================================
# SYNC
# =============================================================================


@router.post("/{connection_id}/sync", response_model=SyncStartResponse)
async def start_sync(
    connection_id: str,
    request: SyncRequest,
    token: Optional[str] = Depends(get_provider_token),
    user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
):
    """
    Start a full mirror of the connection's remote documents.

    Existing documents of the connection are cleared first; the fetch loop
    runs in a background worker.
    """
    owner = user_id or request.user_id
    if not owner:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="user_id is required")

    result = await sync_service.start_sync(
        session,
        connection_id,
        owner,
        integration=request.model_dump(exclude={"user_id"}),
        token=token,
    )
    if not result.accepted:
        logger.error(f"Sync of connection {connection_id} not started: {result.error}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)

    return SyncStartResponse(status="started", run_id=result.run_id)


@router.get("/{connection_id}/sync-status", response_model=SyncStatusResponse)
async def get_sync_status(
    connection_id: str,
    session: AsyncSession = Depends(get_db),
):
    sync_status = await sync_service.get_sync_status(session, connection_id)
    if sync_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync status not found")
    return SyncStatusResponse(**sync_status)


@router.delete("/{connection_id}/knowledge")
async def disconnect(
    connection_id: str,
    session: AsyncSession = Depends(get_db),
    blob_store: Optional[MinIOService] = Depends(get_blob_store),
) -> Dict[str, Any]:
    """Remove the connection's sync record, documents and stored objects."""
    return await sync_service.disconnect(session, connection_id, blob_store)


# =============================================================================
# DOCUMENTS
# =============================================================================


@router.get("/{connection_id}/documents", response_model=DocumentListResponse)
async def list_documents(
    connection_id: str,
    q: Optional[str] = Query(None, description="Case-insensitive title filter"),
    session: AsyncSession = Depends(get_db),
):
    docs = await document_store.list_documents(session, connection_id, title_query=q)
    return DocumentListResponse(
        documents=[DocumentResponse(**doc.to_dict()) for doc in docs],
        total=len(docs),
    )


@router.patch("/{connection_id}/documents/subscribe")
async def subscribe_documents(
    connection_id: str,
    request: SubscribeRequest,
    token: Optional[str] = Depends(get_provider_token),
    session: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Subscribe or unsubscribe documents.

    Newly subscribed files are queued for download. With ``expand_folders``
    every descendant of a selected folder is included.
    """
    result = await subscription_service.set_subscription(
        session,
        connection_id,
        request.document_ids,
        request.is_subscribed,
        token=token,
        expand_folders=request.expand_folders,
    )
    return result.to_dict()


@router.post("/{connection_id}/download")
async def download_document(
    connection_id: str,
    request: DownloadRequest,
    token: Optional[str] = Depends(get_provider_token),
    session: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    outcome = await subscription_service.trigger_download(
        session, connection_id, request.document_id, token=token
    )

    if outcome == TriggerOutcome.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    if outcome == TriggerOutcome.FOLDER:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Folders cannot be downloaded")
    if outcome == TriggerOutcome.SKIPPED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Document is already being downloaded",
        )
    if outcome == TriggerOutcome.NOT_SUBSCRIBED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Document is not subscribed")
    if outcome == TriggerOutcome.FAILED:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to download document",
        )

    return {"status": outcome.value, "document_id": request.document_id}
