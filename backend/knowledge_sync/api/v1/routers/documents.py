# backend/knowledge_sync/api/v1/routers/documents.py
"""
Documents API router: cross-connection views of mirrored documents.
"""

import io
import logging
import mimetypes
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ....core.database.base import get_db
from ....core.documents.document_store import document_store
from ....core.shared.errors import BlobStoreError
from ....core.storage.minio_service import MinIOService
from ....core.sync.sync_service import sync_service
from ....dependencies import get_blob_store, get_user_id
from ....models import DocumentContentResponse, SubscribedGroup

logger = logging.getLogger("knowledge_sync.api.documents")

router = APIRouter(prefix="/documents", tags=["Documents"])


@router.get("/subscribed", response_model=List[SubscribedGroup])
async def list_subscribed_documents(
    user_id: Optional[str] = Query(None, description="Owner of the documents"),
    header_user_id: Optional[str] = Depends(get_user_id),
    session: AsyncSession = Depends(get_db),
):
    """Subscribed documents of a user, grouped by connection."""
    owner = user_id or header_user_id
    if not owner:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="user_id is required")
    return await sync_service.list_subscribed_grouped(session, owner)


@router.get("/{connection_id}/{document_id}/content", response_model=DocumentContentResponse)
async def get_document_content(
    connection_id: str,
    document_id: str,
    session: AsyncSession = Depends(get_db),
):
    doc = await document_store.get_document(session, connection_id, document_id)
    if doc is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return DocumentContentResponse(
        id=doc.id,
        connection_id=doc.connection_id,
        title=doc.title,
        content=doc.content,
        extraction_error=doc.extraction_error,
        download_state=doc.download_state,
        last_synced_at=doc.last_synced_at,
    )


@router.get("/{connection_id}/{document_id}/stream")
async def stream_document(
    connection_id: str,
    document_id: str,
    inline: bool = Query(False, description="Preview inline instead of downloading"),
    session: AsyncSession = Depends(get_db),
    blob_store: Optional[MinIOService] = Depends(get_blob_store),
):
    """
    Proxy the stored file of a document from object storage.

    Returns:
        StreamingResponse with the file content
    """
    if blob_store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Object storage is disabled")

    doc = await document_store.get_document(session, connection_id, document_id)
    if doc is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    if not doc.storage_key:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document has not been downloaded")

    try:
        data = await blob_store.get(doc.storage_key)
    except BlobStoreError as e:
        logger.error(f"Error reading {doc.storage_key} for document {document_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to read stored document")

    filename = doc.storage_key.rsplit("/", 1)[-1]
    media_type, _ = mimetypes.guess_type(filename)
    disposition = "inline" if inline else f'attachment; filename="{filename}"'

    return StreamingResponse(
        io.BytesIO(data),
        media_type=media_type or "application/octet-stream",
        headers={
            "Content-Disposition": disposition,
            "Content-Length": str(len(data)),
        },
    )
