# backend/knowledge_sync/api/v1/routers/webhooks.py
"""
Webhooks API router.

Receives notifications from the remote source: node created, updated and
deleted, download-flow callbacks and flow-run events.

Every well-formed webhook is acknowledged with 200, including those that
reference a document or connection we do not know (the miss is logged and
reported as ``applied: false``). A payload that fails validation is a 400.
Webhooks require the X-Webhook-Secret header when a secret is configured.
"""

import logging
from typing import Type, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ....config import settings
from ....core.database.base import get_db
from ....core.documents.document_store import document_store
from ....core.documents.notification_service import (
    FLOW_RUN_FAILED_EVENT,
    notification_service,
)
from ....core.documents.subscription_service import TriggerOutcome, subscription_service
from ....core.shared.errors import KnowledgeSyncError
from ....dependencies import get_blob_store, verify_webhook_secret
from ....models import (
    DeleteEventPayload,
    DocumentEventPayload,
    DownloadCompletePayload,
    NotificationPayload,
    WebhookAck,
)

logger = logging.getLogger("knowledge_sync.api.webhooks")

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
    dependencies=[Depends(verify_webhook_secret)],
)

PayloadT = TypeVar("PayloadT", bound=BaseModel)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


async def _parse_payload(request: Request, model: Type[PayloadT]) -> PayloadT:
    """
    Validate the JSON body against ``model``.

    Raises:
        HTTPException: 400 if the body is not JSON or does not match
    """
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")

    try:
        return model.model_validate(body)
    except ValidationError as e:
        logger.error(f"Invalid {model.__name__} on {request.url.path}: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")


# =============================================================================
# DOCUMENT EVENTS
# =============================================================================


@router.post("/on-create", response_model=WebhookAck)
async def on_create(request: Request, session: AsyncSession = Depends(get_db)):
    """
    A node was created remotely.

    The new document inherits the subscription of its nearest subscribed
    ancestor; an inherited file is queued for download at once.
    """
    payload = await _parse_payload(request, DocumentEventPayload)

    record = await document_store.get_sync_record(session, payload.connection_id)
    if record is None:
        logger.error(f"Create notification for unknown connection {payload.connection_id}")
        return WebhookAck(applied=False, detail="Connection not found")

    doc, outcome = await subscription_service.handle_created(
        session,
        payload.connection_id,
        record.user_id,
        payload.fields.model_dump(),
        token=settings.integration_admin_token,
    )
    detail = outcome.value if outcome else None
    return WebhookAck(detail=detail)


@router.post("/on-update", response_model=WebhookAck)
async def on_update(request: Request, session: AsyncSession = Depends(get_db)):
    payload = await _parse_payload(request, DocumentEventPayload)
    updated = await notification_service.handle_updated(
        session, payload.connection_id, payload.fields.model_dump()
    )
    return WebhookAck(applied=updated, detail=None if updated else "Document not found")


@router.post("/on-delete", response_model=WebhookAck)
async def on_delete(
    request: Request,
    session: AsyncSession = Depends(get_db),
    blob_store=Depends(get_blob_store),
):
    """A node was deleted remotely; remove it and its whole subtree."""
    payload = await _parse_payload(request, DeleteEventPayload)
    result = await subscription_service.delete_subtree(
        session, payload.connection_id, payload.id, blob_store
    )
    if result.deleted == 0:
        logger.info(f"No document found with id {payload.id} (connection {payload.connection_id})")
        return WebhookAck(applied=False, detail="Document not found")
    return WebhookAck(detail=f"{result.deleted} documents deleted")


# =============================================================================
# FLOW CALLBACKS
# =============================================================================


@router.post("/download-complete", response_model=WebhookAck)
async def on_download_complete(request: Request, session: AsyncSession = Depends(get_db)):
    """Callback of the remote download flow: a download URI or the text itself."""
    payload = await _parse_payload(request, DownloadCompletePayload)
    outcome = await notification_service.handle_download_complete(
        session,
        payload.connection_id,
        payload.document_id,
        download_uri=payload.download_uri,
        text=payload.text,
        token=settings.integration_admin_token,
    )
    if outcome == TriggerOutcome.NOT_FOUND:
        return WebhookAck(applied=False, detail="Document not found")
    if outcome == TriggerOutcome.NOT_SUBSCRIBED:
        logger.info(f"Ignoring download of unsubscribed document {payload.document_id}")
        return WebhookAck(applied=False, detail="Document is not subscribed")
    return WebhookAck(detail=outcome.value if outcome else None)


@router.post("/notification", response_model=WebhookAck)
async def on_notification(request: Request, session: AsyncSession = Depends(get_db)):
    """Flow-run events; a failed download flow marks its document FAILED."""
    payload = await _parse_payload(request, NotificationPayload)
    if payload.event_type != FLOW_RUN_FAILED_EVENT:
        return WebhookAck(applied=False, detail=f"Ignored event {payload.event_type}")

    flow_run = payload.data.flow_run
    document_id = flow_run.document_id
    if not document_id:
        logger.error(f"Flow run {flow_run.id} failed without a document id in its input")
        return WebhookAck(applied=False, detail="Document id missing")

    try:
        flow_key = await notification_service.resolve_flow_key(
            flow_run.flow_key, flow_run.universal_flow_id
        )
    except KnowledgeSyncError as e:
        logger.error(f"Could not resolve flow of run {flow_run.id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Flow lookup failed")

    failed = await notification_service.handle_flow_failed(
        session, flow_run.connection_id, document_id, flow_key
    )
    return WebhookAck(applied=failed)
