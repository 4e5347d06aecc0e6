# backend/knowledge_sync/core/documents/notification_service.py
"""
Handlers for notifications sent by the remote source.

Creates and deletes go through the subscription service; this module covers
metadata updates, download-complete callbacks and flow-run failures.

A notification that references an unknown document is logged and reported
as not applied; it is never an error for the caller.
"""

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_sync.config import settings
from knowledge_sync.connectors.integration_app.integration_client import IntegrationAppClient
from knowledge_sync.core.database.models import utcnow
from knowledge_sync.core.documents.document_store import (
    DocumentStore,
    build_document_record,
    document_store,
)
from knowledge_sync.core.documents.subscription_service import (
    SubscriptionService,
    TriggerOutcome,
    subscription_service,
)

logger = logging.getLogger("knowledge_sync.notifications")

FLOW_FAILED_MESSAGE = "Flow execution failed"
FLOW_RUN_FAILED_EVENT = "flowRun.failed"


class NotificationService:
    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        subscriptions: Optional[SubscriptionService] = None,
        provider_factory: Callable[[Optional[str]], IntegrationAppClient] = IntegrationAppClient,
    ):
        self.store = store or document_store
        self.subscriptions = subscriptions or subscription_service
        self.provider_factory = provider_factory

    async def handle_updated(
        self,
        session: AsyncSession,
        connection_id: str,
        fields: Dict[str, Any],
    ) -> bool:
        """
        Refresh title, updated_at and resource_uri of a known document.

        Pipeline state is left untouched.
        """
        record = build_document_record(fields, connection_id, user_id=None)
        patch = {
            key: record[key]
            for key in ("title", "updated_at", "resource_uri")
            if record[key] is not None and (key != "title" or record[key])
        }
        updated = await self.store.update_mirrored_fields(session, connection_id, record["id"], patch)
        if not updated:
            logger.warning(f"Update for unknown document {record['id']} (connection {connection_id})")
        return updated

    async def handle_download_complete(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
        download_uri: Optional[str] = None,
        text: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Optional[TriggerOutcome]:
        """
        Apply a download-complete callback from the remote flow.

        With a ``download_uri`` the download job is enqueued for it (subject
        to the FLOW_TRIGGERED guard); with only ``text`` the text is stored
        as content.

        Returns:
            Trigger outcome when a download was requested, None otherwise
        """
        doc = await self.store.get_document(session, connection_id, document_id)
        if doc is None:
            logger.error(f"Download callback for unknown document {document_id} (connection {connection_id})")
            return TriggerOutcome.NOT_FOUND

        if download_uri:
            await self.store.update_document(
                session, connection_id, document_id, {"resource_uri": download_uri}
            )
            return await self.subscriptions.trigger_download(
                session, connection_id, document_id, token=token, download_uri=download_uri
            )

        if text is not None:
            await self.store.update_document(
                session,
                connection_id,
                document_id,
                {"content": text, "last_synced_at": utcnow()},
            )
            logger.info(f"Stored {len(text)} characters of text for document {document_id}")
        return None

    async def resolve_flow_key(
        self,
        flow_key: Optional[str],
        universal_flow_id: Optional[str],
    ) -> Optional[str]:
        """Return the flow key, looking it up remotely when only the flow id is known."""
        if flow_key:
            return flow_key
        if not universal_flow_id:
            return None
        async with self.provider_factory(settings.integration_admin_token) as provider:
            return await provider.get_flow_key(universal_flow_id)

    async def handle_flow_failed(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
        flow_key: Optional[str],
    ) -> bool:
        """Mark the document FAILED when the failed flow is the download flow."""
        if flow_key != settings.integration_download_flow:
            logger.info(f"Ignoring failure of flow {flow_key}")
            return False

        failed = await self.store.mark_failed(session, connection_id, document_id, FLOW_FAILED_MESSAGE)
        if not failed:
            logger.error(f"Flow failure for unknown document {document_id} (connection {connection_id})")
        return failed


# Global service instance
notification_service = NotificationService()
