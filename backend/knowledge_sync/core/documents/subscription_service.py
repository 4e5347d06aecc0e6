# backend/knowledge_sync/core/documents/subscription_service.py
"""
Subscription Cascade Manager.

Applies subscribe/unsubscribe to documents, triggers downloads for newly
subscribed files, creates documents announced by the remote source (with
inherited subscription) and removes deleted subtrees together with their
stored objects.

Usage:
    from knowledge_sync.core.documents.subscription_service import subscription_service

    async with database_service.get_session() as session:
        result = await subscription_service.set_subscription(
            session, "c1", ["f1"], True, token=token, expand_folders=True
        )
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_sync.config import settings
from knowledge_sync.core.database.models import IN_FLIGHT_STATES, Document, DownloadState
from knowledge_sync.core.documents.document_store import (
    DocumentStore,
    build_document_record,
    document_store,
)
from knowledge_sync.core.documents.download_pipeline import DownloadJob
from knowledge_sync.core.documents.tree_service import TreeService, tree_service
from knowledge_sync.core.ops import job_dispatch

logger = logging.getLogger("knowledge_sync.subscription")

TRIGGER_FAILED_MESSAGE = "Failed to trigger flow"


class TriggerOutcome(str, Enum):
    TRIGGERED = "triggered"
    SKIPPED = "skipped"
    NOT_FOUND = "not_found"
    FOLDER = "folder"
    FAILED = "failed"
    NOT_SUBSCRIBED = "not_subscribed"


@dataclass
class SubscriptionResult:
    """Outcome of one subscription change."""
    document_ids: List[str] = field(default_factory=list)
    updated: int = 0
    triggered: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_ids": self.document_ids,
            "updated": self.updated,
            "triggered": self.triggered,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass
class DeletionResult:
    deleted: int = 0
    document_ids: List[str] = field(default_factory=list)
    objects_attempted: int = 0
    objects_failed: int = 0


class SubscriptionService:
    """Subscription cascade, create-inheritance and delete propagation."""

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        tree: Optional[TreeService] = None,
        enqueue: Optional[Callable[[DownloadJob], Any]] = None,
    ):
        self.store = store or document_store
        self.tree = tree or tree_service
        self._enqueue = enqueue

    @property
    def enqueue(self) -> Callable[[DownloadJob], Any]:
        return self._enqueue or job_dispatch.enqueue_download

    # =========================================================================
    # SUBSCRIBE / UNSUBSCRIBE
    # =========================================================================

    async def set_subscription(
        self,
        session: AsyncSession,
        connection_id: str,
        document_ids: Iterable[str],
        subscribed: bool,
        token: Optional[str] = None,
        expand_folders: bool = False,
    ) -> SubscriptionResult:
        """
        Persist ``is_subscribed`` and trigger downloads for subscribed files.

        Args:
            session: Database session
            connection_id: Connection owning the documents
            document_ids: Exactly the ids to change, unless expand_folders
            subscribed: New flag value
            token: Remote provider token forwarded to download jobs
            expand_folders: Add every descendant of selected folders first

        Returns:
            SubscriptionResult listing triggered/skipped/failed downloads

        Unsubscribing never cancels downloads already in flight.
        """
        ids = list(dict.fromkeys(document_ids))
        if expand_folders:
            ids = sorted(await self.tree.expand_selection(session, connection_id, ids))

        result = SubscriptionResult(document_ids=ids)
        result.updated = await self.store.set_subscription(session, connection_id, ids, subscribed)
        logger.info(
            f"Set is_subscribed={subscribed} on {result.updated} documents of connection {connection_id}"
        )

        if not subscribed:
            return result

        for doc in await self.store.get_documents(session, connection_id, ids):
            if doc.is_folder:
                continue
            outcome = await self._trigger(session, doc, token, skip_done=True)
            if outcome == TriggerOutcome.TRIGGERED:
                result.triggered.append(doc.id)
            elif outcome == TriggerOutcome.FAILED:
                result.failed.append(doc.id)
            else:
                result.skipped.append(doc.id)

        return result

    # =========================================================================
    # DOWNLOAD TRIGGER
    # =========================================================================

    async def trigger_download(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
        token: Optional[str] = None,
        download_uri: Optional[str] = None,
        skip_done: bool = False,
    ) -> TriggerOutcome:
        """
        Move a file to FLOW_TRIGGERED and enqueue exactly one download job.

        A document already FLOW_TRIGGERED, DOWNLOADING_FROM_URL or
        EXTRACTING_TEXT (and DONE when ``skip_done``) is skipped. Only
        subscribed files are downloaded.
        """
        doc = await self.store.get_document(session, connection_id, document_id)
        if doc is None:
            return TriggerOutcome.NOT_FOUND
        if doc.is_folder:
            return TriggerOutcome.FOLDER
        if not doc.is_subscribed:
            return TriggerOutcome.NOT_SUBSCRIBED
        return await self._trigger(session, doc, token, download_uri=download_uri, skip_done=skip_done)

    async def _trigger(
        self,
        session: AsyncSession,
        doc: Document,
        token: Optional[str],
        download_uri: Optional[str] = None,
        skip_done: bool = False,
    ) -> TriggerOutcome:
        blocked = list(IN_FLIGHT_STATES)
        if skip_done:
            blocked.append(DownloadState.DONE)

        job = DownloadJob.for_document(doc, token=token, download_uri=download_uri)
        claimed = await self.store.claim_for_download(session, doc.connection_id, doc.id, blocked)
        if not claimed:
            logger.debug(f"Download of {doc.id} not triggered (state {doc.download_state})")
            return TriggerOutcome.SKIPPED

        try:
            self.enqueue(job)
        except Exception as e:
            logger.error(f"Failed to enqueue download of document {doc.id}: {e}")
            await self.store.mark_failed(session, doc.connection_id, doc.id, TRIGGER_FAILED_MESSAGE)
            return TriggerOutcome.FAILED

        logger.info(f"Triggered download of document {doc.id} (connection {doc.connection_id})")
        return TriggerOutcome.TRIGGERED

    # =========================================================================
    # CREATE NOTIFICATION
    # =========================================================================

    async def handle_created(
        self,
        session: AsyncSession,
        connection_id: str,
        user_id: Optional[str],
        fields: Dict[str, Any],
        token: Optional[str] = None,
    ) -> Tuple[Document, Optional[TriggerOutcome]]:
        """
        Create a document announced by the remote source.

        The document inherits ``is_subscribed=True`` when its parent chain
        holds a subscribed node; an inherited file is triggered at once.

        Returns:
            Tuple of (document, trigger outcome or None when not triggered)
        """
        record = build_document_record(fields, connection_id, user_id)
        inherited = bool(record["parent_id"]) and await self.tree.is_ancestor_subscribed(
            session, connection_id, record["parent_id"]
        )
        record["is_subscribed"] = inherited

        doc = await self.store.create_document(session, record)
        logger.info(
            f"Created document {doc.id} in connection {connection_id} (subscribed={doc.is_subscribed})"
        )

        outcome = None
        if doc.is_subscribed and not doc.is_folder:
            outcome = await self._trigger(session, doc, token, skip_done=True)
        return doc, outcome

    # =========================================================================
    # DELETE PROPAGATION
    # =========================================================================

    async def delete_subtree(
        self,
        session: AsyncSession,
        connection_id: str,
        node_id: str,
        blob_store=None,
    ) -> DeletionResult:
        """Delete ``node_id`` and every descendant, rows and stored objects."""
        closure = await self.tree.deletion_closure(session, connection_id, node_id)
        docs = await self.store.get_documents(session, connection_id, closure)
        result = await self.delete_documents(session, connection_id, docs, blob_store)
        # The node itself may be unknown locally; its id is still part of the closure
        result.document_ids = sorted(closure)
        return result

    async def delete_documents(
        self,
        session: AsyncSession,
        connection_id: str,
        docs: List[Document],
        blob_store=None,
    ) -> DeletionResult:
        """
        Remove stored objects (bounded concurrency, best effort) then the rows.

        A failed object delete is logged and counted; it never stops the
        row deletion.
        """
        result = DeletionResult(document_ids=[d.id for d in docs])
        keys = [d.storage_key for d in docs if d.storage_key]

        if keys and blob_store is not None:
            result.objects_attempted = len(keys)
            result.objects_failed = await delete_objects(blob_store, keys)
        elif keys:
            logger.warning(f"Object storage disabled; leaving {len(keys)} objects behind")

        result.deleted = await self.store.delete_documents(session, connection_id, result.document_ids)
        logger.info(
            f"Deleted {result.deleted} documents of connection {connection_id} "
            f"({result.objects_attempted - result.objects_failed}/{result.objects_attempted} objects)"
        )
        return result


async def delete_objects(blob_store, keys: List[str], concurrency: Optional[int] = None) -> int:
    """
    Delete ``keys`` from the blob store with at most ``concurrency`` in flight.

    Returns:
        Number of keys whose deletion failed
    """
    semaphore = asyncio.Semaphore(concurrency or settings.delete_concurrency)

    async def _delete(key: str) -> bool:
        async with semaphore:
            try:
                await blob_store.delete(key)
                return True
            except Exception as e:
                logger.warning(f"Failed to delete object {key}: {e}")
                return False

    outcomes = await asyncio.gather(*[_delete(key) for key in keys])
    return sum(1 for ok in outcomes if not ok)


# Global service instance
subscription_service = SubscriptionService()
