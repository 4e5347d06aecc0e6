# backend/knowledge_sync/core/sync/sync_service.py
"""
Sync Orchestrator.

Mirrors the remote document hierarchy of one connection into the database.
A sync is a full mirror: starting one clears the connection's documents,
then a background job pages through the remote listing and bulk-upserts
each page, up to ``settings.sync_max_documents`` items.

Each start stamps a fresh ``sync_run_id`` on the SyncRecord. Every later
write of that run is gated on the id, so a superseded run can never mark a
newer run completed or failed. A missing SyncRecord means the connection
was disconnected, and the run cleans up instead of recording anything.

Usage:
    from knowledge_sync.core.sync.sync_service import sync_service

    # API: accept the request and queue the fetch loop
    result = await sync_service.start_sync(session, "c1", "user-1", integration, token)

    # Worker: run the fetch loop
    summary = await sync_service.run_sync("c1", "user-1", result.run_id, token)
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_sync.config import settings
from knowledge_sync.connectors.integration_app.integration_client import IntegrationAppClient
from knowledge_sync.core.database.models import SyncStatus, utcnow
from knowledge_sync.core.documents.document_store import (
    DocumentStore,
    build_document_record,
    document_store,
)
from knowledge_sync.core.documents.subscription_service import (
    SubscriptionService,
    subscription_service,
)
from knowledge_sync.core.ops import job_dispatch
from knowledge_sync.core.shared.database_service import DatabaseService, database_service
from knowledge_sync.core.shared.errors import StepTimeoutError

logger = logging.getLogger("knowledge_sync.sync")

FETCH_OPERATION = "Document fetch operation"
START_FAILED_MESSAGE = "Failed to start sync"


@dataclass
class SyncStartResult:
    accepted: bool
    run_id: Optional[str] = None
    status: str = SyncStatus.IN_PROGRESS.value
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "run_id": self.run_id,
            "status": self.status,
            "error": self.error,
        }


class SyncService:
    """Starts, runs and reports on connection mirror operations."""

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        subscriptions: Optional[SubscriptionService] = None,
        db: Optional[DatabaseService] = None,
        enqueue: Optional[Callable[..., Any]] = None,
        provider_factory: Callable[[Optional[str]], IntegrationAppClient] = IntegrationAppClient,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.store = store or document_store
        self.subscriptions = subscriptions or subscription_service
        self.db = db or database_service
        self._enqueue = enqueue
        self.provider_factory = provider_factory
        self._sleep = sleep

    @property
    def enqueue(self) -> Callable[..., Any]:
        return self._enqueue or job_dispatch.enqueue_sync

    # =========================================================================
    # START
    # =========================================================================

    async def start_sync(
        self,
        session: AsyncSession,
        connection_id: str,
        user_id: str,
        integration: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> SyncStartResult:
        """
        Accept a sync request for a connection.

        Upserts the SyncRecord as in_progress under a new run id, clears the
        connection's documents and queues the fetch loop.

        Returns:
            SyncStartResult; rejected when the request is incomplete or the
            job could not be queued
        """
        if not connection_id or not user_id:
            return SyncStartResult(
                accepted=False, status=SyncStatus.FAILED.value, error="connection_id and user_id are required"
            )

        integration = integration or {}
        run_id = str(uuid.uuid4())
        await self.store.upsert_sync_record(
            session,
            connection_id,
            user_id,
            integration_id=integration.get("integration_id"),
            integration_name=integration.get("integration_name"),
            integration_logo=integration.get("integration_logo"),
            sync_status=SyncStatus.IN_PROGRESS.value,
            sync_run_id=run_id,
            sync_started_at=utcnow(),
            sync_completed_at=None,
            sync_error=None,
            is_truncated=False,
            total_documents=0,
        )
        await self.store.delete_connection_documents(session, connection_id)

        try:
            self.enqueue(connection_id=connection_id, user_id=user_id, run_id=run_id, token=token)
        except Exception as e:
            logger.error(f"Failed to queue sync for connection {connection_id}: {e}")
            await self.store.fail_sync(session, connection_id, run_id, START_FAILED_MESSAGE)
            return SyncStartResult(
                accepted=False, run_id=run_id, status=SyncStatus.FAILED.value, error=START_FAILED_MESSAGE
            )

        logger.info(f"Sync run {run_id} started for connection {connection_id}")
        return SyncStartResult(accepted=True, run_id=run_id)

    # =========================================================================
    # FETCH LOOP
    # =========================================================================

    async def run_sync(
        self,
        connection_id: str,
        user_id: str,
        run_id: str,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Page through the remote listing and mirror it.

        Raises on failure without touching the SyncRecord; the job runner
        retries and finally calls ``record_failure``.

        Returns:
            Dict with status (completed, superseded or cancelled),
            total_documents and is_truncated
        """
        max_documents = settings.sync_max_documents
        total = 0
        truncated = False
        cursor: Optional[str] = None
        seen: Set[str] = set()

        if not await self._still_owner(connection_id, run_id):
            return await self._stop(connection_id, run_id, total, truncated)

        async with self.provider_factory(token) as provider:
            while True:
                page = await self._fetch_page(provider, connection_id, cursor)

                records = []
                for raw in page.records:
                    record = build_document_record(raw, connection_id, user_id)
                    # Counted once per run, however often the listing repeats it
                    if record["id"] in seen:
                        continue
                    seen.add(record["id"])
                    records.append(record)

                remaining = max_documents - total
                if len(records) > remaining:
                    records = records[:remaining]
                    truncated = True
                    logger.warning(
                        f"Connection {connection_id} exceeds {max_documents} documents; truncating"
                    )

                if not await self._still_owner(connection_id, run_id):
                    return await self._stop(connection_id, run_id, total, truncated)

                if records:
                    async with self.db.get_session() as session:
                        await self.store.bulk_upsert(session, records)
                        total += len(records)
                        await self.store.update_sync_record(
                            session, connection_id, {"total_documents": total}, run_id=run_id
                        )

                logger.info(
                    f"Synced batch of {len(records)} documents for connection {connection_id} "
                    f"(total {total}, more={bool(page.cursor)})"
                )

                if total >= max_documents:
                    truncated = truncated or bool(page.cursor)
                    break

                cursor = page.cursor
                if not cursor:
                    break

        if settings.sync_completion_delay > 0:
            await self._sleep(settings.sync_completion_delay)

        async with self.db.get_session() as session:
            completed = await self.store.update_sync_record(
                session,
                connection_id,
                {
                    "sync_status": SyncStatus.COMPLETED.value,
                    "sync_completed_at": utcnow(),
                    "sync_error": None,
                    "total_documents": total,
                    "is_truncated": truncated,
                },
                run_id=run_id,
            )
        if not completed:
            return await self._stop(connection_id, run_id, total, truncated)

        logger.info(f"Sync run {run_id} completed for connection {connection_id}: {total} documents")
        return {
            "status": SyncStatus.COMPLETED.value,
            "total_documents": total,
            "is_truncated": truncated,
        }

    async def _fetch_page(self, provider: IntegrationAppClient, connection_id: str, cursor: Optional[str]):
        try:
            return await asyncio.wait_for(
                provider.list_page(connection_id, cursor),
                timeout=settings.sync_fetch_timeout,
            )
        except asyncio.TimeoutError:
            raise StepTimeoutError(FETCH_OPERATION, settings.sync_fetch_timeout) from None

    async def _still_owner(self, connection_id: str, run_id: str) -> bool:
        async with self.db.get_session() as session:
            return await self.store.is_current_run(session, connection_id, run_id)

    async def _stop(self, connection_id: str, run_id: str, total: int, truncated: bool) -> Dict[str, Any]:
        """End a run that lost its SyncRecord (cleanup) or was superseded (no-op)."""
        async with self.db.get_session() as session:
            record = await self.store.get_sync_record(session, connection_id)
            if record is None:
                await self.store.delete_connection_documents(session, connection_id)
                logger.info(f"Sync run {run_id}: connection {connection_id} disconnected; documents removed")
                status = "cancelled"
            else:
                logger.info(f"Sync run {run_id} superseded by {record.sync_run_id}")
                status = "superseded"
        return {"status": status, "total_documents": total, "is_truncated": truncated}

    # =========================================================================
    # FAILURE
    # =========================================================================

    async def record_failure(self, connection_id: str, run_id: Optional[str], error: str) -> str:
        """
        Record the terminal failure of a run.

        Returns:
            "failed" when the SyncRecord was marked, "cleaned_up" when the
            record was gone and the documents were removed instead, or
            "superseded" when a newer run owns the record
        """
        async with self.db.get_session() as session:
            record = await self.store.get_sync_record(session, connection_id)
            if record is None:
                await self.store.delete_connection_documents(session, connection_id)
                logger.info(f"Sync of disconnected connection {connection_id} failed; documents removed")
                return "cleaned_up"

            total = await self.store.count_documents(session, connection_id)
            marked = await self.store.update_sync_record(
                session,
                connection_id,
                {
                    "sync_status": SyncStatus.FAILED.value,
                    "sync_error": error,
                    "sync_completed_at": utcnow(),
                    "total_documents": total,
                },
                run_id=run_id,
            )
        if not marked:
            return "superseded"
        logger.error(f"Sync run {run_id} failed for connection {connection_id}: {error}")
        return "failed"

    # =========================================================================
    # QUERIES / DISCONNECT
    # =========================================================================

    async def get_sync_status(self, session: AsyncSession, connection_id: str) -> Optional[Dict[str, Any]]:
        record = await self.store.get_sync_record(session, connection_id)
        if record is None:
            return None
        return {
            "status": record.sync_status,
            "error": record.sync_error,
            "started_at": record.sync_started_at,
            "completed_at": record.sync_completed_at,
            "is_truncated": record.is_truncated,
            "total_documents": record.total_documents,
        }

    async def disconnect(self, session: AsyncSession, connection_id: str, blob_store=None) -> Dict[str, Any]:
        """
        Forget a connection: SyncRecord, documents and stored objects.

        A sync still running for the connection notices the missing record
        and stops.
        """
        record_deleted = await self.store.delete_sync_record(session, connection_id)
        docs = await self.store.list_documents(session, connection_id)
        result = await self.subscriptions.delete_documents(session, connection_id, docs, blob_store)
        logger.info(f"Disconnected connection {connection_id}: {result.deleted} documents removed")
        return {
            "connection_id": connection_id,
            "sync_record_deleted": record_deleted,
            "documents_deleted": result.deleted,
            "objects_failed": result.objects_failed,
        }

    async def list_subscribed_grouped(self, session: AsyncSession, user_id: str) -> List[Dict[str, Any]]:
        """Subscribed documents of a user grouped by connection, with integration metadata."""
        docs = await self.store.list_subscribed(session, user_id)
        records = await self.store.list_sync_records(session, {d.connection_id for d in docs})

        groups: Dict[str, Dict[str, Any]] = {}
        for doc in docs:
            group = groups.get(doc.connection_id)
            if group is None:
                record = records.get(doc.connection_id)
                group = groups[doc.connection_id] = {
                    "connection_id": doc.connection_id,
                    "integration_id": record.integration_id if record else None,
                    "integration_name": record.integration_name if record else None,
                    "integration_logo": record.integration_logo if record else None,
                    "documents": [],
                }
            group["documents"].append(doc.to_dict())
        return list(groups.values())


# Global service instance
sync_service = SyncService()
