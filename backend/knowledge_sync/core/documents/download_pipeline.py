# backend/knowledge_sync/core/documents/download_pipeline.py
"""
Download & Extraction Pipeline.

Runs one download job for one document:

    1. mark-downloading      FLOW_TRIGGERED -> DOWNLOADING_FROM_URL
    2. fetch-and-store       resolve URL, fetch bytes, put under a fresh key
    3. cleanup-previous      delete superseded objects (best effort)
    4. persist-storage-key   storage_key + last_synced_at, advance state
    5. extract-text          optional, time boxed, never fails the job
    6. finalize              content / extraction_error, state DONE

Every step goes through StepRunner (time box + retries with backoff).
State writes are conditional and only move forward, so re-running the whole
job after a crash or a Celery retry is safe.

Usage:
    from knowledge_sync.core.documents.download_pipeline import DownloadJob, DownloadPipeline

    pipeline = DownloadPipeline(blob_store=get_minio_service())
    result = await pipeline.run(DownloadJob(document_id="a", connection_id="c1", token=token))
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Awaitable, Callable, Dict, Optional

from knowledge_sync.config import settings
from knowledge_sync.connectors.integration_app.integration_client import IntegrationAppClient
from knowledge_sync.core.database.models import Document, DownloadState
from knowledge_sync.core.documents.document_store import DocumentStore, document_store
from knowledge_sync.core.ingestion.extraction_client import (
    create_extraction_client,
    is_supported_file,
)
from knowledge_sync.core.shared.database_service import DatabaseService, database_service
from knowledge_sync.core.shared.errors import (
    DocumentNotFoundError,
    NonRetriableError,
    StepTimeoutError,
)
from knowledge_sync.core.storage.storage_path_service import document_object_key

logger = logging.getLogger("knowledge_sync.download")


@dataclass
class DownloadJob:
    """Payload of one download job, as queued for the job runner."""
    document_id: str
    connection_id: str
    title: Optional[str] = None
    download_uri: Optional[str] = None
    previous_storage_key: Optional[str] = None
    token: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DownloadJob":
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in payload.items() if k in names})

    @classmethod
    def for_document(
        cls,
        doc: Document,
        token: Optional[str] = None,
        download_uri: Optional[str] = None,
    ) -> "DownloadJob":
        return cls(
            document_id=doc.id,
            connection_id=doc.connection_id,
            title=doc.title,
            download_uri=download_uri,
            previous_storage_key=doc.storage_key,
            token=token,
        )


# ============================================================================
# STEP RUNNER
# ============================================================================

class StepRunner:
    """
    Run named async steps with a time box and bounded retries.

    NonRetriableError propagates immediately. Other errors (including
    StepTimeoutError) are retried with exponential backoff capped at 6s;
    when the budget is exhausted the last error propagates.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.timeout = timeout if timeout is not None else settings.download_step_timeout
        self.retries = retries if retries is not None else settings.download_step_retries
        self._sleep = sleep

    async def run(
        self,
        name: str,
        step: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> Any:
        timeout = timeout if timeout is not None else self.timeout
        retries = max(0, retries if retries is not None else self.retries)
        attempt = 0

        while True:
            logger.debug(f"Step {name} attempt {attempt + 1}")
            try:
                return await asyncio.wait_for(step(), timeout=timeout)
            except NonRetriableError:
                raise
            except asyncio.TimeoutError:
                error: Exception = StepTimeoutError(name, timeout)
            except Exception as e:
                error = e

            if attempt >= retries:
                raise error

            delay = min(2 ** attempt * 0.5, 6.0)
            logger.warning(f"Step {name} failed ({error}); retrying in {delay}s")
            await self._sleep(delay)
            attempt += 1


# ============================================================================
# PIPELINE
# ============================================================================

class DownloadPipeline:
    """Durable, step-wise download of one document into the blob store."""

    def __init__(
        self,
        blob_store,
        provider_factory: Callable[[Optional[str]], IntegrationAppClient] = IntegrationAppClient,
        extractor_factory: Callable[[], Any] = create_extraction_client,
        store: Optional[DocumentStore] = None,
        db: Optional[DatabaseService] = None,
        step_runner: Optional[StepRunner] = None,
    ):
        if blob_store is None:
            raise NonRetriableError("Object storage is disabled")
        self.blob_store = blob_store
        self.provider_factory = provider_factory
        self.extractor_factory = extractor_factory
        self.store = store or document_store
        self.db = db or database_service
        self.steps = step_runner or StepRunner()

    async def run(self, job: DownloadJob) -> Dict[str, Any]:
        """
        Execute the job.

        Returns:
            Dict with document_id, storage_key, extracted, skipped

        Raises:
            DocumentNotFoundError: The document vanished (non-retriable)
            NonRetriableError: Nothing to download
            Exception: Transient failure after the step budget (job retries)
        """
        cid, did = job.connection_id, job.document_id
        logger.info(f"Download job started for document {did} (connection {cid})")

        doc = await self.steps.run("mark-downloading", lambda: self._mark_downloading(job))
        if doc.download_state == DownloadState.FAILED.value:
            logger.info(f"Document {did} is FAILED; skipping stale download job")
            return {"document_id": did, "storage_key": doc.storage_key, "extracted": False, "skipped": True}

        title = job.title or doc.title
        provider = self.provider_factory(job.token)
        try:
            new_key = await self.steps.run(
                "fetch-and-store",
                lambda: self._fetch_and_store(provider, job, title),
                timeout=settings.download_fetch_timeout,
            )
        finally:
            await provider.aclose()

        await self._cleanup_previous(job, new_key)

        will_extract = settings.extraction_configured and is_supported_file(
            title, settings.extraction_supported_extensions
        )
        next_state = DownloadState.EXTRACTING_TEXT if will_extract else DownloadState.DONE
        await self.steps.run(
            "persist-storage-key",
            lambda: self._persist_storage_key(job, new_key, next_state),
        )

        content: Optional[str] = None
        extraction_error: Optional[str] = None
        if will_extract:
            content, extraction_error = await self._extract_text(new_key, title)

        await self.steps.run(
            "finalize",
            lambda: self._finalize(job, will_extract, content, extraction_error),
        )

        logger.info(f"Download job finished for document {did}: {new_key}")
        return {
            "document_id": did,
            "storage_key": new_key,
            "extracted": content is not None,
            "skipped": False,
        }

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _mark_downloading(self, job: DownloadJob) -> Document:
        async with self.db.get_session() as session:
            await self.store.advance_download_state(
                session, job.connection_id, job.document_id, DownloadState.DOWNLOADING_FROM_URL
            )
            doc = await self.store.get_document(session, job.connection_id, job.document_id)
        if doc is None:
            raise DocumentNotFoundError(job.document_id, job.connection_id)
        return doc

    async def _fetch_and_store(
        self,
        provider: IntegrationAppClient,
        job: DownloadJob,
        title: Optional[str],
    ) -> str:
        url = job.download_uri or await provider.resolve_download(
            job.connection_id, job.document_id
        )
        if not url:
            raise NonRetriableError(f"No download URI for document {job.document_id}")

        data, content_type = await provider.fetch(url, timeout=settings.download_fetch_timeout)
        # Fresh key per attempt
        key = document_object_key(job.connection_id, job.document_id, title, content_type)
        await self.blob_store.put(key, data, content_type)
        logger.info(f"Stored {len(data)} bytes for document {job.document_id} at {key}")
        return key

    async def _cleanup_previous(self, job: DownloadJob, new_key: str) -> None:
        """Delete objects superseded by ``new_key``; failures only leak storage."""
        stale = {job.previous_storage_key}
        async with self.db.get_session() as session:
            doc = await self.store.get_document(session, job.connection_id, job.document_id)
        if doc is not None:
            stale.add(doc.storage_key)
        stale.discard(None)
        stale.discard(new_key)

        for key in stale:
            try:
                await self.steps.run("cleanup-previous", lambda k=key: self.blob_store.delete(k), retries=0)
                logger.info(f"Deleted previous object {key}")
            except Exception as e:
                logger.warning(f"Failed to delete previous object {key}: {e}")

    async def _persist_storage_key(
        self,
        job: DownloadJob,
        new_key: str,
        next_state: DownloadState,
    ) -> None:
        async with self.db.get_session() as session:
            found = await self.store.persist_storage_key(
                session, job.connection_id, job.document_id, new_key, next_state
            )
        if not found:
            raise DocumentNotFoundError(job.document_id, job.connection_id)

    async def _extract_text(self, key: str, title: Optional[str]):
        """
        Read the stored bytes back and extract text.

        Returns:
            Tuple of (text or None, error message or None)
        """
        client = self.extractor_factory()
        if client is None:
            return None, None
        try:
            data = await self.steps.run("read-stored-object", lambda: self.blob_store.get(key))
            text = await asyncio.wait_for(
                client.extract(title or key.rsplit("/", 1)[-1], data),
                timeout=settings.extraction_timeout,
            )
            logger.info(f"Extracted {len(text)} characters from {title}")
            return text, None
        except asyncio.TimeoutError:
            message = str(StepTimeoutError("extract-text", settings.extraction_timeout))
        except Exception as e:
            message = str(e) or e.__class__.__name__
        finally:
            await client.aclose()

        logger.error(f"Text extraction failed for {title}: {message}")
        return None, message

    async def _finalize(
        self,
        job: DownloadJob,
        extraction_ran: bool,
        content: Optional[str],
        extraction_error: Optional[str],
    ) -> None:
        values: Dict[str, Any] = {}
        if extraction_ran:
            values = {"content": content, "extraction_error": extraction_error}
        async with self.db.get_session() as session:
            advanced = await self.store.advance_download_state(
                session, job.connection_id, job.document_id, DownloadState.DONE, **values
            )
            if not advanced and values:
                # FAILED by a concurrent notification: keep the state, still record text
                advanced = await self.store.update_document(
                    session, job.connection_id, job.document_id, values
                )
        if not advanced:
            logger.warning(f"Document {job.document_id} was not finalized (deleted or failed)")
