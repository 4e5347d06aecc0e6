"""
Celery tasks for document download & text extraction.

download_document_task retries the whole pipeline on transient errors.
When the final attempt fails, DownloadTask.on_failure marks the document
FAILED with the error message. Celery calls it exactly once per task,
whichever step failed.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from celery import Task, shared_task

from knowledge_sync.config import settings
from knowledge_sync.core.documents.document_store import document_store
from knowledge_sync.core.documents.download_pipeline import DownloadJob, DownloadPipeline
from knowledge_sync.core.shared.database_service import database_service
from knowledge_sync.core.shared.errors import NonRetriableError
from knowledge_sync.core.storage.minio_service import get_minio_service

logger = logging.getLogger("knowledge_sync.tasks.download")


class DownloadTask(Task):
    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo):
        connection_id = kwargs.get("connection_id")
        document_id = kwargs.get("document_id")
        logger.error(f"Download task {task_id} failed for document {document_id}: {exc}")
        if not (connection_id and document_id):
            return
        try:
            asyncio.run(_mark_download_failed(connection_id, document_id, str(exc) or exc.__class__.__name__))
        except Exception as e:
            logger.error(f"Failed to mark document {document_id} as FAILED: {e}", exc_info=True)


async def _mark_download_failed(connection_id: str, document_id: str, error: str) -> bool:
    async with database_service.get_session() as session:
        marked = await document_store.mark_failed(session, connection_id, document_id, error)
    if not marked:
        logger.warning(f"Document {document_id} (connection {connection_id}) no longer exists")
    return marked


async def _download_document_async(payload: Dict[str, Any]) -> Dict[str, Any]:
    pipeline = DownloadPipeline(blob_store=get_minio_service())
    return await pipeline.run(DownloadJob.from_payload(payload))


@shared_task(
    bind=True,
    base=DownloadTask,
    name="knowledge_sync.tasks.download_document",
    autoretry_for=(Exception,),
    dont_autoretry_for=(NonRetriableError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": settings.download_max_retries},
)
def download_document_task(
    self,
    document_id: str,
    connection_id: str,
    title: Optional[str] = None,
    download_uri: Optional[str] = None,
    previous_storage_key: Optional[str] = None,
    token: Optional[str] = None,
) -> Dict[str, Any]:
    """Download one document into object storage and extract its text."""
    logger.info(f"Download of document {document_id} (attempt {self.request.retries + 1})")
    return asyncio.run(
        _download_document_async(
            {
                "document_id": document_id,
                "connection_id": connection_id,
                "title": title,
                "download_uri": download_uri,
                "previous_storage_key": previous_storage_key,
                "token": token,
            }
        )
    )
