# backend/knowledge_sync/core/ops/job_dispatch.py
"""
Job dispatch: the only place that hands work to Celery.

Services receive these functions as their ``enqueue`` collaborator so tests
can substitute an in-memory dispatcher.
"""

import logging
from typing import Optional

from knowledge_sync.celery_app import app as celery_app  # noqa: F401  (binds shared tasks to this app)
from knowledge_sync.core.documents.download_pipeline import DownloadJob

logger = logging.getLogger("knowledge_sync.dispatch")


def enqueue_sync(
    connection_id: str,
    user_id: str,
    run_id: str,
    token: Optional[str],
) -> str:
    """Queue the fetch loop of a sync run. Returns the Celery task id."""
    from knowledge_sync.core.tasks.sync import sync_documents_task

    result = sync_documents_task.apply_async(
        kwargs={
            "connection_id": connection_id,
            "user_id": user_id,
            "run_id": run_id,
            "token": token,
        },
    )
    logger.info(f"Queued sync run {run_id} for connection {connection_id} (task {result.id})")
    return result.id


def enqueue_download(job: DownloadJob) -> str:
    """Queue one download job. Returns the Celery task id."""
    from knowledge_sync.core.tasks.download import download_document_task

    result = download_document_task.apply_async(kwargs=job.to_payload())
    logger.info(f"Queued download of document {job.document_id} (task {result.id})")
    return result.id
