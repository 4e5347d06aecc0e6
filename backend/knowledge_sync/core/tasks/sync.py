"""
Celery tasks for connection synchronization.

The fetch loop is retried for transient errors; once the retry budget is
spent (or the error is non-retriable) the task's on_failure records the
failure on the SyncRecord, or cleans up when the connection is gone.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from celery import Task, shared_task

from knowledge_sync.config import settings
from knowledge_sync.core.shared.errors import NonRetriableError
from knowledge_sync.core.sync.sync_service import sync_service

logger = logging.getLogger("knowledge_sync.tasks.sync")


class SyncTask(Task):
    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo):
        connection_id = kwargs.get("connection_id") or (args[0] if args else None)
        run_id = kwargs.get("run_id")
        if not connection_id:
            logger.error(f"Sync task {task_id} failed without a connection id: {exc}")
            return
        try:
            outcome = asyncio.run(_record_sync_failure(connection_id, run_id, str(exc) or exc.__class__.__name__))
            logger.info(f"Sync task {task_id} failure handled for connection {connection_id}: {outcome}")
        except Exception as e:
            logger.error(f"Failed to record sync failure for connection {connection_id}: {e}", exc_info=True)


async def _record_sync_failure(connection_id: str, run_id: Optional[str], error: str) -> str:
    return await sync_service.record_failure(connection_id, run_id, error)


async def _sync_documents_async(
    connection_id: str,
    user_id: str,
    run_id: str,
    token: Optional[str],
) -> Dict[str, Any]:
    return await sync_service.run_sync(connection_id, user_id, run_id, token)


@shared_task(
    bind=True,
    base=SyncTask,
    name="knowledge_sync.tasks.sync_documents",
    autoretry_for=(Exception,),
    dont_autoretry_for=(NonRetriableError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": settings.sync_max_retries},
    soft_time_limit=3600,
    time_limit=3900,
)
def sync_documents_task(
    self,
    connection_id: str,
    user_id: str,
    run_id: str,
    token: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Mirror the remote hierarchy of one connection.

    Args:
        connection_id: Connection to mirror
        user_id: Owner stamped on every document
        run_id: Sync run id issued by start_sync
        token: Remote provider access token

    Returns:
        Dict with status, total_documents and is_truncated
    """
    logger.info(f"Starting sync run {run_id} for connection {connection_id} (attempt {self.request.retries + 1})")
    result = asyncio.run(_sync_documents_async(connection_id, user_id, run_id, token))
    logger.info(f"Sync run {run_id} for connection {connection_id} finished: {result}")
    return result
