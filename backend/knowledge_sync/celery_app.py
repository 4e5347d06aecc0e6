"""
Celery application setup for Knowledge Sync.

Configures Celery from the shared settings so workers and the API use the
same broker/result backend. Tasks live in knowledge_sync.core.tasks.

Queue Architecture:
- sync: connection mirror runs (few, long, paging through the remote API)
- downloads: per-document download & extraction jobs (many, short)

Workers consume queues left-to-right.
"""
import logging

from celery import Celery
from celery.signals import setup_logging
from kombu import Queue

from knowledge_sync.config import settings

app = Celery(
    "knowledge_sync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "knowledge_sync.core.tasks.sync",
        "knowledge_sync.core.tasks.download",
    ],
)

app.conf.task_queues = (
    Queue("sync", routing_key="sync"),
    Queue("downloads", routing_key="downloads"),
)

app.conf.update(
    task_acks_late=settings.celery_acks_late,
    worker_prefetch_multiplier=settings.celery_prefetch_multiplier,
    task_soft_time_limit=settings.celery_task_soft_time_limit,
    task_time_limit=settings.celery_task_time_limit,
    task_default_queue="downloads",
    task_routes={
        "knowledge_sync.tasks.sync_documents": {"queue": "sync"},
        "knowledge_sync.tasks.download_document": {"queue": "downloads"},
    },
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
)

app.conf.timezone = "UTC"


@setup_logging.connect
def configure_worker_logging(**kwargs):
    """Use the application's log format instead of Celery's default handlers."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
