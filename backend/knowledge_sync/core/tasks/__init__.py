"""
Celery tasks package for Knowledge Sync.

Re-exports all task functions. Celery discovers tasks via the include= list
in celery_app.py, which references each submodule directly.
"""

# Download tasks
from knowledge_sync.core.tasks.download import (
    download_document_task,
)

# Sync tasks
from knowledge_sync.core.tasks.sync import (
    sync_documents_task,
)

__all__ = [
    "download_document_task",
    "sync_documents_task",
]
