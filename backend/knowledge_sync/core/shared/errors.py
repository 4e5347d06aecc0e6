# backend/knowledge_sync/core/shared/errors.py
"""
Exception hierarchy shared by services, Celery tasks and the API layer.

Errors deriving from NonRetriableError tell the job runner to give up
immediately instead of scheduling another attempt.
"""

from typing import Optional


class KnowledgeSyncError(Exception):
    """Base class for all application errors."""


class NonRetriableError(KnowledgeSyncError):
    """Failure that retrying cannot fix (missing rows, invalid input)."""


class ConnectionNotFoundError(NonRetriableError):
    """The remote provider no longer knows the connection."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f'Connection "{connection_id}" not found')


class DocumentNotFoundError(NonRetriableError):
    def __init__(self, document_id: str, connection_id: Optional[str] = None):
        self.document_id = document_id
        self.connection_id = connection_id
        super().__init__(f"Document {document_id} not found")


class StepTimeoutError(KnowledgeSyncError):
    """A time-boxed step did not finish in time."""

    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f'Operation "{name}" timed out')


class RemoteProviderError(KnowledgeSyncError):
    """Listing or download call to the remote provider failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class BlobStoreError(KnowledgeSyncError):
    """Object storage put/get/delete failed."""


class ExtractionError(KnowledgeSyncError):
    """Text extraction failed or produced no text."""
