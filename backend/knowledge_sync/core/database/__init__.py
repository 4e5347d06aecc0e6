# backend/knowledge_sync/core/database/__init__.py
"""
Database package for Knowledge Sync.

Provides SQLAlchemy models, base classes, and database session management.
"""

from .base import Base, get_db
from .models import (
    Document,
    DownloadState,
    SyncRecord,
    SyncStatus,
)

__all__ = [
    "Base",
    "get_db",
    "Document",
    "DownloadState",
    "SyncRecord",
    "SyncStatus",
]
