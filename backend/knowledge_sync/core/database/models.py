# backend/knowledge_sync/core/database/models.py
"""
SQLAlchemy ORM models for Knowledge Sync persistence.

Models:
    - Document: A node (file or folder) of a remote hierarchy mirrored locally,
      together with its subscription flag and download pipeline state
    - SyncRecord: One row per connection tracking the health of the last or
      current mirror operation

Documents are keyed by the composite business key ``(id, connection_id)``;
``id`` is the opaque identifier assigned by the remote source.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from .base import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            return uuid.UUID(value)
        return value


# ============================================================================
# ENUMERATION TYPES
# ============================================================================

class DownloadState(str, Enum):
    """
    Download pipeline state of a Document.

    Values advance in declaration order; FAILED is terminal and may be
    entered from any state.
    """
    FLOW_TRIGGERED = "FLOW_TRIGGERED"
    DOWNLOADING_FROM_URL = "DOWNLOADING_FROM_URL"
    EXTRACTING_TEXT = "EXTRACTING_TEXT"
    DONE = "DONE"
    FAILED = "FAILED"

    @property
    def rank(self) -> int:
        return _DOWNLOAD_STATE_RANK[self]

    @classmethod
    def at_or_before(cls, state: "DownloadState") -> list["DownloadState"]:
        """Forward states that may legally advance to ``state``."""
        return [s for s in _DOWNLOAD_STATE_ORDER if s.rank <= state.rank]


_DOWNLOAD_STATE_ORDER = (
    DownloadState.FLOW_TRIGGERED,
    DownloadState.DOWNLOADING_FROM_URL,
    DownloadState.EXTRACTING_TEXT,
    DownloadState.DONE,
)
_DOWNLOAD_STATE_RANK = {state: i for i, state in enumerate(_DOWNLOAD_STATE_ORDER)}
_DOWNLOAD_STATE_RANK[DownloadState.FAILED] = len(_DOWNLOAD_STATE_ORDER)

# A job is in flight while the document is in one of these states
IN_FLIGHT_STATES = (
    DownloadState.FLOW_TRIGGERED,
    DownloadState.DOWNLOADING_FROM_URL,
    DownloadState.EXTRACTING_TEXT,
)


class SyncStatus(str, Enum):
    """Status of the mirror operation tracked by a SyncRecord."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================================
# MODELS
# ============================================================================

class Document(Base):
    """
    Document model: one node of a remote hierarchy mirrored locally.

    Attributes:
        id: Opaque remote identifier, unique within connection_id
        connection_id: Remote account/session this node belongs to
        user_id: Owner of the connection
        title: Display name (file name for files)
        parent_id: Remote id of the parent folder, None for roots
        can_have_children: True for folders, False for files
        can_download: Remote hint that the node can be downloaded
        resource_uri: Remote locator for preview/download
        created_at: Source creation timestamp (as reported by the source)
        updated_at: Source modification timestamp (as reported by the source)
        is_subscribed: Whether the user selected this node
        download_state: Pipeline state (see DownloadState), None if never triggered
        download_error: Message of the error that failed the download
        extraction_error: Message of the last text extraction failure
        storage_key: Blob store key of the downloaded content
        content: Extracted plain text
        last_synced_at: When the content was last stored

    Mirrored fields (MIRRORED_FIELDS) are owned by the sync orchestrator and
    webhooks; every other mutable column is owned by the subscription
    cascade and the download pipeline.
    """

    __tablename__ = "documents"

    id = Column(String(255), primary_key=True)
    connection_id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=True, index=True)

    # Mirrored remote metadata
    title = Column(String(1024), nullable=False, default="")
    parent_id = Column(String(255), nullable=True)
    can_have_children = Column(Boolean, nullable=False, default=False)
    can_download = Column(Boolean, nullable=True)
    resource_uri = Column(Text, nullable=True)
    created_at = Column(String(64), nullable=True)
    updated_at = Column(String(64), nullable=True)

    # Pipeline state
    is_subscribed = Column(Boolean, nullable=False, default=False, index=True)
    download_state = Column(String(32), nullable=True, index=True)
    download_error = Column(Text, nullable=True)
    extraction_error = Column(Text, nullable=True)
    storage_key = Column(String(1024), nullable=True)
    content = Column(Text, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_documents_connection_parent", "connection_id", "parent_id"),
    )

    @property
    def is_folder(self) -> bool:
        return bool(self.can_have_children)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "connection_id": self.connection_id,
            "user_id": self.user_id,
            "title": self.title,
            "parent_id": self.parent_id,
            "can_have_children": self.can_have_children,
            "can_download": self.can_download,
            "resource_uri": self.resource_uri,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "is_subscribed": self.is_subscribed,
            "download_state": self.download_state,
            "download_error": self.download_error,
            "extraction_error": self.extraction_error,
            "storage_key": self.storage_key,
            "last_synced_at": self.last_synced_at,
        }

    def __repr__(self) -> str:
        return (
            f"<Document(id={self.id}, connection_id={self.connection_id}, "
            f"folder={self.can_have_children}, state={self.download_state})>"
        )


# Fields written by the sync orchestrator's bulk upsert; never pipeline state
MIRRORED_FIELDS = (
    "title",
    "parent_id",
    "can_have_children",
    "can_download",
    "resource_uri",
    "created_at",
    "updated_at",
    "user_id",
)


class SyncRecord(Base):
    """
    SyncRecord model: health of the mirror operation for one connection.

    Attributes:
        id: Row identifier
        connection_id: Connection being mirrored (unique)
        user_id: Owner of the connection
        integration_id / integration_name / integration_logo: Display metadata
        sync_status: pending, in_progress, completed or failed
        sync_run_id: Identifier of the sync attempt that owns the record;
            a newer start replaces it so late writes of older runs are ignored
        sync_started_at / sync_completed_at: Attempt timestamps
        sync_error: Message of the error that failed the attempt
        is_truncated: True when the MAX_DOCUMENTS cap was hit
        total_documents: Number of documents mirrored by the attempt
    """

    __tablename__ = "sync_records"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    connection_id = Column(String(255), nullable=False, unique=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)

    integration_id = Column(String(255), nullable=True)
    integration_name = Column(String(255), nullable=True)
    integration_logo = Column(Text, nullable=True)

    sync_status = Column(String(20), nullable=False, default=SyncStatus.PENDING.value)
    sync_run_id = Column(String(36), nullable=True)
    sync_started_at = Column(DateTime, nullable=True)
    sync_completed_at = Column(DateTime, nullable=True)
    sync_error = Column(Text, nullable=True)
    is_truncated = Column(Boolean, nullable=False, default=False)
    total_documents = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<SyncRecord(connection_id={self.connection_id}, "
            f"status={self.sync_status}, run={self.sync_run_id})>"
        )
