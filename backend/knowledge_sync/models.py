# ============================================================================
# Knowledge Sync - API Data Models
# ============================================================================
"""
Pydantic request/response models for the Knowledge Sync API.

Webhook payloads come from several remote connector variants that name the
same field differently (``connectionId`` vs ``connection_id``,
``downloadURI`` vs ``downloadUri``). Each payload is one model with explicit
optional fields and ``AliasChoices`` for the known spellings; unknown keys are
ignored.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ============================================================================
# ERROR MODELS
# ============================================================================

class ErrorResponse(BaseModel):
    """
    Standard error response model for API errors.

    Attributes:
        error: Error category or type
        detail: Detailed error message
        timestamp: When the error occurred
    """
    error: str = Field(description="Error category or type")
    detail: Optional[str] = Field(default=None, description="Detailed error message")
    timestamp: datetime = Field(
        default_factory=datetime.now,
        description="Timestamp when error occurred",
    )


# ============================================================================
# INTEGRATION / SUBSCRIPTION REQUESTS
# ============================================================================

class SyncRequest(BaseModel):
    """Body of ``POST /integrations/{connection_id}/sync``."""
    model_config = ConfigDict(extra="ignore")

    integration_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("integration_id", "integrationId")
    )
    integration_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("integration_name", "integrationName")
    )
    integration_logo: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("integration_logo", "integrationLogo")
    )
    user_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("user_id", "userId")
    )


class SyncStartResponse(BaseModel):
    status: str
    run_id: Optional[str] = None


class SyncStatusResponse(BaseModel):
    status: str
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    is_truncated: bool = False
    total_documents: int = 0


class SubscribeRequest(BaseModel):
    """Body of ``PATCH /integrations/{connection_id}/documents/subscribe``."""
    model_config = ConfigDict(extra="ignore")

    document_ids: List[str] = Field(
        min_length=1, validation_alias=AliasChoices("document_ids", "documentIds")
    )
    is_subscribed: bool = Field(validation_alias=AliasChoices("is_subscribed", "isSubscribed"))
    expand_folders: bool = Field(
        default=True, validation_alias=AliasChoices("expand_folders", "expandFolders")
    )


class DownloadRequest(BaseModel):
    """Body of ``POST /integrations/{connection_id}/download``."""
    model_config = ConfigDict(extra="ignore")

    document_id: str = Field(min_length=1, validation_alias=AliasChoices("document_id", "documentId"))


class DocumentResponse(BaseModel):
    """A mirrored document as returned by the API (content excluded)."""
    id: str
    connection_id: str
    user_id: Optional[str] = None
    title: str
    parent_id: Optional[str] = None
    can_have_children: bool
    can_download: Optional[bool] = None
    resource_uri: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    is_subscribed: bool
    download_state: Optional[str] = None
    download_error: Optional[str] = None
    extraction_error: Optional[str] = None
    storage_key: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class DocumentListResponse(BaseModel):
    documents: List[DocumentResponse]
    total: int


class DocumentContentResponse(BaseModel):
    id: str
    connection_id: str
    title: str
    content: Optional[str] = None
    extraction_error: Optional[str] = None
    download_state: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class SubscribedGroup(BaseModel):
    connection_id: str
    integration_id: Optional[str] = None
    integration_name: Optional[str] = None
    integration_logo: Optional[str] = None
    documents: List[DocumentResponse]


# ============================================================================
# WEBHOOK PAYLOADS
# ============================================================================

class DocumentFields(BaseModel):
    """Node metadata as sent by the remote source."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    title: str = ""
    parent_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("parent_id", "parentId")
    )
    can_have_children: bool = Field(
        default=False, validation_alias=AliasChoices("can_have_children", "canHaveChildren")
    )
    can_download: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("can_download", "canDownload")
    )
    resource_uri: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("resource_uri", "resourceURI", "resourceUri")
    )
    created_at: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("created_at", "createdAt")
    )
    updated_at: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("updated_at", "updatedAt")
    )


class DocumentEventPayload(BaseModel):
    """Create and update notifications."""
    model_config = ConfigDict(extra="ignore")

    connection_id: str = Field(
        min_length=1, validation_alias=AliasChoices("connection_id", "connectionId")
    )
    fields: DocumentFields


class DeleteEventPayload(BaseModel):
    """Delete notification for one node; its subtree goes with it."""
    model_config = ConfigDict(extra="ignore")

    connection_id: str = Field(
        min_length=1, validation_alias=AliasChoices("connection_id", "connectionId")
    )
    id: str = Field(min_length=1, validation_alias=AliasChoices("id", "document_id", "documentId"))
    source: Optional[str] = None


class DownloadCompletePayload(BaseModel):
    """Callback of the remote download flow."""
    model_config = ConfigDict(extra="ignore")

    connection_id: str = Field(
        min_length=1, validation_alias=AliasChoices("connection_id", "connectionId")
    )
    document_id: str = Field(
        min_length=1, validation_alias=AliasChoices("document_id", "documentId")
    )
    download_uri: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("download_uri", "downloadURI", "downloadUri", "downloadUrl"),
    )
    text: Optional[str] = None


class FlowRun(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    universal_flow_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("universal_flow_id", "universalFlowId")
    )
    flow_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("flow_key", "flowKey")
    )
    connection_id: str = Field(
        min_length=1, validation_alias=AliasChoices("connection_id", "connectionId")
    )
    input: Any = None

    @property
    def document_id(self) -> Optional[str]:
        items = self.input if isinstance(self.input, list) else [self.input]
        for item in items:
            if not isinstance(item, dict):
                continue
            value = item.get("documentId") or item.get("document_id")
            if value:
                return value
        return None


class NotificationData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    flow_run: FlowRun = Field(validation_alias=AliasChoices("flow_run", "flowRun"))


class NotificationPayload(BaseModel):
    """Platform event notification (flow run failures)."""
    model_config = ConfigDict(extra="ignore")

    event_type: str = Field(min_length=1, validation_alias=AliasChoices("event_type", "eventType"))
    data: NotificationData


class WebhookAck(BaseModel):
    status: str = "ok"
    applied: bool = True
    detail: Optional[str] = None
