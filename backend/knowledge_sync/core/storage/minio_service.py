# backend/knowledge_sync/core/storage/minio_service.py
"""
MinIO Storage Service.

Blob store for downloaded document payloads, backed by the MinIO
S3-compatible API. The MinIO client is synchronous; the async ``put``,
``get`` and ``delete`` methods run it in a worker thread so the pipeline
and the deletion cascade can await them.
"""

import asyncio
import logging
from functools import lru_cache
from io import BytesIO
from typing import Dict, List, Optional, Tuple

from minio import Minio
from minio.error import S3Error

from knowledge_sync.config import settings
from knowledge_sync.core.shared.errors import BlobStoreError

logger = logging.getLogger("knowledge_sync.minio")


class MinIOService:
    """
    MinIO storage service implementation.

    Provides:
    - Object upload/download/delete (sync primitives)
    - Awaitable blob store interface (put/get/delete)
    - Bucket bootstrap and health check

    All document payloads live in one bucket (``minio_bucket_documents``).
    """

    def __init__(self, client: Optional[Minio] = None, bucket: Optional[str] = None):
        self._client: Optional[Minio] = client
        self.enabled = settings.use_object_storage
        self.endpoint = settings.minio_endpoint
        self.access_key = settings.minio_access_key
        self.secret_key = settings.minio_secret_key
        self.secure = settings.minio_secure
        self.bucket = bucket or settings.minio_bucket_documents
        self._bucket_ready = False

    @property
    def client(self) -> Minio:
        """Get or create MinIO client (lazy initialization)."""
        if self._client is None:
            self._client = Minio(
                endpoint=self.endpoint,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=self.secure,
            )
            logger.info(
                f"MinIO client initialized (endpoint={self.endpoint}, "
                f"secure={self.secure})"
            )
        return self._client

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    def check_health(self) -> Tuple[bool, Optional[List[str]], Optional[str]]:
        """
        Check MinIO connection health.

        Returns:
            Tuple of (connected, buckets list, error message)
        """
        try:
            buckets = self.client.list_buckets()
            return True, [b.name for b in buckets], None
        except Exception as e:
            logger.error(f"MinIO health check failed: {e}")
            return False, None, str(e)

    # =========================================================================
    # BUCKET OPERATIONS
    # =========================================================================

    def ensure_bucket(self, bucket: Optional[str] = None) -> bool:
        """
        Create bucket if it doesn't exist.

        Returns:
            True if bucket was created, False if it already existed
        """
        bucket = bucket or self.bucket
        try:
            if not self.client.bucket_exists(bucket):
                self.client.make_bucket(bucket)
                logger.info(f"Created bucket: {bucket}")
                return True
            logger.debug(f"Bucket already exists: {bucket}")
            return False
        except S3Error as e:
            logger.error(f"Failed to create bucket {bucket}: {e}")
            raise

    # =========================================================================
    # OBJECT OPERATIONS
    # =========================================================================

    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Upload an object.

        Returns:
            Object ETag
        """
        if not self._bucket_ready:
            self.ensure_bucket()
            self._bucket_ready = True

        result = self.client.put_object(
            bucket_name=self.bucket,
            object_name=key,
            data=BytesIO(data),
            length=len(data),
            content_type=content_type,
            metadata=metadata,
        )
        logger.info(f"Uploaded object {self.bucket}/{key} ({len(data)} bytes)")
        return result.etag

    def get_object(self, key: str) -> bytes:
        response = None
        try:
            response = self.client.get_object(self.bucket, key)
            return response.read()
        finally:
            if response:
                response.close()
                response.release_conn()

    def delete_object(self, key: str) -> bool:
        """
        Delete an object.

        Returns:
            True if deleted (or didn't exist)
        """
        try:
            self.client.remove_object(self.bucket, key)
            logger.info(f"Deleted object {self.bucket}/{key}")
            return True
        except S3Error as e:
            if e.code == "NoSuchKey":
                return True
            raise

    # =========================================================================
    # BLOB STORE INTERFACE
    # =========================================================================

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key`` and return the key."""
        try:
            await asyncio.to_thread(self.put_object, key, data, content_type)
        except S3Error as e:
            raise BlobStoreError(f"Failed to store {key}: {e}") from e
        return key

    async def get(self, key: str) -> bytes:
        try:
            return await asyncio.to_thread(self.get_object, key)
        except S3Error as e:
            raise BlobStoreError(f"Failed to read {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.delete_object, key)
        except S3Error as e:
            raise BlobStoreError(f"Failed to delete {key}: {e}") from e


# =============================================================================
# SINGLETON SERVICE
# =============================================================================


@lru_cache()
def get_minio_service() -> Optional[MinIOService]:
    """
    Get singleton MinIO service instance if object storage is enabled.

    Returns:
        MinIOService if object storage is enabled, else None
    """
    if not settings.use_object_storage:
        return None
    return MinIOService()
