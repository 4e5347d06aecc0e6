import os

# Point configuration at test values before importing application modules.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

# Keep external integrations quiet during tests
os.environ.setdefault("USE_OBJECT_STORAGE", "false")
os.environ.setdefault("EXTRACTOR_BASE_URL", "")
os.environ.setdefault("INTEGRATION_API_URL", "https://integration.test")
os.environ.setdefault("SYNC_COMPLETION_DELAY", "0")
os.environ.setdefault("WEBHOOK_SECRET", "")

from typing import Any, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from knowledge_sync.core.documents.document_store import (  # noqa: E402
    build_document_record,
    document_store,
)
from knowledge_sync.core.shared.database_service import DatabaseService  # noqa: E402
from knowledge_sync.core.shared.errors import BlobStoreError  # noqa: E402


# =============================================================================
# TEST DOUBLES
# =============================================================================


class InMemoryBlobStore:
    """Blob store double: async put/get/delete over a dict."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.deleted: List[str] = []
        self.failing_deletes: set = set()
        self.fail_puts = 0

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise BlobStoreError(f"Failed to store {key}: connection reset")
        self.objects[key] = data
        self.content_types[key] = content_type
        return key

    async def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise BlobStoreError(f"Failed to read {key}: NoSuchKey")
        return self.objects[key]

    async def delete(self, key: str) -> None:
        if key in self.failing_deletes:
            raise BlobStoreError(f"Failed to delete {key}: access denied")
        self.deleted.append(key)
        self.objects.pop(key, None)


class RecordingDispatcher:
    """Job dispatch double recording every queued download and sync."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.jobs: List[Any] = []
        self.syncs: List[Dict[str, Any]] = []

    def __call__(self, job) -> str:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.jobs.append(job)
        return f"task-{len(self.jobs)}"

    def enqueue_sync(self, **kwargs) -> str:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.syncs.append(kwargs)
        return f"sync-{len(self.syncs)}"

    @property
    def document_ids(self) -> List[str]:
        return [job.document_id for job in self.jobs]


def make_record(
    doc_id: str,
    parent_id: Optional[str] = None,
    folder: bool = False,
    title: Optional[str] = None,
    connection_id: str = "c1",
    user_id: str = "user-1",
    **extra: Any,
) -> Dict[str, Any]:
    """Document row in the shape produced by the remote listing."""
    fields = {
        "id": doc_id,
        "title": title if title is not None else (doc_id if folder else f"{doc_id}.pdf"),
        "parentId": parent_id,
        "canHaveChildren": folder,
        "resourceURI": f"https://remote.test/{doc_id}",
        "createdAt": "2024-01-01T00:00:00Z",
        "updatedAt": "2024-01-02T00:00:00Z",
    }
    record = build_document_record(fields, connection_id, user_id)
    record.update(extra)
    return record


# =============================================================================
# FIXTURES
# =============================================================================


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test."""
    service = DatabaseService("sqlite+aiosqlite://")
    await service.init_db()
    yield service
    await service.close()


@pytest_asyncio.fixture
async def session(db):
    async with db.get_session() as s:
        yield s


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def store():
    return document_store


@pytest_asyncio.fixture
async def seed(session):
    """Insert documents built with make_record()."""

    async def _seed(*records: Dict[str, Any]) -> None:
        # One row at a time: records may carry different extra columns
        for record in records:
            await document_store.bulk_upsert(session, [record])

    return _seed


@pytest_asyncio.fixture
async def sample_tree(seed):
    """
    c1 hierarchy:

        f1/
          a.pdf
          f2/
            b.pdf
        c.pdf
    """
    await seed(
        make_record("f1", folder=True),
        make_record("a", parent_id="f1"),
        make_record("f2", parent_id="f1", folder=True),
        make_record("b", parent_id="f2"),
        make_record("c"),
    )
