"""
Tests for DocumentStore.

Covers the idempotent bulk upsert, the conditional state transitions used by
the download pipeline and the run-id guard on SyncRecord writes.
"""

import pytest

from conftest import make_record
from knowledge_sync.core.database.models import IN_FLIGHT_STATES, DownloadState, SyncStatus
from knowledge_sync.core.documents.document_store import build_document_record


# =============================================================================
# RECORD MAPPING
# =============================================================================


class TestBuildDocumentRecord:

    def test_maps_camel_case_fields(self):
        record = build_document_record(
            {
                "id": 42,
                "title": "Report.pdf",
                "parentId": "f1",
                "canHaveChildren": False,
                "resourceURI": "https://remote.test/42",
                "createdAt": "2024-01-01T00:00:00Z",
                "updatedAt": "2024-01-02T00:00:00Z",
            },
            "c1",
            "user-1",
        )
        assert record["id"] == "42"
        assert record["connection_id"] == "c1"
        assert record["user_id"] == "user-1"
        assert record["parent_id"] == "f1"
        assert record["can_have_children"] is False
        assert record["resource_uri"] == "https://remote.test/42"
        assert record["is_subscribed"] is False
        assert record["content"] is None

    def test_maps_snake_case_fields(self):
        record = build_document_record(
            {"id": "f1", "title": "Folder", "parent_id": None, "can_have_children": True},
            "c1",
            None,
        )
        assert record["can_have_children"] is True
        assert record["parent_id"] is None


# =============================================================================
# BULK UPSERT
# =============================================================================


class TestBulkUpsert:

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, session, store):
        """Writing the same batch twice leaves one row per (id, connection_id)."""
        records = [make_record("a"), make_record("b"), make_record("f1", folder=True)]

        await store.bulk_upsert(session, records)
        await store.bulk_upsert(session, records)

        assert await store.count_documents(session, "c1") == 3

    @pytest.mark.asyncio
    async def test_duplicate_keys_in_one_batch(self, session, store):
        written = await store.bulk_upsert(
            session, [make_record("a", title="old.pdf"), make_record("a", title="new.pdf")]
        )
        doc = await store.get_document(session, "c1", "a")
        assert written == 1
        assert doc.title == "new.pdf"

    @pytest.mark.asyncio
    async def test_same_id_in_two_connections(self, session, store):
        await store.bulk_upsert(
            session, [make_record("a", connection_id="c1"), make_record("a", connection_id="c2")]
        )
        assert await store.count_documents(session, "c1") == 1
        assert await store.count_documents(session, "c2") == 1

    @pytest.mark.asyncio
    async def test_upsert_refreshes_only_mirrored_fields(self, session, store, seed):
        """Pipeline state survives a refresh of the remote metadata."""
        await seed(
            make_record(
                "a",
                is_subscribed=True,
                download_state=DownloadState.DONE.value,
                storage_key="c1/a/x/a.pdf",
                content="hello",
            )
        )

        await store.bulk_upsert(session, [make_record("a", title="renamed.pdf")])

        doc = await store.get_document(session, "c1", "a")
        assert doc.title == "renamed.pdf"
        assert doc.is_subscribed is True
        assert doc.download_state == DownloadState.DONE.value
        assert doc.storage_key == "c1/a/x/a.pdf"
        assert doc.content == "hello"

    @pytest.mark.asyncio
    async def test_create_document_turns_subscription_on_only(self, session, store, seed):
        await seed(make_record("a", is_subscribed=True))

        doc = await store.create_document(session, make_record("a", is_subscribed=False))
        assert doc.is_subscribed is True


# =============================================================================
# READS
# =============================================================================


class TestDocumentReads:

    @pytest.mark.asyncio
    async def test_list_documents_title_filter(self, session, store, sample_tree):
        docs = await store.list_documents(session, "c1", title_query="B.P")
        assert [d.id for d in docs] == ["b"]

    @pytest.mark.asyncio
    async def test_list_documents_ordered_by_title(self, session, store, sample_tree):
        docs = await store.list_documents(session, "c1")
        titles = [d.title for d in docs]
        assert titles == sorted(titles)

    @pytest.mark.asyncio
    async def test_get_children(self, session, store, sample_tree):
        children = await store.get_children(session, "c1", ["f1"])
        assert {d.id for d in children} == {"a", "f2"}

    @pytest.mark.asyncio
    async def test_list_subscribed(self, session, store, seed):
        await seed(
            make_record("a", is_subscribed=True),
            make_record("b"),
            make_record("x", connection_id="c2", is_subscribed=True),
            make_record("y", user_id="someone-else", is_subscribed=True),
        )
        docs = await store.list_subscribed(session, "user-1")
        assert {(d.connection_id, d.id) for d in docs} == {("c1", "a"), ("c2", "x")}


# =============================================================================
# STATE TRANSITIONS
# =============================================================================


class TestDownloadStateTransitions:

    @pytest.mark.asyncio
    async def test_claim_sets_flow_triggered(self, session, store, seed):
        await seed(
            make_record(
                "a",
                is_subscribed=True,
                download_state=DownloadState.FAILED.value,
                download_error="boom",
            )
        )

        claimed = await store.claim_for_download(session, "c1", "a", IN_FLIGHT_STATES)
        doc = await store.get_document(session, "c1", "a")

        assert claimed is True
        assert doc.download_state == DownloadState.FLOW_TRIGGERED.value
        assert doc.download_error is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [s.value for s in IN_FLIGHT_STATES])
    async def test_claim_skips_in_flight(self, session, store, seed, state):
        await seed(make_record("a", is_subscribed=True, download_state=state))
        assert await store.claim_for_download(session, "c1", "a", IN_FLIGHT_STATES) is False

    @pytest.mark.asyncio
    async def test_claim_never_touches_folders(self, session, store, seed):
        await seed(make_record("f1", folder=True, is_subscribed=True))
        assert await store.claim_for_download(session, "c1", "f1", IN_FLIGHT_STATES) is False

    @pytest.mark.asyncio
    async def test_claim_refuses_unsubscribed(self, session, store, seed):
        await seed(make_record("a", download_state=DownloadState.DONE.value))

        assert await store.claim_for_download(session, "c1", "a", IN_FLIGHT_STATES) is False
        doc = await store.get_document(session, "c1", "a")
        assert doc.download_state == DownloadState.DONE.value

    @pytest.mark.asyncio
    async def test_advance_is_monotonic(self, session, store, seed):
        """A state never moves backwards except into FAILED."""
        await seed(make_record("a", download_state=DownloadState.EXTRACTING_TEXT.value))

        moved_back = await store.advance_download_state(
            session, "c1", "a", DownloadState.DOWNLOADING_FROM_URL
        )
        assert moved_back is False
        doc = await store.get_document(session, "c1", "a")
        assert doc.download_state == DownloadState.EXTRACTING_TEXT.value

        assert await store.advance_download_state(session, "c1", "a", DownloadState.DONE) is True
        assert await store.mark_failed(session, "c1", "a", "boom") is True
        assert await store.advance_download_state(session, "c1", "a", DownloadState.DONE) is False

        doc = await store.get_document(session, "c1", "a")
        assert doc.download_state == DownloadState.FAILED.value
        assert doc.download_error == "boom"

    @pytest.mark.asyncio
    async def test_advance_same_state_is_idempotent(self, session, store, seed):
        await seed(make_record("a", download_state=DownloadState.DOWNLOADING_FROM_URL.value))
        assert await store.advance_download_state(
            session, "c1", "a", DownloadState.DOWNLOADING_FROM_URL
        ) is True

    @pytest.mark.asyncio
    async def test_persist_storage_key_keeps_failed_state(self, session, store, seed):
        await seed(make_record("a", download_state=DownloadState.FAILED.value))

        found = await store.persist_storage_key(session, "c1", "a", "c1/a/k/a.pdf", DownloadState.DONE)
        doc = await store.get_document(session, "c1", "a")

        assert found is True
        assert doc.storage_key == "c1/a/k/a.pdf"
        assert doc.last_synced_at is not None
        assert doc.download_state == DownloadState.FAILED.value

    @pytest.mark.asyncio
    async def test_persist_storage_key_clears_previous_content(self, session, store, seed):
        await seed(make_record("a", content="old text", extraction_error="old error"))

        await store.persist_storage_key(session, "c1", "a", "c1/a/k2/a.pdf", DownloadState.DONE)
        doc = await store.get_document(session, "c1", "a")

        assert doc.content is None
        assert doc.extraction_error is None

    @pytest.mark.asyncio
    async def test_persist_storage_key_advances_state(self, session, store, seed):
        await seed(make_record("a", download_state=DownloadState.DOWNLOADING_FROM_URL.value))

        await store.persist_storage_key(
            session, "c1", "a", "c1/a/k/a.pdf", DownloadState.EXTRACTING_TEXT
        )
        doc = await store.get_document(session, "c1", "a")
        assert doc.download_state == DownloadState.EXTRACTING_TEXT.value

    @pytest.mark.asyncio
    async def test_updates_on_missing_document(self, session, store):
        assert await store.mark_failed(session, "c1", "ghost", "boom") is False
        assert await store.persist_storage_key(
            session, "c1", "ghost", "k", DownloadState.DONE
        ) is False


# =============================================================================
# SYNC RECORDS
# =============================================================================


class TestSyncRecords:

    @pytest.mark.asyncio
    async def test_upsert_sync_record_overwrites(self, session, store):
        await store.upsert_sync_record(
            session, "c1", "user-1", sync_status=SyncStatus.IN_PROGRESS.value, sync_run_id="r1"
        )
        record = await store.upsert_sync_record(
            session, "c1", "user-1", sync_status=SyncStatus.IN_PROGRESS.value, sync_run_id="r2"
        )
        assert record.sync_run_id == "r2"
        assert len(await store.list_sync_records(session, ["c1"])) == 1

    @pytest.mark.asyncio
    async def test_update_guarded_by_run_id(self, session, store):
        await store.upsert_sync_record(
            session, "c1", "user-1", sync_status=SyncStatus.IN_PROGRESS.value, sync_run_id="r2"
        )

        stale = await store.update_sync_record(
            session, "c1", {"sync_status": SyncStatus.COMPLETED.value}, run_id="r1"
        )
        current = await store.update_sync_record(
            session, "c1", {"sync_status": SyncStatus.COMPLETED.value}, run_id="r2"
        )

        assert stale is False
        assert current is True
        record = await store.get_sync_record(session, "c1")
        assert record.sync_status == SyncStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_fail_sync(self, session, store):
        await store.upsert_sync_record(
            session, "c1", "user-1", sync_status=SyncStatus.IN_PROGRESS.value, sync_run_id="r1"
        )
        assert await store.fail_sync(session, "c1", "r1", "Failed to start sync") is True

        record = await store.get_sync_record(session, "c1")
        assert record.sync_status == SyncStatus.FAILED.value
        assert record.sync_error == "Failed to start sync"
        assert record.sync_completed_at is not None

    @pytest.mark.asyncio
    async def test_delete_sync_record(self, session, store):
        await store.upsert_sync_record(session, "c1", "user-1", sync_run_id="r1")
        assert await store.delete_sync_record(session, "c1") is True
        assert await store.get_sync_record(session, "c1") is None
        assert await store.is_current_run(session, "c1", "r1") is False
