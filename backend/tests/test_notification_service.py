"""
Tests for update, download-complete and flow-failure notifications.
"""

import pytest

from conftest import make_record
from knowledge_sync.config import settings
from knowledge_sync.core.database.models import DownloadState
from knowledge_sync.core.documents.notification_service import (
    FLOW_FAILED_MESSAGE,
    NotificationService,
)
from knowledge_sync.core.documents.subscription_service import SubscriptionService, TriggerOutcome


@pytest.fixture
def service(store, dispatcher):
    return NotificationService(
        store=store,
        subscriptions=SubscriptionService(store=store, enqueue=dispatcher),
    )


class TestHandleUpdated:

    @pytest.mark.asyncio
    async def test_refreshes_metadata_only(self, session, store, service, seed):
        await seed(
            make_record(
                "a",
                is_subscribed=True,
                download_state=DownloadState.DONE.value,
                storage_key="c1/a/k/a.pdf",
            )
        )

        updated = await service.handle_updated(
            session,
            "c1",
            {
                "id": "a",
                "title": "renamed.pdf",
                "updatedAt": "2024-03-01T00:00:00Z",
                "resourceURI": "https://remote.test/a-v2",
            },
        )

        doc = await store.get_document(session, "c1", "a")
        assert updated is True
        assert doc.title == "renamed.pdf"
        assert doc.updated_at == "2024-03-01T00:00:00Z"
        assert doc.resource_uri == "https://remote.test/a-v2"
        assert doc.is_subscribed is True
        assert doc.download_state == DownloadState.DONE.value
        assert doc.storage_key == "c1/a/k/a.pdf"

    @pytest.mark.asyncio
    async def test_empty_title_not_applied(self, session, store, service, seed):
        await seed(make_record("a"))

        await service.handle_updated(session, "c1", {"id": "a", "title": ""})

        doc = await store.get_document(session, "c1", "a")
        assert doc.title == "a.pdf"

    @pytest.mark.asyncio
    async def test_unknown_document(self, session, service):
        assert await service.handle_updated(session, "c1", {"id": "ghost", "title": "x"}) is False


class TestHandleDownloadComplete:

    @pytest.mark.asyncio
    async def test_uri_enqueues_download(self, session, store, service, dispatcher, seed):
        await seed(make_record("a", is_subscribed=True))

        outcome = await service.handle_download_complete(
            session, "c1", "a", download_uri="https://files.test/a", token="tok"
        )

        doc = await store.get_document(session, "c1", "a")
        assert outcome == TriggerOutcome.TRIGGERED
        assert doc.resource_uri == "https://files.test/a"
        assert doc.download_state == DownloadState.FLOW_TRIGGERED.value
        assert dispatcher.jobs[0].download_uri == "https://files.test/a"
        assert dispatcher.jobs[0].token == "tok"

    @pytest.mark.asyncio
    async def test_uri_while_in_flight_is_skipped(self, session, service, dispatcher, seed):
        await seed(
            make_record("a", is_subscribed=True, download_state=DownloadState.DOWNLOADING_FROM_URL.value)
        )

        outcome = await service.handle_download_complete(
            session, "c1", "a", download_uri="https://files.test/a"
        )

        assert outcome == TriggerOutcome.SKIPPED
        assert dispatcher.jobs == []

    @pytest.mark.asyncio
    async def test_uri_for_unsubscribed_document_is_ignored(self, session, store, service, dispatcher, seed):
        """A callback never downloads a file the user unsubscribed from meanwhile."""
        await seed(make_record("a", download_state=DownloadState.FLOW_TRIGGERED.value))

        outcome = await service.handle_download_complete(
            session, "c1", "a", download_uri="https://files.test/a"
        )

        doc = await store.get_document(session, "c1", "a")
        assert outcome == TriggerOutcome.NOT_SUBSCRIBED
        assert doc.download_state == DownloadState.FLOW_TRIGGERED.value
        assert dispatcher.jobs == []

    @pytest.mark.asyncio
    async def test_text_only_stored_as_content(self, session, store, service, dispatcher, seed):
        await seed(make_record("a"))

        outcome = await service.handle_download_complete(session, "c1", "a", text="Extracted body")

        doc = await store.get_document(session, "c1", "a")
        assert outcome is None
        assert doc.content == "Extracted body"
        assert doc.last_synced_at is not None
        assert dispatcher.jobs == []

    @pytest.mark.asyncio
    async def test_unknown_document(self, session, service, dispatcher):
        outcome = await service.handle_download_complete(
            session, "c1", "ghost", download_uri="https://files.test/ghost"
        )
        assert outcome == TriggerOutcome.NOT_FOUND
        assert dispatcher.jobs == []


class TestFlowFailures:

    @pytest.mark.asyncio
    async def test_download_flow_failure_marks_failed(self, session, store, service, seed):
        await seed(make_record("a", download_state=DownloadState.FLOW_TRIGGERED.value))

        failed = await service.handle_flow_failed(
            session, "c1", "a", settings.integration_download_flow
        )

        doc = await store.get_document(session, "c1", "a")
        assert failed is True
        assert doc.download_state == DownloadState.FAILED.value
        assert doc.download_error == FLOW_FAILED_MESSAGE

    @pytest.mark.asyncio
    async def test_other_flow_ignored(self, session, store, service, seed):
        await seed(make_record("a", download_state=DownloadState.FLOW_TRIGGERED.value))

        failed = await service.handle_flow_failed(session, "c1", "a", "sync-contacts")

        doc = await store.get_document(session, "c1", "a")
        assert failed is False
        assert doc.download_state == DownloadState.FLOW_TRIGGERED.value

    @pytest.mark.asyncio
    async def test_unknown_document(self, session, service):
        failed = await service.handle_flow_failed(
            session, "c1", "ghost", settings.integration_download_flow
        )
        assert failed is False


class FakeFlowProvider:
    def __init__(self, token):
        self.token = token
        self.looked_up = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def get_flow_key(self, flow_id):
        self.looked_up.append(flow_id)
        return "download-document"


class TestResolveFlowKey:

    @pytest.mark.asyncio
    async def test_key_given(self, service):
        assert await service.resolve_flow_key("download-document", "uf-1") == "download-document"

    @pytest.mark.asyncio
    async def test_looked_up_by_flow_id(self, store):
        service = NotificationService(store=store, provider_factory=FakeFlowProvider)
        assert await service.resolve_flow_key(None, "uf-1") == "download-document"

    @pytest.mark.asyncio
    async def test_nothing_to_resolve(self, service):
        assert await service.resolve_flow_key(None, None) is None
