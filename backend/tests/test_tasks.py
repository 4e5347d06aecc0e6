"""
Tests for the Celery tasks, their failure callbacks and job dispatch.

Tasks are exercised without a broker: callbacks are invoked directly and
the async bodies are patched where the test is about the task wrapper.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import make_record
from knowledge_sync.celery_app import app as celery_app
from knowledge_sync.core.database.models import DownloadState
from knowledge_sync.core.documents.download_pipeline import DownloadJob
from knowledge_sync.core.ops import job_dispatch
from knowledge_sync.core.shared.errors import DocumentNotFoundError
from knowledge_sync.core.tasks.download import _mark_download_failed, download_document_task
from knowledge_sync.core.tasks.sync import sync_documents_task


class TestCeleryConfiguration:

    def test_tasks_registered(self):
        assert "knowledge_sync.tasks.sync_documents" in celery_app.tasks
        assert "knowledge_sync.tasks.download_document" in celery_app.tasks

    def test_task_routes(self):
        routes = celery_app.conf.task_routes
        assert routes["knowledge_sync.tasks.sync_documents"] == {"queue": "sync"}
        assert routes["knowledge_sync.tasks.download_document"] == {"queue": "downloads"}

    def test_json_serialization(self):
        assert celery_app.conf.task_serializer == "json"
        assert celery_app.conf.accept_content == ["json"]


class TestDownloadTask:

    def test_runs_pipeline(self):
        result_payload = {"document_id": "a", "storage_key": "c1/a/k/a.pdf", "extracted": False, "skipped": False}
        with patch(
            "knowledge_sync.core.tasks.download._download_document_async",
            new=AsyncMock(return_value=result_payload),
        ) as run:
            result = download_document_task.apply(
                kwargs={"document_id": "a", "connection_id": "c1", "title": "a.pdf", "token": "tok"}
            )

        assert result.get() == result_payload
        payload = run.await_args.args[0]
        assert payload["document_id"] == "a"
        assert payload["token"] == "tok"
        assert payload["previous_storage_key"] is None

    def test_on_failure_marks_document_failed(self):
        """The failure callback records the error message on the document."""
        with patch(
            "knowledge_sync.core.tasks.download._mark_download_failed",
            new=AsyncMock(return_value=True),
        ) as mark_failed:
            download_document_task.on_failure(
                RuntimeError("Download HTTP 503"),
                "task-1",
                (),
                {"document_id": "a", "connection_id": "c1"},
                None,
            )

        mark_failed.assert_awaited_once_with("c1", "a", "Download HTTP 503")

    def test_on_failure_uses_exception_name_without_message(self):
        with patch(
            "knowledge_sync.core.tasks.download._mark_download_failed",
            new=AsyncMock(return_value=True),
        ) as mark_failed:
            download_document_task.on_failure(
                TimeoutError(), "task-1", (), {"document_id": "a", "connection_id": "c1"}, None
            )

        mark_failed.assert_awaited_once_with("c1", "a", "TimeoutError")

    def test_on_failure_without_ids(self):
        with patch(
            "knowledge_sync.core.tasks.download._mark_download_failed",
            new=AsyncMock(return_value=True),
        ) as mark_failed:
            download_document_task.on_failure(RuntimeError("x"), "task-1", (), {}, None)

        mark_failed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mark_download_failed(self, db, session, store, seed):
        await seed(make_record("a", download_state=DownloadState.EXTRACTING_TEXT.value))

        with patch("knowledge_sync.core.tasks.download.database_service", db):
            marked = await _mark_download_failed("c1", "a", str(DocumentNotFoundError("a")))
            missing = await _mark_download_failed("c1", "ghost", "boom")

        doc = await store.get_document(session, "c1", "a")
        assert marked is True
        assert missing is False
        assert doc.download_state == DownloadState.FAILED.value
        assert doc.download_error == "Document a not found"


class TestSyncTask:

    def test_runs_sync(self):
        summary = {"status": "completed", "total_documents": 3, "is_truncated": False}
        with patch(
            "knowledge_sync.core.tasks.sync._sync_documents_async",
            new=AsyncMock(return_value=summary),
        ) as run:
            result = sync_documents_task.apply(
                kwargs={"connection_id": "c1", "user_id": "user-1", "run_id": "r1", "token": "tok"}
            )

        assert result.get() == summary
        run.assert_awaited_once_with("c1", "user-1", "r1", "tok")

    def test_on_failure_records_failure(self):
        with patch(
            "knowledge_sync.core.tasks.sync._record_sync_failure",
            new=AsyncMock(return_value="failed"),
        ) as record_failure:
            sync_documents_task.on_failure(
                RuntimeError("Integration App HTTP 500: boom"),
                "task-1",
                (),
                {"connection_id": "c1", "user_id": "user-1", "run_id": "r1"},
                None,
            )

        record_failure.assert_awaited_once_with("c1", "r1", "Integration App HTTP 500: boom")


class TestJobDispatch:

    def test_enqueue_download(self):
        task = MagicMock()
        task.apply_async.return_value = MagicMock(id="task-1")
        job = DownloadJob(document_id="a", connection_id="c1", title="a.pdf", token="tok")

        with patch("knowledge_sync.core.tasks.download.download_document_task", task):
            task_id = job_dispatch.enqueue_download(job)

        assert task_id == "task-1"
        task.apply_async.assert_called_once_with(kwargs=job.to_payload())

    def test_enqueue_sync(self):
        task = MagicMock()
        task.apply_async.return_value = MagicMock(id="sync-1")

        with patch("knowledge_sync.core.tasks.sync.sync_documents_task", task):
            task_id = job_dispatch.enqueue_sync("c1", "user-1", "r1", None)

        assert task_id == "sync-1"
        task.apply_async.assert_called_once_with(
            kwargs={"connection_id": "c1", "user_id": "user-1", "run_id": "r1", "token": None}
        )
