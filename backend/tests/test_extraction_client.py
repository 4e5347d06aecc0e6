"""
Tests for the extraction service client.
"""

import httpx
import pytest

from knowledge_sync.config import settings
from knowledge_sync.core.ingestion.extraction_client import (
    ExtractionClient,
    create_extraction_client,
    is_supported_file,
)
from knowledge_sync.core.shared.errors import ExtractionError


def make_client(handler, **kwargs) -> ExtractionClient:
    kwargs.setdefault("max_retries", 0)
    return ExtractionClient(
        base_url="https://extractor.test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestExtract:

    @pytest.mark.asyncio
    async def test_json_text(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = request.content
            return httpx.Response(200, json={"text": "hello world"})

        client = make_client(handler)
        try:
            text = await client.extract("report.pdf", b"%PDF-1.4")
        finally:
            await client.aclose()

        assert text == "hello world"
        assert seen["path"] == "/v1/extract"
        assert b'filename="report.pdf"' in seen["body"]
        assert b"application/pdf" in seen["body"]

    @pytest.mark.asyncio
    async def test_json_markdown(self):
        client = make_client(lambda request: httpx.Response(200, json={"markdown": "# Title"}))
        try:
            assert await client.extract("notes.md", b"# Title") == "# Title"
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_json_elements(self):
        body = {"elements": [{"text": "one"}, {"type": "Image"}, {"text": "two"}]}
        client = make_client(lambda request: httpx.Response(200, json=body))
        try:
            assert await client.extract("deck.pptx", b"x") == "one\ntwo"
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_plain_text_body(self):
        client = make_client(
            lambda request: httpx.Response(200, text="plain", headers={"content-type": "text/plain"})
        )
        try:
            assert await client.extract("a.txt", b"plain") == "plain"
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_api_key_sent(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"text": "ok"})

        client = make_client(handler, api_key="secret")
        try:
            await client.extract("a.pdf", b"x")
        finally:
            await client.aclose()

        assert seen["auth"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = make_client(lambda request: httpx.Response(500, text="boom"))
        try:
            with pytest.raises(ExtractionError, match="after 1 attempt"):
                await client.extract("a.pdf", b"x")
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_json_without_text(self):
        client = make_client(lambda request: httpx.Response(200, json={"pages": 3}))
        try:
            with pytest.raises(ExtractionError):
                await client.extract("a.pdf", b"x")
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, monkeypatch):
        """A failed attempt is retried after a backoff sleep."""
        calls = []
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        monkeypatch.setattr("knowledge_sync.core.ingestion.extraction_client.asyncio.sleep", fake_sleep)

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"text": "second time"})

        client = make_client(handler, max_retries=1)
        try:
            assert await client.extract("a.pdf", b"x") == "second time"
        finally:
            await client.aclose()

        assert len(calls) == 2
        assert sleeps == [0.5]


class TestConfiguration:

    def test_requires_base_url(self, monkeypatch):
        monkeypatch.setattr(settings, "extractor_base_url", "")
        with pytest.raises(ValueError):
            ExtractionClient()

    def test_factory_returns_none_when_unconfigured(self, monkeypatch):
        monkeypatch.setattr(settings, "extractor_base_url", "")
        assert create_extraction_client() is None

    def test_factory_returns_none_when_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "extractor_base_url", "https://extractor.test")
        monkeypatch.setattr(settings, "extraction_enabled", False)
        assert create_extraction_client() is None

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("report.pdf", True),
            ("REPORT.PDF", True),
            ("notes.docx", True),
            ("photo.png", False),
            ("no_extension", False),
            (None, False),
        ],
    )
    def test_is_supported_file(self, filename, expected):
        assert is_supported_file(filename) is expected

    def test_is_supported_file_custom_list(self):
        assert is_supported_file("photo.png", ["PNG"]) is True
