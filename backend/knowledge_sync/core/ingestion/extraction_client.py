# ============================================================================
# backend/knowledge_sync/core/ingestion/extraction_client.py
# ============================================================================
# Minimal HTTP client for the external text extraction service.
# Centralizes retries, timeouts, and error handling.
#
# Environment-driven configuration (see settings in config.py):
#   - settings.extractor_base_url (e.g., http://extraction:8000)
#   - settings.extractor_extract_path (default: /v1/extract)
#   - settings.extractor_timeout (float seconds)
#   - settings.extractor_max_retries (int)
#   - settings.extractor_api_key (optional; sent as Bearer token)
# ============================================================================

from __future__ import annotations

import asyncio
import mimetypes
from typing import Iterable, Optional

import httpx

from ...config import settings
from ..shared.errors import ExtractionError
from ..storage.storage_path_service import file_extension


def is_supported_file(filename: Optional[str], supported: Optional[Iterable[str]] = None) -> bool:
    """True when the lower-cased extension of ``filename`` can be extracted."""
    extension = file_extension(filename)
    if not extension:
        return False
    allowed = supported if supported is not None else settings.extraction_supported_extensions
    return extension in {e.lower() for e in allowed}


class ExtractionClient:
    """Async client to call the extraction service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        extract_path: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url or settings.extractor_base_url
        self.extract_path = extract_path or settings.extractor_extract_path
        self.timeout = timeout or settings.extractor_timeout
        self.max_retries = max_retries if max_retries is not None else settings.extractor_max_retries
        self.api_key = api_key or settings.extractor_api_key

        if not self.base_url:
            raise ValueError("ExtractionClient requires a base URL. Set EXTRACTOR_BASE_URL or settings.extractor_base_url")

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            verify=settings.extractor_verify_ssl,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _detect_mime(filename: str) -> str:
        mime, _ = mimetypes.guess_type(filename)
        return mime or "application/octet-stream"

    @staticmethod
    def _text_from_json(data: dict) -> str:
        # {"text": ...}, {"markdown": ...} or a list of partitioned elements
        for field in ("text", "markdown"):
            if isinstance(data.get(field), str):
                return data[field]
        elements = data.get("elements")
        if isinstance(elements, list):
            return "\n".join(
                e["text"] for e in elements if isinstance(e, dict) and isinstance(e.get("text"), str)
            )
        raise ExtractionError("Extractor JSON missing 'text' field")

    async def extract(self, filename: str, content: bytes) -> str:
        """
        Send a file's bytes to the extraction service and return its text.

        Expected success responses:
          - JSON: {"text": "..."}, {"markdown": "..."} or {"elements": [{"text": ...}]}
          - text/plain body
        """
        retries = max(0, int(self.max_retries))
        attempt = 0
        last_error: Optional[BaseException] = None

        while attempt <= retries:
            try:
                response = await self._client.post(
                    self.extract_path,
                    headers=self._headers(),
                    files={"file": (filename, content, self._detect_mime(filename))},
                    data={"target": "text"},
                )

                if response.status_code >= 400:
                    raise ExtractionError(f"Extractor HTTP {response.status_code}: {response.text[:1000]}")

                ctype = response.headers.get("content-type", "")
                if "application/json" in ctype:
                    return self._text_from_json(response.json())

                text = response.text
                if not text.strip():
                    raise ExtractionError("Extractor returned empty body")
                return text

            except (httpx.RequestError, httpx.HTTPStatusError, ExtractionError) as e:
                last_error = e
                if attempt >= retries:
                    break
                # Exponential backoff
                sleep_for = min(2 ** attempt * 0.5, 6.0)
                await asyncio.sleep(sleep_for)
                attempt += 1

        raise ExtractionError(f"Extraction failed after {retries + 1} attempt(s): {last_error!s}")


def create_extraction_client() -> Optional[ExtractionClient]:
    """
    New client bound to the running event loop, or None when extraction is
    disabled or unconfigured. Callers close it with ``aclose()``.
    """
    if not settings.extraction_configured:
        return None
    return ExtractionClient()
