# backend/knowledge_sync/connectors/integration_app/integration_client.py
"""
Integration App client: the remote provider of document listings and files.

Wraps the Integration App REST API for one user token:
- ``list_page``: run the list action for a connection, one cursor page at a time
- ``resolve_download``: run the download action and return a downloadable URL
- ``fetch``: download the bytes behind a URL
- ``get_flow_key``: look up the key of a flow (used by failure notifications)

Usage:
    async with IntegrationAppClient(token) as client:
        page = await client.list_page("conn-1", cursor=None)
        for record in page.records:
            ...
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from knowledge_sync.config import settings
from knowledge_sync.core.shared.errors import ConnectionNotFoundError, RemoteProviderError

logger = logging.getLogger("knowledge_sync.integration_app")


@dataclass
class ListPage:
    """One page of the remote listing."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    cursor: Optional[str] = None


def is_connection_not_found(message: str, connection_id: str) -> bool:
    return f'Connection "{connection_id}" not found' in (message or "")


class IntegrationAppClient:
    """Async client for the Integration App API, bound to one access token."""

    def __init__(
        self,
        token: Optional[str],
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token = token
        self.base_url = (base_url or settings.integration_api_url).rstrip("/")
        self.timeout = timeout or settings.integration_request_timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> "IntegrationAppClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _raise_for_response(
        self,
        response: httpx.Response,
        connection_id: Optional[str],
        not_found_is_connection: bool = False,
    ) -> None:
        """
        Raise for an error response.

        A bare 404 only means the connection is gone when the request
        addressed the connection itself (``not_found_is_connection``); a
        404 about some other resource is a plain RemoteProviderError.
        """
        if response.status_code < 400:
            return

        message = response.text[:1000] if response.text else ""
        try:
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get("message"), str):
                message = body["message"]
        except ValueError:
            pass

        if connection_id and (
            (not_found_is_connection and response.status_code == 404)
            or is_connection_not_found(message, connection_id)
        ):
            raise ConnectionNotFoundError(connection_id)

        logger.error(f"Integration App returned {response.status_code}: {message[:500] or 'No body'}")
        raise RemoteProviderError(
            f"Integration App HTTP {response.status_code}: {message}",
            status_code=response.status_code,
        )

    async def run_action(
        self,
        connection_id: str,
        action_key: str,
        payload: Dict[str, Any],
        not_found_is_connection: bool = False,
    ) -> Dict[str, Any]:
        """
        Run an action on a connection.

        Set ``not_found_is_connection`` for actions whose 404 can only mean
        the connection is missing.

        Returns:
            The ``output`` object of the action run

        Raises:
            ConnectionNotFoundError: The connection no longer exists
            RemoteProviderError: Any other failure (transient)
        """
        url = f"/connections/{connection_id}/actions/{action_key}/run"
        try:
            response = await self._client.post(url, json=payload, headers=self._headers())
        except httpx.RequestError as e:
            raise RemoteProviderError(f"Integration App request failed: {e}") from e

        self._raise_for_response(response, connection_id, not_found_is_connection)
        data = response.json() or {}
        return data.get("output") or {}

    async def list_page(self, connection_id: str, cursor: Optional[str] = None) -> ListPage:
        """Fetch one page of document records; ``cursor`` is None for the first page."""
        payload: Dict[str, Any] = {}
        if cursor:
            payload["cursor"] = cursor
        output = await self.run_action(
            connection_id, settings.integration_list_action, payload, not_found_is_connection=True
        )

        records = []
        for record in output.get("records") or []:
            fields = record.get("fields") if isinstance(record, dict) else None
            if isinstance(fields, dict) and fields.get("id"):
                records.append(fields)
            else:
                logger.warning(f"Skipping malformed record from connection {connection_id}")

        return ListPage(records=records, cursor=output.get("cursor") or None)

    async def resolve_download(self, connection_id: str, document_id: str) -> Optional[str]:
        """Ask the provider for a download URL of ``document_id``."""
        output = await self.run_action(
            connection_id,
            settings.integration_download_action,
            {"documentId": document_id},
        )
        for key in ("downloadURI", "downloadUri", "downloadUrl", "url"):
            if output.get(key):
                return output[key]
        return None

    async def fetch(self, url: str, timeout: Optional[float] = None) -> Tuple[bytes, str]:
        """
        Download the bytes behind ``url``.

        Returns:
            Tuple of (content, content type)
        """
        try:
            response = await self._client.get(url, timeout=timeout or self.timeout)
        except httpx.RequestError as e:
            raise RemoteProviderError(f"Download failed: {e}") from e

        if response.status_code >= 400:
            raise RemoteProviderError(
                f"Download HTTP {response.status_code}", status_code=response.status_code
            )
        content_type = response.headers.get("content-type", "application/octet-stream")
        return response.content, content_type

    async def get_flow_key(self, flow_id: str) -> Optional[str]:
        try:
            response = await self._client.get(f"/flows/{flow_id}", headers=self._headers())
        except httpx.RequestError as e:
            raise RemoteProviderError(f"Integration App request failed: {e}") from e
        self._raise_for_response(response, None)
        return (response.json() or {}).get("key")
