"""HTTP client for the chat session resource API."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import ServerConfig
from ..models import MessagePage, SessionDetail
from .credentials import CredentialError, Credentials
from .transport import create_http_client

logger = logging.getLogger(__name__)


class SessionClientError(Exception):
    """Raised when session metadata or history cannot be fetched."""


class SessionClient:
    def __init__(
        self,
        config: ServerConfig,
        credentials: Credentials | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self._credentials = credentials or Credentials()
        self._owns_client = client is None
        self._client = client or create_http_client(config)

    async def _get_json(self, url: str) -> Any:
        try:
            response = await self._client.get(url, headers={"Accept": "application/json", **self._credentials.headers()})
        except CredentialError as e:
            raise SessionClientError(str(e)) from e
        except httpx.HTTPError as e:
            raise SessionClientError(f"Cannot reach {url}: {type(e).__name__}") from e
        if not response.is_success:
            raise SessionClientError(f"GET {url} failed with HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise SessionClientError(f"GET {url} returned invalid JSON") from e

    async def get_session(self, session_id: str) -> SessionDetail:
        data = await self._get_json(self.config.session_url(session_id))
        try:
            return SessionDetail.model_validate(data)
        except ValidationError as e:
            raise SessionClientError(f"Unexpected session payload for {session_id}") from e

    async def get_session_messages(self, session_id: str) -> MessagePage:
        """Fetch stored messages. Follows ``next`` links until the history is complete."""
        url: str | None = self.config.session_messages_url(session_id)
        page: MessagePage | None = None
        seen: set[str] = set()
        while url and url not in seen:
            seen.add(url)
            data = await self._get_json(url)
            try:
                current = MessagePage.model_validate(data)
            except ValidationError as e:
                raise SessionClientError(f"Unexpected message payload for {session_id}") from e
            if page is None:
                page = current
            else:
                page.results.extend(current.results)
            url = current.next
        logger.debug("Loaded %d stored messages for %s", len(page.results) if page else 0, session_id)
        return page or MessagePage()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
