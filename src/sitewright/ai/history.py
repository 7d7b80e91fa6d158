"""Read-only client for the assistant chat/audit history endpoint."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Dict, Mapping

import httpx

from .errors import TransientUpstreamError, UpstreamError
from .models import Conversation, HistoryPage

LOGGER = logging.getLogger(__name__)

HISTORY_PATH = "/api/ai/assistant/history"


class ChatHistoryClient:
    """Fetches paginated conversation records keyed by document identity."""

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base = f"{base_url.rstrip('/')}{HISTORY_PATH}"
        self._auth_token = auth_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        if not self._auth_token:
            return {}
        return {"Authorization": f"Bearer {self._auth_token}"}

    async def fetch_page(self, document_id: str, page: int = 1, page_size: int = 20) -> HistoryPage:
        """Return one page of conversations, newest first."""

        url = f"{self._base}/{document_id}"
        params = {"page": max(1, page), "limit": max(1, page_size)}
        try:
            reply = await self._client.get(url, params=params, headers=self._headers())
        except httpx.TransportError as exc:
            raise TransientUpstreamError(detail=f"History request failed: {exc}") from exc
        if reply.status_code >= 500:
            raise TransientUpstreamError(detail=f"History endpoint returned HTTP {reply.status_code}")
        if reply.status_code >= 400:
            raise UpstreamError(
                user_message="Couldn't load the assistant history.",
                detail=f"History endpoint returned HTTP {reply.status_code}",
            )
        return self._parse_page(reply.json(), page, page_size)

    async def iter_conversations(self, document_id: str, page_size: int = 20) -> AsyncIterator[Conversation]:
        """Yield every conversation for *document_id*, walking pages until exhausted."""

        page = 1
        while True:
            result = await self.fetch_page(document_id, page=page, page_size=page_size)
            for conversation in result.conversations:
                yield conversation
            if not result.has_more or not result.conversations:
                return
            page += 1

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _parse_page(payload: object, page: int, page_size: int) -> HistoryPage:
        if not isinstance(payload, Mapping):
            LOGGER.debug("Unexpected history payload type %s", type(payload).__name__)
            return HistoryPage(conversations=[], page=page, has_more=False)
        data = payload.get("data", payload)
        items = data.get("conversations") if isinstance(data, Mapping) else data
        conversations = [Conversation.from_payload(item) for item in items or () if isinstance(item, Mapping)]
        conversations.sort(key=lambda conv: conv.last_message_at, reverse=True)
        pagination = payload.get("pagination") if isinstance(payload.get("pagination"), Mapping) else {}
        if "hasMore" in pagination:
            has_more = bool(pagination["hasMore"])
        else:
            has_more = len(conversations) >= page_size
        return HistoryPage(conversations=conversations, page=page, has_more=has_more)


__all__ = ["ChatHistoryClient", "HISTORY_PATH"]
