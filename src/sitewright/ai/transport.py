"""Transports for the upstream model service.

``HttpAssistantTransport`` talks to the builder backend's assistant
endpoint; ``OpenAIAssistantTransport`` plays the backend's role directly
against an OpenAI-compatible API. Both normalise failures into the error
taxonomy: transient failures become ``TransientUpstreamError`` (retried by
the orchestrator), usage caps become ``QuotaExceeded`` (never retried).
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Dict, List, Protocol

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError

from .errors import MalformedResponse, QuotaExceeded, TransientUpstreamError, UpstreamError
from .models import AssistantRequest, AssistantResponse

LOGGER = logging.getLogger(__name__)

QUOTA_ERROR_CODES = frozenset({"AI_QUOTA_EXCEEDED", "QUOTA_EXCEEDED", "RATE_LIMITED"})
ASSISTANT_PATH = "/api/ai/assistant"

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*(?P<body>.*)```$", re.IGNORECASE | re.DOTALL)


class AssistantTransport(Protocol):
    """Sends one request to the upstream model service."""

    async def send(self, request: AssistantRequest) -> AssistantResponse:
        ...

    async def aclose(self) -> None:
        ...


def is_quota_code(error_code: str | None) -> bool:
    return bool(error_code) and str(error_code).upper() in QUOTA_ERROR_CODES


def check_response(response: AssistantResponse) -> AssistantResponse:
    """Raise the matching error for an unsuccessful response."""

    if is_quota_code(response.error_code):
        raise QuotaExceeded(
            detail=response.error or f"Upstream returned {response.error_code}",
            error_code=response.error_code,
        )
    if not response.success:
        raise UpstreamError(
            detail=response.error or "Upstream reported failure",
            context={"error_code": response.error_code} if response.error_code else {},
        )
    if response.suggestion is None:
        raise MalformedResponse(detail="Successful response carried no suggestion")
    return response


def strip_code_fence(text: str) -> str:
    stripped = text.strip()
    match = _CODE_FENCE_RE.match(stripped)
    if match:
        return match.group("body").strip()
    return stripped


class HttpAssistantTransport:
    """Assistant transport over the builder backend (httpx)."""

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str | None = None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
        path: str = ASSISTANT_PATH,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}{path}"
        self._auth_token = auth_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def url(self) -> str:
        return self._url

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def send(self, request: AssistantRequest) -> AssistantResponse:
        payload = request.to_payload()
        LOGGER.debug("POST %s (user_prompt=%s, conversation=%s)", self._url, request.is_user_prompt, request.conversation_id)
        try:
            reply = await self._client.post(self._url, json=payload, headers=self._headers())
        except httpx.TransportError as exc:
            raise TransientUpstreamError(detail=f"{type(exc).__name__}: {exc}") from exc

        status = reply.status_code
        if status >= 500:
            raise TransientUpstreamError(detail=f"Upstream returned HTTP {status}", context={"status": status})
        try:
            data = reply.json()
        except ValueError as exc:
            if status == 429:
                raise QuotaExceeded(detail="Upstream returned HTTP 429", error_code="RATE_LIMITED") from exc
            if status >= 400:
                raise UpstreamError(detail=f"Upstream returned HTTP {status}", context={"status": status}) from exc
            raise MalformedResponse(detail="Upstream response was not JSON") from exc

        response = AssistantResponse.from_payload(data)
        if status == 429:
            raise QuotaExceeded(
                detail=response.error or "Upstream returned HTTP 429",
                error_code=response.error_code or "RATE_LIMITED",
            )
        if status >= 400 and response.success:
            response.success = False
        return check_response(response)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class OpenAIAssistantTransport:
    """Assistant transport calling an OpenAI-compatible chat endpoint directly.

    Keeps a short per-conversation message history in memory so follow-up
    requests that echo a conversation id are multi-turn.
    """

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        organization: str | None = None,
        timeout: float = 60.0,
        temperature: float = 0.2,
        history_limit: int = 10,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.history_limit = max(0, history_limit)
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            organization=organization,
            timeout=timeout,
        )
        self._histories: Dict[str, List[Dict[str, str]]] = {}

    async def send(self, request: AssistantRequest) -> AssistantResponse:
        conversation_id = request.conversation_id or f"conv-{uuid.uuid4().hex[:12]}"
        history = self._histories.get(conversation_id, [])
        user_message = {"role": "user", "content": request.prompt}
        messages: List[Dict[str, Any]] = [*history, user_message]

        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,  # type: ignore[arg-type]
                response_format={"type": "json_object"},
                temperature=self.temperature,
            )
        except RateLimitError as exc:
            raise QuotaExceeded(detail=str(exc), error_code="RATE_LIMITED") from exc
        except APIConnectionError as exc:
            raise TransientUpstreamError(detail=f"{type(exc).__name__}: {exc}") from exc
        except APIStatusError as exc:
            if exc.status_code >= 500:
                raise TransientUpstreamError(detail=str(exc), context={"status": exc.status_code}) from exc
            raise UpstreamError(detail=str(exc), context={"status": exc.status_code}) from exc

        if not completion.choices:
            raise MalformedResponse(detail="Completion returned no choices")
        content = completion.choices[0].message.content or ""
        body = strip_code_fence(content)
        try:
            suggestion = json.loads(body)
        except json.JSONDecodeError as exc:
            raise MalformedResponse(detail=f"Model reply was not JSON: {exc}") from exc
        if not isinstance(suggestion, dict):
            raise MalformedResponse(detail="Model reply was not a JSON object")

        usage = getattr(completion, "usage", None)
        token_count = int(getattr(usage, "total_tokens", 0) or 0)
        self._remember(conversation_id, user_message, {"role": "assistant", "content": body})
        return check_response(
            AssistantResponse(
                success=True,
                suggestion=suggestion,
                conversation_id=conversation_id,
                token_count=token_count,
            )
        )

    def _remember(self, conversation_id: str, *messages: Dict[str, str]) -> None:
        if self.history_limit == 0:
            return
        history = [*self._histories.get(conversation_id, []), *messages]
        self._histories[conversation_id] = history[-self.history_limit :]

    async def aclose(self) -> None:
        await self._client.close()


__all__ = [
    "ASSISTANT_PATH",
    "AssistantTransport",
    "HttpAssistantTransport",
    "OpenAIAssistantTransport",
    "QUOTA_ERROR_CODES",
    "check_response",
    "is_quota_code",
    "strip_code_fence",
]
