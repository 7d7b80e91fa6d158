"""Durable saving of the edited document.

The coordinator forces the document accessor to settle, compares the
flushed content against what was last persisted, and saves through a
``PersistenceEndpoint`` with retry on transient failures only.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..ai.errors import SaveError
from ..editor.accessor import DocumentAccessor
from ..editor.snapshot import DocumentSnapshot
from . import telemetry as telemetry_service

LOGGER = logging.getLogger(__name__)

WEBSITES_PATH = "/api/websites"

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class PersistencePolicy:
    """Flush and retry parameters for saves."""

    flush_cycles: int = 3
    flush_pause: float = 0.05
    max_retries: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 4.0


@dataclass(slots=True)
class SaveAttempt:
    """Content being persisted and the retries left for it."""

    html: str
    css: str
    retries_remaining: int


@dataclass(frozen=True, slots=True)
class SaveOutcome:
    """Result of a successful save; ``skipped`` means nothing needed persisting."""

    snapshot: DocumentSnapshot
    skipped: bool = False
    attempts: int = 0


class PersistenceEndpoint(Protocol):
    """Accepts markup/stylesheet keyed by document identity."""

    async def save(self, document_id: str, markup: str, stylesheet: str) -> None:
        ...


class HttpPersistenceEndpoint:
    """Website persistence over the builder backend (httpx)."""

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base = f"{base_url.rstrip('/')}{WEBSITES_PATH}"
        self._auth_token = auth_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def save(self, document_id: str, markup: str, stylesheet: str) -> None:
        url = f"{self._base}/{document_id}"
        try:
            reply = await self._client.put(
                url,
                json={"markup": markup, "stylesheet": stylesheet},
                headers=self._headers(),
            )
        except httpx.TransportError as exc:
            raise SaveError(detail=f"{type(exc).__name__}: {exc}", transient=True) from exc

        status = reply.status_code
        message = _reply_message(reply)
        if status >= 500:
            raise SaveError(detail=f"HTTP {status}: {message}", status_code=status, transient=True)
        if status in (401, 403):
            raise SaveError(detail=f"Not authorized to save ({status}): {message}", status_code=status)
        if status >= 400:
            raise SaveError(detail=f"Save rejected ({status}): {message}", status_code=status)
        if _reply_success(reply) is False:
            raise SaveError(detail=f"Save reported failure: {message}", status_code=status)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _reply_payload(reply: httpx.Response) -> dict[str, Any]:
    try:
        data = reply.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _reply_message(reply: httpx.Response) -> str:
    data = _reply_payload(reply)
    return str(data.get("message") or data.get("error") or reply.reason_phrase or "")


def _reply_success(reply: httpx.Response) -> bool | None:
    data = _reply_payload(reply)
    if "success" not in data:
        return None
    return bool(data["success"])


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, SaveError) and exc.transient


class PersistenceCoordinator:
    """Flushes, de-duplicates and saves document content."""

    def __init__(
        self,
        endpoint: PersistenceEndpoint,
        policy: PersistencePolicy | None = None,
        *,
        sleep: SleepFn | None = None,
    ) -> None:
        self._endpoint = endpoint
        self.policy = policy or PersistencePolicy()
        self._sleep = sleep or asyncio.sleep
        self._last_saved: DocumentSnapshot | None = None
        self._stash: DocumentSnapshot | None = None

    # ------------------------------------------------------------------
    # Pending AI-authored content
    # ------------------------------------------------------------------
    @property
    def pending(self) -> DocumentSnapshot | None:
        return self._stash

    def stash(self, markup: str, stylesheet: str) -> None:
        """Remember AI-authored content to persist in place of the live read."""

        self._stash = DocumentSnapshot(markup=markup, stylesheet=stylesheet)

    def clear_stash(self) -> None:
        self._stash = None

    @property
    def last_saved(self) -> DocumentSnapshot | None:
        return self._last_saved

    def mark_persisted(self, snapshot: DocumentSnapshot | None) -> None:
        """Record *snapshot* as the content already stored for the document."""

        self._last_saved = snapshot
        self._stash = None

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------
    async def flush(self, document: DocumentAccessor) -> DocumentSnapshot:
        """Run the forced flush cycles and return the settled content."""

        cycles = max(1, self.policy.flush_cycles)
        for cycle in range(cycles):
            document.flush()
            if cycle < cycles - 1 and self.policy.flush_pause > 0:
                await self._sleep(self.policy.flush_pause)
        return DocumentSnapshot.capture(document)

    async def save(self, document: DocumentAccessor, destination: str) -> SaveOutcome:
        """Persist *document* under *destination*.

        Raises:
            SaveError: the endpoint failed permanently or retries ran out.
        """

        live = await self.flush(document)
        stashed, self._stash = self._stash, None
        content = stashed or live
        if stashed is not None and not stashed.same_content(live):
            LOGGER.info("Saving stashed AI content; live document differs (%s vs %s chars)", len(stashed.markup), len(live.markup))

        previous = self._last_saved
        if content.same_content(previous):
            LOGGER.debug("Content for %s unchanged since last save; skipping", destination)
            telemetry_service.emit("persistence.unchanged", {"document_id": destination})
            return SaveOutcome(snapshot=content, skipped=True)
        if previous is not None:
            LOGGER.debug(
                "Saving %s: markup %s -> %s chars, stylesheet %s -> %s chars",
                destination,
                len(previous.markup),
                len(content.markup),
                len(previous.stylesheet),
                len(content.stylesheet),
            )

        attempt = SaveAttempt(html=content.markup, css=content.stylesheet, retries_remaining=max(0, self.policy.max_retries))
        attempts = await self._persist(destination, attempt)

        self._last_saved = DocumentSnapshot(content.markup, content.stylesheet, live.node_count)
        telemetry_service.emit("persistence.saved", {"document_id": destination, "attempts": attempts})
        return SaveOutcome(snapshot=self._last_saved, skipped=False, attempts=attempts)

    async def _persist(self, destination: str, attempt: SaveAttempt) -> int:
        attempts = 0
        retrying = AsyncRetrying(
            reraise=True,
            sleep=self._sleep,
            stop=stop_after_attempt(attempt.retries_remaining + 1),
            wait=wait_exponential(multiplier=self.policy.retry_base_delay, max=self.policy.retry_max_delay),
            retry=retry_if_exception(_is_transient),
        )
        try:
            async for retry_attempt in retrying:
                with retry_attempt:
                    attempts = retry_attempt.retry_state.attempt_number
                    if attempts > 1:
                        attempt.retries_remaining -= 1
                        LOGGER.info("Retrying save of %s (%s left)", destination, attempt.retries_remaining)
                    await self._endpoint.save(destination, attempt.html, attempt.css)
        except SaveError as exc:
            exc.attempts = attempts
            LOGGER.warning("Saving %s failed after %s attempt(s): %s", destination, attempts, exc.detail)
            raise
        return attempts


__all__ = [
    "HttpPersistenceEndpoint",
    "PersistenceCoordinator",
    "PersistenceEndpoint",
    "PersistencePolicy",
    "SaveAttempt",
    "SaveOutcome",
    "WEBSITES_PATH",
]
