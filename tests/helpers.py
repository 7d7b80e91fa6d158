"""Shared test helpers and stub classes.

Fakes for the upstream transport, the persistence endpoint and sleep, used
across the orchestrator, persistence and retry tests.
"""

from __future__ import annotations

import asyncio
from typing import Any

from sitewright.ai.errors import AssistantError
from sitewright.ai.models import AssistantRequest, AssistantResponse

SAMPLE_MARKUP = (
    '<header><h1 data-slot="title">Your Business Name</h1>'
    '<p class="tagline">Fresh produce daily</p></header>'
    '<main><h2 id="about">About us</h2><p>We grow vegetables.</p>'
    '<img src="farm.jpg"></main>'
)
SAMPLE_STYLESHEET = "h1 { color: #222; }"


def suggestion_response(
    suggestion: dict[str, Any] | None = None,
    *,
    conversation_id: str | None = "conv-1",
    token_count: int = 42,
) -> AssistantResponse:
    return AssistantResponse(
        success=True,
        suggestion=suggestion or {"explanation": "I changed the title to 'Acme Farms'", "newMarkup": "<h1>Acme Farms</h1>"},
        conversation_id=conversation_id,
        token_count=token_count,
    )


class FakeTransport:
    """Scripted transport: each send pops the next reply (response, error or callable)."""

    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies)
        self.requests: list[AssistantRequest] = []
        self.closed = False

    async def send(self, request: AssistantRequest) -> AssistantResponse:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError("FakeTransport ran out of scripted replies")
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if callable(reply):
            reply = reply(request)
            if asyncio.iscoroutine(reply):
                reply = await reply
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def aclose(self) -> None:
        self.closed = True


class GatedTransport:
    """Transport whose replies wait for the test to release them."""

    def __init__(self) -> None:
        self.requests: list[AssistantRequest] = []
        self.gates: list[asyncio.Event] = []
        self.replies: list[AssistantResponse | AssistantError] = []
        self.sent = asyncio.Event()

    def queue(self, reply: AssistantResponse | AssistantError) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates.append(gate)
        self.replies.append(reply)
        return gate

    async def send(self, request: AssistantRequest) -> AssistantResponse:
        index = len(self.requests)
        self.requests.append(request)
        self.sent.set()
        await self.gates[index].wait()
        reply = self.replies[index]
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def aclose(self) -> None:
        return None


class FakeEndpoint:
    """Persistence endpoint recording saves; optional scripted failures."""

    def __init__(self, *failures: BaseException) -> None:
        self.failures = list(failures)
        self.saves: list[tuple[str, str, str]] = []

    async def save(self, document_id: str, markup: str, stylesheet: str) -> None:
        self.saves.append((document_id, markup, stylesheet))
        if self.failures:
            raise self.failures.pop(0)


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


