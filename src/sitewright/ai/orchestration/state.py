"""Session state models for the request orchestrator.

``ConversationState`` is an immutable value: every transition returns a
new instance, and the orchestrator holds the only reference to the
current one.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, replace
from enum import Enum

from ..errors import RequestCancelled


class RequestPhase(Enum):
    """Lifecycle phase of the current request.

    Values:
        IDLE: Nothing outstanding.
        AWAITING_RESPONSE: Upstream call in flight (including retries).
        APPLYING: Executor, fallback and persistence running.
        FAILED: Last attempt failed; returns to IDLE on the next action.
        CANCELLED: Last attempt was cancelled; returns to IDLE likewise.
    """

    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    APPLYING = "applying"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ConversationState:
    """Per-document session state.

    Attributes:
        conversation_id: Identity echoed by the upstream service.
        last_snapshot_fingerprint: Fingerprint at the last suggestion.
        pending_edit_count: Edit events since the last suggestion.
        auto_suggest_armed: Cleared by the first explicit user action.
        phase: Current request phase.
        suggestion_displayed: A suggestion is waiting for the user.
        document_id: Document this state belongs to.
    """

    conversation_id: str | None = None
    last_snapshot_fingerprint: str = ""
    pending_edit_count: int = 0
    auto_suggest_armed: bool = True
    phase: RequestPhase = RequestPhase.IDLE
    suggestion_displayed: bool = False
    document_id: str | None = None

    @classmethod
    def for_document(cls, document_id: str | None, fingerprint: str = "") -> "ConversationState":
        return cls(document_id=document_id, last_snapshot_fingerprint=fingerprint)

    @property
    def awaiting(self) -> bool:
        return self.phase in (RequestPhase.AWAITING_RESPONSE, RequestPhase.APPLYING)

    def with_edit(self) -> "ConversationState":
        return replace(self, pending_edit_count=self.pending_edit_count + 1)

    def with_phase(self, phase: RequestPhase) -> "ConversationState":
        return replace(self, phase=phase)

    def with_conversation(self, conversation_id: str | None) -> "ConversationState":
        if not conversation_id or conversation_id == self.conversation_id:
            return self
        return replace(self, conversation_id=conversation_id)

    def disarmed(self) -> "ConversationState":
        if not self.auto_suggest_armed:
            return self
        return replace(self, auto_suggest_armed=False)

    def suggestion_started(self, fingerprint: str) -> "ConversationState":
        return replace(self, pending_edit_count=0, last_snapshot_fingerprint=fingerprint)

    def with_suggestion(self, displayed: bool) -> "ConversationState":
        return replace(self, suggestion_displayed=displayed)

    def auto_suggest_eligible(self, threshold: int, fingerprint: str) -> bool:
        """Whether the debounced auto-suggest check may send a request."""

        return (
            self.auto_suggest_armed
            and self.pending_edit_count >= threshold
            and not self.suggestion_displayed
            and not self.awaiting
            and fingerprint != self.last_snapshot_fingerprint
        )


_TOKEN_IDS = itertools.count(1)


class CancellationToken:
    """Cooperative cancellation flag created per request."""

    __slots__ = ("id", "label", "_cancelled", "_reason")

    def __init__(self, label: str = "") -> None:
        self.id = next(_TOKEN_IDS)
        self.label = label
        self._cancelled = False
        self._reason = ""

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"CancellationToken(id={self.id}, label={self.label!r}, {state})"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "superseded") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RequestCancelled(detail=f"Request {self.id} ({self.label}) cancelled: {self._reason}")


@dataclass(slots=True)
class TechnicalMetrics:
    """Running counters exposed to diagnostics panels."""

    token_count: int = 0
    retry_count: int = 0
    error_count: int = 0

    def record_tokens(self, count: int | None) -> None:
        if count:
            self.token_count += max(0, int(count))


__all__ = [
    "CancellationToken",
    "ConversationState",
    "RequestPhase",
    "TechnicalMetrics",
]
