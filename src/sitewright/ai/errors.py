"""Error taxonomy for the AI mutation pipeline.

Every failure raised by the pipeline carries two messages: ``user_message``
is the simplified, non-technical text shown in the builder, while
``detail`` keeps the technical explanation for logs and telemetry only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from .mutation.executor import ExecutionOutcome


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Machine-readable identifiers attached to every pipeline error."""

    UNSAFE_INSTRUCTION = "unsafe_instruction"
    NO_EFFECT = "no_effect"
    EXECUTION_FAILED = "execution_failed"
    FALLBACK_EXHAUSTED = "fallback_exhausted"
    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSIENT = "transient"
    CANCELLED = "cancelled"
    MALFORMED_RESPONSE = "malformed_response"
    UPSTREAM_ERROR = "upstream_error"
    SAVE_FAILED = "save_failed"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------


@dataclass
class AssistantError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        code: Machine-readable error identifier.
        user_message: Simplified text safe to show to the user.
        detail: Technical explanation, logged but never shown.
        context: Additional structured diagnostics.
    """

    code: str = ErrorCode.UPSTREAM_ERROR
    user_message: str = "Something went wrong while talking to the AI assistant."
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    # Whether the orchestrator should surface the error to the user
    surfaced: ClassVar[bool] = True

    def __post_init__(self) -> None:
        Exception.__init__(self, self.user_message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for telemetry payloads."""
        result: dict[str, Any] = {"error": self.code, "message": self.user_message}
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = dict(self.context)
        return result

    def __str__(self) -> str:
        return f"[{self.code}] {self.user_message}"


# -----------------------------------------------------------------------------
# Mutation Errors
# -----------------------------------------------------------------------------


@dataclass
class UnsafeInstruction(AssistantError):
    """Model-supplied operations contained a denylisted primitive or left the grammar."""

    code: str = field(default=ErrorCode.UNSAFE_INSTRUCTION)
    user_message: str = field(
        default="That change was blocked because it contained unsupported instructions."
    )
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    pattern: str | None = field(default=None)


@dataclass
class NoEffect(AssistantError):
    """Operations ran without throwing but verification found no change."""

    code: str = field(default=ErrorCode.NO_EFFECT)
    user_message: str = field(default="No changes were made. I couldn't make that change.")
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    outcome: "ExecutionOutcome | None" = field(default=None)


@dataclass
class MutationExecutionError(AssistantError):
    """The document accessor raised while operations were being applied."""

    code: str = field(default=ErrorCode.EXECUTION_FAILED)
    user_message: str = field(default="No changes were made. I couldn't make that change.")
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class FallbackExhausted(AssistantError):
    """Fallback textual mutator found no applicable pattern."""

    code: str = field(default=ErrorCode.FALLBACK_EXHAUSTED)
    user_message: str = field(default="I couldn't complete that request.")
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Upstream Errors
# -----------------------------------------------------------------------------


@dataclass
class QuotaExceeded(AssistantError):
    """Upstream signalled a usage cap; never retried."""

    code: str = field(default=ErrorCode.QUOTA_EXCEEDED)
    user_message: str = field(
        default="You've reached your AI usage limit. Check your plan or try again later."
    )
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    error_code: str | None = field(default=None)


@dataclass
class TransientUpstreamError(AssistantError):
    """Network or connection failure; retried with backoff up to a ceiling."""

    code: str = field(default=ErrorCode.TRANSIENT)
    user_message: str = field(
        default="The AI service is temporarily unavailable. Please try again."
    )
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    retries: int = field(default=0)


@dataclass
class UpstreamError(AssistantError):
    """Upstream answered but reported a non-retryable failure."""

    code: str = field(default=ErrorCode.UPSTREAM_ERROR)
    user_message: str = field(default="Failed to process your request.")
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class MalformedResponse(AssistantError):
    """Upstream suggestion did not match the expected shape."""

    code: str = field(default=ErrorCode.MALFORMED_RESPONSE)
    user_message: str = field(default="The AI assistant returned a response I couldn't use.")
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class RequestCancelled(AssistantError):
    """Request was superseded or cancelled by the user; never surfaced."""

    code: str = field(default=ErrorCode.CANCELLED)
    user_message: str = field(default="Request cancelled")
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    surfaced: ClassVar[bool] = False


# -----------------------------------------------------------------------------
# Persistence Errors
# -----------------------------------------------------------------------------


@dataclass
class SaveError(AssistantError):
    """Persisting the document failed after a successful mutation."""

    code: str = field(default=ErrorCode.SAVE_FAILED)
    user_message: str = field(
        default="Changes applied but save failed. Please save manually."
    )
    detail: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    status_code: int | None = field(default=None)
    transient: bool = field(default=False)
    attempts: int = field(default=1)


__all__ = [
    "AssistantError",
    "ErrorCode",
    "FallbackExhausted",
    "MalformedResponse",
    "MutationExecutionError",
    "NoEffect",
    "QuotaExceeded",
    "RequestCancelled",
    "SaveError",
    "TransientUpstreamError",
    "UnsafeInstruction",
    "UpstreamError",
]
