"""Request, result and wire-contract models for the mutation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Sequence, Union

from jsonschema import Draft7Validator

from ..editor.accessor import DocumentNode
from .errors import MalformedResponse


class RequestKind(str, Enum):
    """What triggered a request to the upstream model."""

    USER_PROMPT = "user_prompt"
    SUGGEST = "suggest"
    AUTO_SUGGEST = "auto_suggest"
    RETRY = "retry"


@dataclass(frozen=True, slots=True)
class MutationRequest:
    """A single user action or auto-suggestion trigger; immutable once sent.

    ``instruction_text`` of ``None`` means "suggest something".
    """

    instruction_text: str | None
    selection_scope: DocumentNode | None = None
    device_context: str = "Desktop"
    prior_conversation_id: str | None = None
    kind: RequestKind = RequestKind.USER_PROMPT
    document_id: str | None = None

    @property
    def is_user_prompt(self) -> bool:
        return self.kind in (RequestKind.USER_PROMPT, RequestKind.RETRY)


@dataclass(frozen=True, slots=True)
class ImperativeEdit:
    """Model response expressed as operations against the capability surface."""

    explanation: str
    operations: Sequence[Mapping[str, Any]] | str


@dataclass(frozen=True, slots=True)
class DocumentReplacement:
    """Model response expressed as a complete markup/stylesheet pair."""

    explanation: str
    new_markup: str
    new_stylesheet: str | None = None


MutationResult = Union[ImperativeEdit, DocumentReplacement]


_SUGGESTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["explanation"],
    "properties": {
        "explanation": {"type": "string", "minLength": 1},
        "operations": {"type": ["array", "string"], "items": {"type": "object"}},
        "code": {"type": "string"},
        "newMarkup": {"type": "string"},
        "newStylesheet": {"type": ["string", "null"]},
    },
}
_SUGGESTION_VALIDATOR = Draft7Validator(_SUGGESTION_SCHEMA)


def parse_suggestion(payload: Any) -> MutationResult:
    """Validate an upstream ``suggestion`` object and build its variant.

    Raises:
        MalformedResponse: if the payload does not match the schema or does
            not populate exactly one variant.
    """

    if not isinstance(payload, Mapping):
        raise MalformedResponse(detail=f"Suggestion must be an object, got {type(payload).__name__}")
    errors = sorted(_SUGGESTION_VALIDATOR.iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        location = "/".join(str(part) for part in first.path) or "suggestion"
        raise MalformedResponse(detail=f"{location}: {first.message}")

    explanation = " ".join(str(payload["explanation"]).split())
    new_markup = payload.get("newMarkup")
    operations = payload.get("operations")
    if operations is None:
        operations = payload.get("code")
    if isinstance(operations, str) and not operations.strip():
        operations = None
    if isinstance(operations, list) and not operations:
        operations = None

    if new_markup is not None and operations is not None:
        raise MalformedResponse(detail="Suggestion populated both newMarkup and operations")
    if new_markup is not None:
        return DocumentReplacement(
            explanation=explanation,
            new_markup=new_markup,
            new_stylesheet=payload.get("newStylesheet"),
        )
    if operations is not None:
        ops = operations if isinstance(operations, str) else tuple(dict(item) for item in operations)
        return ImperativeEdit(explanation=explanation, operations=ops)
    raise MalformedResponse(detail="Suggestion populated neither newMarkup nor operations")


@dataclass(slots=True)
class AssistantRequest:
    """Wire payload sent to the upstream model service."""

    prompt: str
    is_user_prompt: bool
    document_id: str | None = None
    user_input: str | None = None
    conversation_id: str | None = None
    markup: str | None = None
    stylesheet: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": self.prompt,
            "isUserPrompt": self.is_user_prompt,
            "documentId": self.document_id,
        }
        if self.user_input:
            payload["userInput"] = self.user_input
        if self.conversation_id:
            payload["conversationId"] = self.conversation_id
        if self.markup is not None:
            payload["markup"] = self.markup
        if self.stylesheet is not None:
            payload["stylesheet"] = self.stylesheet
        return payload


@dataclass(slots=True)
class AssistantResponse:
    """Wire payload returned by the upstream model service."""

    success: bool
    suggestion: Mapping[str, Any] | None = None
    conversation_id: str | None = None
    token_count: int = 0
    error_code: str | None = None
    error: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AssistantResponse":
        if not isinstance(payload, Mapping):
            raise MalformedResponse(detail=f"Response must be an object, got {type(payload).__name__}")
        suggestion = payload.get("suggestion")
        token_count = payload.get("tokenCount") or 0
        try:
            token_count = int(token_count)
        except (TypeError, ValueError):
            token_count = 0
        return cls(
            success=bool(payload.get("success")),
            suggestion=suggestion if isinstance(suggestion, Mapping) else None,
            conversation_id=payload.get("conversationId") or None,
            token_count=token_count,
            error_code=payload.get("errorCode") or None,
            error=payload.get("error") or None,
        )


@dataclass(slots=True)
class ChatMessage:
    """One stored message of an assistant conversation."""

    id: int
    message_type: str
    prompt_text: str
    response_html: str | None = None
    execution_status: str = "pending"
    created_at: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChatMessage":
        return cls(
            id=int(payload.get("id") or 0),
            message_type=str(payload.get("messageType") or "user"),
            prompt_text=str(payload.get("promptText") or ""),
            response_html=payload.get("responseHtml"),
            execution_status=str(payload.get("executionStatus") or "pending"),
            created_at=str(payload.get("createdAt") or ""),
        )


@dataclass(slots=True)
class Conversation:
    """Conversation record keyed by document identity."""

    conversation_id: str
    messages: list[ChatMessage] = field(default_factory=list)
    last_message_at: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Conversation":
        messages = [ChatMessage.from_payload(item) for item in payload.get("messages") or () if isinstance(item, Mapping)]
        return cls(
            conversation_id=str(payload.get("conversationId") or ""),
            messages=messages,
            last_message_at=str(payload.get("lastMessageAt") or ""),
        )


@dataclass(slots=True)
class HistoryPage:
    """A page of conversations returned by the history endpoint."""

    conversations: list[Conversation]
    page: int = 1
    has_more: bool = False


__all__ = [
    "AssistantRequest",
    "AssistantResponse",
    "ChatMessage",
    "Conversation",
    "DocumentReplacement",
    "HistoryPage",
    "ImperativeEdit",
    "MutationRequest",
    "MutationResult",
    "RequestKind",
    "parse_suggestion",
]
