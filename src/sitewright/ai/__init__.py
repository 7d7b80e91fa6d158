"""Assistant request pipeline: prompt context, mutation and orchestration."""

from .context_builder import ContextBuilder
from .errors import AssistantError, ErrorCode
from .models import DocumentReplacement, ImperativeEdit, MutationRequest, RequestKind
from .tokens import ApproxByteCounter, TokenCounterRegistry

__all__ = [
    "ApproxByteCounter",
    "AssistantError",
    "ContextBuilder",
    "DocumentReplacement",
    "ErrorCode",
    "ImperativeEdit",
    "MutationRequest",
    "RequestKind",
    "TokenCounterRegistry",
]
