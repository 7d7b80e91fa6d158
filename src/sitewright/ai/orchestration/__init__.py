"""Request lifecycle: state, retry and the orchestrator."""

from .orchestrator import AppliedChange, RequestOrchestrator
from .retry import RetryPolicy, call_with_retry
from .state import CancellationToken, ConversationState, RequestPhase, TechnicalMetrics

__all__ = [
    "AppliedChange",
    "CancellationToken",
    "ConversationState",
    "RequestOrchestrator",
    "RequestPhase",
    "RetryPolicy",
    "TechnicalMetrics",
    "call_with_retry",
]
