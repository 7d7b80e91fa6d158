"""Applying model results to the live document."""

from .executor import ExecutionOutcome, MutationExecutor
from .fallback import AnchorRegistry, FallbackResult, FallbackTextualMutator
from .tracker import InstrumentedAccessor, ModificationTracker

__all__ = [
    "AnchorRegistry",
    "ExecutionOutcome",
    "FallbackResult",
    "FallbackTextualMutator",
    "InstrumentedAccessor",
    "ModificationTracker",
    "MutationExecutor",
]
