"""Mutation executor: applies a model result and verifies it took effect."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from ...editor.accessor import DocumentAccessor, DocumentNode
from ...editor.snapshot import DocumentSnapshot
from ...services import telemetry as telemetry_service
from ..errors import AssistantError, MutationExecutionError, NoEffect
from ..models import DocumentReplacement, ImperativeEdit, MutationResult
from . import instructions as grammar
from .tracker import InstrumentedAccessor, ModificationTracker

LOGGER = logging.getLogger(__name__)

NO_LOOKUP_DIAGNOSTIC = "I couldn't find what you're looking for. Be more specific or select the element first."
NO_MATCH_DIAGNOSTIC = "I couldn't find that element."
NOT_MODIFIED_DIAGNOSTIC = "I found {count} element(s) but couldn't modify them. Try selecting it first."
GENERIC_DIAGNOSTIC = "I couldn't make that change."

ExecutionPath = Literal["replacement", "imperative"]


@dataclass(slots=True)
class ExecutionOutcome:
    """Classification of a single execution attempt."""

    applied: bool
    path: ExecutionPath
    before: DocumentSnapshot
    after: DocumentSnapshot
    tracker: ModificationTracker | None = None
    diagnostic: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def markup_changed(self) -> bool:
        return self.before.markup != self.after.markup

    @property
    def stylesheet_changed(self) -> bool:
        return self.before.stylesheet != self.after.stylesheet

    @property
    def node_count_changed(self) -> bool:
        return self.before.node_count != self.after.node_count

    @property
    def changed(self) -> bool:
        return self.markup_changed or self.stylesheet_changed or self.node_count_changed

    def as_dict(self) -> dict[str, object]:
        return {
            "applied": self.applied,
            "path": self.path,
            "markup_changed": self.markup_changed,
            "stylesheet_changed": self.stylesheet_changed,
            "node_count_before": self.before.node_count,
            "node_count_after": self.after.node_count,
            "tracker": self.tracker.as_dict() if self.tracker else None,
            "diagnostic": self.diagnostic,
            "warnings": list(self.warnings),
        }


def diagnose(tracker: ModificationTracker) -> str:
    """Pick the user-facing diagnostic for a no-effect attempt."""

    if tracker.lookups_attempted == 0:
        return NO_LOOKUP_DIAGNOSTIC
    if tracker.nodes_matched == 0:
        return NO_MATCH_DIAGNOSTIC
    if tracker.nodes_mutated == 0:
        return NOT_MODIFIED_DIAGNOSTIC.format(count=tracker.nodes_matched)
    return GENERIC_DIAGNOSTIC


class MutationExecutor:
    """Applies ``MutationResult`` values to a live document.

    ``DocumentReplacement`` results are trusted and always reported as
    applied. ``ImperativeEdit`` results are interpreted through the closed
    instruction grammar on an instrumented accessor and verified by
    comparing snapshots taken before and after.
    """

    def apply(
        self,
        document: DocumentAccessor,
        result: MutationResult,
        selection_scope: DocumentNode | None = None,
    ) -> ExecutionOutcome:
        """Apply *result* to *document*.

        Raises:
            UnsafeInstruction: operations left the grammar or carried a
                denylisted value; nothing was executed.
            NoEffect: operations ran but verification found no change.
            MutationExecutionError: the accessor raised mid-execution.
        """

        if isinstance(result, DocumentReplacement):
            return self._apply_replacement(document, result)
        if isinstance(result, ImperativeEdit):
            return self._apply_imperative(document, result, selection_scope)
        raise TypeError(f"Unsupported mutation result: {type(result).__name__}")

    def _apply_replacement(self, document: DocumentAccessor, result: DocumentReplacement) -> ExecutionOutcome:
        before = DocumentSnapshot.capture(document)
        try:
            document.set_markup(result.new_markup)
            if result.new_stylesheet is not None:
                document.set_stylesheet(result.new_stylesheet)
        except Exception as exc:
            LOGGER.warning("Document replacement failed: %s", exc, exc_info=True)
            raise MutationExecutionError(detail=f"Replacement failed: {exc}") from exc
        after = DocumentSnapshot.capture(document)
        outcome = ExecutionOutcome(applied=True, path="replacement", before=before, after=after)
        if not outcome.changed:
            LOGGER.info("Document replacement was identical to the current document")
        telemetry_service.emit("mutation.applied", outcome.as_dict())
        return outcome

    def _apply_imperative(
        self,
        document: DocumentAccessor,
        result: ImperativeEdit,
        selection_scope: DocumentNode | None,
    ) -> ExecutionOutcome:
        parsed = grammar.parse_operations(result.operations)
        warnings = grammar.warn_destructive(parsed)

        before = DocumentSnapshot.capture(document)
        tracker = ModificationTracker()
        accessor = InstrumentedAccessor(document, tracker)
        if selection_scope is not None:
            LOGGER.debug("Scoping %s operation(s) to the selected element", len(parsed))
        try:
            for instruction in parsed:
                grammar.execute(accessor, instruction, selection_scope)
        except AssistantError:
            raise
        except Exception as exc:
            LOGGER.warning("Operation execution failed: %s", exc, exc_info=True)
            raise MutationExecutionError(
                detail=f"Execution failed: {exc}",
                context={"tracker": tracker.as_dict()},
            ) from exc
        after = DocumentSnapshot.capture(document)

        if after.node_count < before.node_count:
            message = (
                f"Element count decreased from {before.node_count} to {after.node_count}; "
                "use undo if this was not intended"
            )
            LOGGER.warning(message)
            warnings.append(message)

        outcome = ExecutionOutcome(
            applied=False,
            path="imperative",
            before=before,
            after=after,
            tracker=tracker,
            warnings=warnings,
        )
        outcome.applied = outcome.changed or tracker.nodes_mutated > 0
        if outcome.applied:
            telemetry_service.emit("mutation.applied", outcome.as_dict())
            return outcome

        outcome.diagnostic = diagnose(tracker)
        telemetry_service.emit("mutation.no_effect", outcome.as_dict())
        LOGGER.info("Operations had no effect: %s (%s)", outcome.diagnostic, tracker.as_dict())
        raise NoEffect(
            user_message=f"No changes were made. {outcome.diagnostic}",
            detail="; ".join(tracker.errors) or "Verification found no change",
            context={"tracker": tracker.as_dict()},
            outcome=outcome,
        )


__all__ = [
    "ExecutionOutcome",
    "GENERIC_DIAGNOSTIC",
    "MutationExecutor",
    "NO_LOOKUP_DIAGNOSTIC",
    "NO_MATCH_DIAGNOSTIC",
    "NOT_MODIFIED_DIAGNOSTIC",
    "diagnose",
]
