"""Per-attempt modification tracking via an instrumented accessor.

``InstrumentedAccessor`` composes the real document accessor and wraps
every node it hands out in a ``TrackedNode``. Neither wrapper changes the
contract of what it wraps; both only record counts into a
``ModificationTracker`` that lives for a single execution attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from ...editor.accessor import DocumentAccessor, DocumentNode

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ModificationTracker:
    """Counters scoped to one execution attempt; never persisted."""

    lookups_attempted: int = 0
    nodes_matched: int = 0
    nodes_mutated: int = 0
    errors: list[str] = field(default_factory=list)

    def record_lookup(self, criterion: str, matched: int) -> None:
        self.lookups_attempted += 1
        self.nodes_matched += matched
        if matched == 0:
            message = f"No elements found with selector: {criterion}"
            LOGGER.debug(message)
            self.errors.append(message)

    def record_mutation(self) -> None:
        self.nodes_mutated += 1

    def as_dict(self) -> dict[str, object]:
        return {
            "lookups_attempted": self.lookups_attempted,
            "nodes_matched": self.nodes_matched,
            "nodes_mutated": self.nodes_mutated,
            "errors": list(self.errors),
        }


class TrackedNode:
    """Node decorator counting every mutating call on the wrapped node."""

    __slots__ = ("_node", "_tracker")

    def __init__(self, node: DocumentNode, tracker: ModificationTracker) -> None:
        self._node = node
        self._tracker = tracker

    @property
    def wrapped(self) -> DocumentNode:
        return self._node

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TrackedNode):
            return self._node == other._node
        return self._node == other

    def __hash__(self) -> int:
        return hash(self._node)

    # Readers -----------------------------------------------------------
    def get_id(self) -> str | None:
        return self._node.get_id()

    def get_tag(self) -> str:
        return self._node.get_tag()

    def get_classes(self) -> Sequence[str]:
        return self._node.get_classes()

    def get_attribute(self, name: str) -> str | None:
        return self._node.get_attribute(name)

    def get_content(self) -> str:
        return self._node.get_content()

    def get_style(self) -> Mapping[str, str]:
        return self._node.get_style()

    # Mutators ----------------------------------------------------------
    def set_attribute(self, name: str, value: str) -> None:
        self._node.set_attribute(name, value)
        self._tracker.record_mutation()

    def remove_attribute(self, name: str) -> None:
        self._node.remove_attribute(name)
        self._tracker.record_mutation()

    def set_content(self, text: str) -> None:
        self._node.set_content(text)
        self._tracker.record_mutation()

    def set_style(self, styles: Mapping[str, str]) -> None:
        self._node.set_style(styles)
        self._tracker.record_mutation()

    def add_class(self, name: str) -> None:
        self._node.add_class(name)
        self._tracker.record_mutation()

    def remove_class(self, name: str) -> None:
        self._node.remove_class(name)
        self._tracker.record_mutation()

    def remove(self) -> None:
        self._node.remove()
        self._tracker.record_mutation()

    def replace_with(self, markup: str) -> None:
        self._node.replace_with(markup)
        self._tracker.record_mutation()

    def empty(self) -> None:
        self._node.empty()
        self._tracker.record_mutation()


class InstrumentedAccessor:
    """Accessor decorator recording lookups and handing out tracked nodes."""

    def __init__(self, inner: DocumentAccessor, tracker: ModificationTracker | None = None) -> None:
        self._inner = inner
        self.tracker = tracker or ModificationTracker()

    @property
    def inner(self) -> DocumentAccessor:
        return self._inner

    def get_markup(self) -> str:
        return self._inner.get_markup()

    def get_stylesheet(self) -> str:
        return self._inner.get_stylesheet()

    def set_markup(self, markup: str) -> None:
        self._inner.set_markup(markup)

    def set_stylesheet(self, stylesheet: str) -> None:
        self._inner.set_stylesheet(stylesheet)

    def get_selected_node(self) -> TrackedNode | None:
        node = self._inner.get_selected_node()
        if node is None:
            self.tracker.record_lookup("selected element", 0)
            return None
        self.tracker.record_lookup("selected element", 1)
        return TrackedNode(node, self.tracker)

    def track(self, node: DocumentNode, criterion: str = "selected element") -> TrackedNode:
        """Wrap a node obtained outside ``find_nodes``, counting it as matched."""

        self.tracker.record_lookup(criterion, 1)
        return TrackedNode(node, self.tracker)

    def find_nodes(self, criterion: str) -> list[TrackedNode]:
        nodes = list(self._inner.find_nodes(criterion))
        self.tracker.record_lookup(criterion, len(nodes))
        return [TrackedNode(node, self.tracker) for node in nodes]

    def node_count(self) -> int:
        return self._inner.node_count()

    def flush(self) -> None:
        self._inner.flush()


__all__ = ["InstrumentedAccessor", "ModificationTracker", "TrackedNode"]
