"""Capability surface consumed from the visual document editor.

The pipeline never owns the live document tree. It reads and mutates it
exclusively through the protocols below, which mirror the small set of
operations the visual editor exposes.
"""

from __future__ import annotations

from typing import Mapping, Protocol, Sequence, runtime_checkable


@runtime_checkable
class DocumentNode(Protocol):
    """An addressable element inside the editable document."""

    def get_id(self) -> str | None:
        ...

    def get_tag(self) -> str:
        ...

    def get_classes(self) -> Sequence[str]:
        ...

    def get_attribute(self, name: str) -> str | None:
        ...

    def set_attribute(self, name: str, value: str) -> None:
        ...

    def remove_attribute(self, name: str) -> None:
        ...

    def get_content(self) -> str:
        ...

    def set_content(self, text: str) -> None:
        ...

    def get_style(self) -> Mapping[str, str]:
        ...

    def set_style(self, styles: Mapping[str, str]) -> None:
        ...

    def add_class(self, name: str) -> None:
        ...

    def remove_class(self, name: str) -> None:
        ...

    def remove(self) -> None:
        ...

    def replace_with(self, markup: str) -> None:
        ...

    def empty(self) -> None:
        ...


@runtime_checkable
class DocumentAccessor(Protocol):
    """Live document tree plus its stylesheet text."""

    def get_markup(self) -> str:
        ...

    def get_stylesheet(self) -> str:
        ...

    def set_markup(self, markup: str) -> None:
        ...

    def set_stylesheet(self, stylesheet: str) -> None:
        ...

    def get_selected_node(self) -> DocumentNode | None:
        ...

    def find_nodes(self, criterion: str) -> Sequence[DocumentNode]:
        ...

    def node_count(self) -> int:
        ...

    def flush(self) -> None:
        """Force pending internal normalization to settle."""
        ...


def describe_node(node: DocumentNode | None) -> dict[str, object] | None:
    """Return a small serializable summary used in prompts and logs."""

    if node is None:
        return None
    classes = [name for name in node.get_classes() if name]
    return {
        "id": node.get_id(),
        "tag": node.get_tag(),
        "classes": classes,
    }


__all__ = ["DocumentAccessor", "DocumentNode", "describe_node"]
