"""Serialized document snapshots used for verification and persistence."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from .accessor import DocumentAccessor


def _hash_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class DocumentSnapshot:
    """Markup, stylesheet and node count captured at one instant."""

    markup: str
    stylesheet: str
    node_count: int = 0

    @classmethod
    def capture(cls, document: DocumentAccessor) -> "DocumentSnapshot":
        return cls(
            markup=document.get_markup() or "",
            stylesheet=document.get_stylesheet() or "",
            node_count=document.node_count(),
        )

    @property
    def fingerprint(self) -> str:
        """Cheap change detector compared between auto-suggestions."""

        return f"{len(self.markup)}-{len(self.stylesheet)}-{self.node_count}"

    @property
    def content_hash(self) -> str:
        return _hash_text(f"{self.markup}\x00{self.stylesheet}")

    def same_content(self, other: "DocumentSnapshot | None") -> bool:
        if other is None:
            return False
        return self.markup == other.markup and self.stylesheet == other.stylesheet


__all__ = ["DocumentSnapshot"]
