"""Headless document accessor backed by BeautifulSoup.

The browser builder exposes its own component tree; this implementation
provides the same capability surface for batch jobs and tests.
"""

from __future__ import annotations

import logging
from typing import Mapping, Sequence

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError


LOGGER = logging.getLogger(__name__)

_PARSER = "html.parser"


def parse_style(raw: str | None) -> dict[str, str]:
    """Parse an inline ``style`` attribute into an ordered mapping."""

    styles: dict[str, str] = {}
    if not raw:
        return styles
    for declaration in raw.split(";"):
        name, sep, value = declaration.partition(":")
        if not sep:
            continue
        key = name.strip().lower()
        if key:
            styles[key] = value.strip()
    return styles


def format_style(styles: Mapping[str, str]) -> str:
    return "; ".join(f"{name}: {value}" for name, value in styles.items() if value != "")


class SoupNode:
    """Node wrapper around a BeautifulSoup tag."""

    __slots__ = ("_tag", "_document")

    def __init__(self, tag: Tag, document: "SoupDocument") -> None:
        self._tag = tag
        self._document = document

    @property
    def tag(self) -> Tag:
        return self._tag

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SoupNode) and other._tag is self._tag

    def __hash__(self) -> int:
        return id(self._tag)

    def __repr__(self) -> str:
        return f"SoupNode(<{self.get_tag()} id={self.get_id()!r}>)"

    def get_id(self) -> str | None:
        value = self._tag.get("id")
        return str(value) if value else None

    def get_tag(self) -> str:
        return self._tag.name or ""

    def get_classes(self) -> Sequence[str]:
        raw = self._tag.get("class") or []
        if isinstance(raw, str):
            return raw.split()
        return list(raw)

    def get_attribute(self, name: str) -> str | None:
        value = self._tag.get(name)
        if value is None:
            return None
        if isinstance(value, list):
            return " ".join(value)
        return str(value)

    def set_attribute(self, name: str, value: str) -> None:
        if name == "class":
            self._tag["class"] = value.split()
        else:
            self._tag[name] = value

    def remove_attribute(self, name: str) -> None:
        if name in self._tag.attrs:
            del self._tag[name]

    def get_content(self) -> str:
        return self._tag.get_text()

    def set_content(self, text: str) -> None:
        self._tag.string = text

    def get_style(self) -> Mapping[str, str]:
        return parse_style(self.get_attribute("style"))

    def set_style(self, styles: Mapping[str, str]) -> None:
        merged = dict(self.get_style())
        for name, value in styles.items():
            key = name.strip().lower()
            if value in (None, ""):
                merged.pop(key, None)
            else:
                merged[key] = str(value)
        if merged:
            self._tag["style"] = format_style(merged)
        else:
            self.remove_attribute("style")

    def add_class(self, name: str) -> None:
        classes = list(self.get_classes())
        if name not in classes:
            classes.append(name)
        self._tag["class"] = classes

    def remove_class(self, name: str) -> None:
        classes = [value for value in self.get_classes() if value != name]
        if classes:
            self._tag["class"] = classes
        else:
            self.remove_attribute("class")

    def remove(self) -> None:
        self._document._forget(self._tag)
        self._tag.decompose()

    def replace_with(self, markup: str) -> None:
        fragment = BeautifulSoup(markup, _PARSER)
        replacements = list(fragment.contents)
        self._document._forget(self._tag)
        if replacements:
            self._tag.replace_with(*replacements)
        else:
            self._tag.decompose()

    def empty(self) -> None:
        self._tag.clear()


class SoupDocument:
    """In-memory editable document with a selected node and stylesheet."""

    def __init__(self, markup: str = "", stylesheet: str = "") -> None:
        self._soup = BeautifulSoup(markup, _PARSER)
        self._stylesheet = stylesheet
        self._selected: Tag | None = None
        self.flush_count = 0

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def get_markup(self) -> str:
        return self._soup.decode()

    def get_stylesheet(self) -> str:
        return self._stylesheet

    def set_markup(self, markup: str) -> None:
        self._soup = BeautifulSoup(markup, _PARSER)
        self._selected = None

    def set_stylesheet(self, stylesheet: str) -> None:
        self._stylesheet = stylesheet

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def select(self, criterion: str) -> SoupNode | None:
        """Mark the first node matching ``criterion`` as selected."""

        matches = self.find_nodes(criterion)
        if not matches:
            self._selected = None
            return None
        node = matches[0]
        self._selected = node.tag
        return node

    def clear_selection(self) -> None:
        self._selected = None

    def get_selected_node(self) -> SoupNode | None:
        if self._selected is None or getattr(self._selected, "decomposed", False):
            return None
        return SoupNode(self._selected, self)

    def find_nodes(self, criterion: str) -> Sequence[SoupNode]:
        try:
            tags = self._soup.select(criterion)
        except SelectorSyntaxError:
            LOGGER.debug("Ignoring invalid selector %r", criterion)
            return []
        return [SoupNode(tag, self) for tag in tags]

    def node_count(self) -> int:
        return len(self._soup.find_all(True))

    def flush(self) -> None:
        self.flush_count += 1

    def _forget(self, tag: Tag) -> None:
        if self._selected is tag:
            self._selected = None


__all__ = ["SoupDocument", "SoupNode", "format_style", "parse_style"]
