"""Fallback textual mutator.

When the executor cannot prove an effect, the model's explanation usually
still says what it meant to do ("I changed the title to 'Acme Farms'").
This module recovers that substitution and applies it directly to the
serialized markup, then re-parses it into the live document. It never
uses the node capability surface.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Sequence

from ...editor.accessor import DocumentAccessor
from ...services import telemetry as telemetry_service
from .instructions import screen_text

LOGGER = logging.getLogger(__name__)

CHANGE_VERBS = ("change", "changed", "update", "updated", "modify", "modified", "rename", "renamed", "replace", "replaced", "set")
DOMAIN_KEYWORDS = ("title", "headline", "heading", "name", "text", "button", "tagline", "subtitle", "logo")

DEFAULT_PLACEHOLDERS = (
    "Your Business Name",
    "Your Company Name",
    "Company Name",
    "Your Brand",
    "Business Name",
    "Lorem ipsum",
)

DEFAULT_ANCHORS: Mapping[str, tuple[str, ...]] = {
    "title": ("title", "headline"),
    "headline": ("headline", "title"),
    "heading": ("headline", "title"),
    "name": ("title", "business_name", "brand"),
    "subtitle": ("subheadline", "subtitle"),
    "subheadline": ("subheadline", "subtitle"),
    "tagline": ("tagline", "subheadline"),
    "logo": ("logo", "brand"),
    "brand": ("brand", "logo"),
    "button": ("primary_cta",),
    "cta": ("primary_cta",),
}

_VOCABULARY_RE = re.compile(r"\b(?:%s)\b" % "|".join(CHANGE_VERBS + DOMAIN_KEYWORDS), re.IGNORECASE)

_PAST_VERBS = r"changed|updated|modified|renamed|replaced|set"
_VERBS = r"change|update|modify|rename|replace|set"


def _quoted(name: str) -> str:
    """Quoted text captured as *name*; the close must pair with the open and end the clause.

    Apostrophes inside the text ("'Joe's Farm'") do not close it.
    """

    return (
        rf"(?:(?P<{name}_s>')|(?P<{name}_d>\")|(?P<{name}_ls>‘)|(?P<{name}_ld>“))"
        rf"(?P<{name}>[^\n]+?)"
        rf"(?({name}_s)'|(?({name}_d)\"|(?({name}_ls)’|”)))"
        r"(?=[\s.,;:!?)]|$)"
    )


_FROM_TO_RE = re.compile(
    rf"(?:\b(?:{_PAST_VERBS}|{_VERBS})\s+(?P<target>.+?)\s+)?\bfrom\s+{_quoted('old')}\s+to\s+{_quoted('new')}",
    re.IGNORECASE,
)
_CHANGED_TO_RE = re.compile(
    rf"\b(?:{_PAST_VERBS})\s+(?P<target>.+?)\s+to\s+{_quoted('new')}",
    re.IGNORECASE,
)
_CHANGE_TO_RE = re.compile(
    rf"\b(?:{_VERBS})\s+(?P<target>.+?)\s+to\s+{_quoted('new')}",
    re.IGNORECASE,
)
_TO_RE = re.compile(rf"\bto\s+{_quoted('new')}", re.IGNORECASE)

_TAG_SPLIT_RE = re.compile(r"(<[^>]*>)")
_WORD_RE = re.compile(r"[a-z_]+", re.IGNORECASE)
_VOID_TAGS = frozenset({"area", "base", "br", "col", "embed", "hr", "img", "input", "link", "meta", "source", "track", "wbr"})


@dataclass(frozen=True, slots=True)
class TextSubstitution:
    """Substitution recovered from an explanation."""

    new_text: str
    old_text: str | None = None
    target: str | None = None
    pattern: str = ""


@dataclass(frozen=True, slots=True)
class FallbackResult:
    """A successful fallback: the new markup and how it was produced."""

    markup: str
    strategy: str
    substitution: TextSubstitution


def _from_match(name: str) -> Callable[[re.Match[str]], TextSubstitution]:
    def extract(match: re.Match[str]) -> TextSubstitution:
        groups = match.groupdict()
        old = groups.get("old")
        target = groups.get("target")
        return TextSubstitution(
            new_text=groups["new"].strip(),
            old_text=old.strip() if old else None,
            target=target.strip() if target else None,
            pattern=name,
        )

    return extract


# Ordered (name, pattern, extractor) triples; first match wins.
EXTRACTION_PATTERNS: tuple[tuple[str, re.Pattern[str], Callable[[re.Match[str]], TextSubstitution]], ...] = (
    ("from_to", _FROM_TO_RE, _from_match("from_to")),
    ("changed_to", _CHANGED_TO_RE, _from_match("changed_to")),
    ("change_to", _CHANGE_TO_RE, _from_match("change_to")),
    ("to", _TO_RE, _from_match("to")),
)


def has_change_vocabulary(explanation: str | None) -> bool:
    return bool(explanation and _VOCABULARY_RE.search(explanation))


def extract_substitution(explanation: str | None) -> TextSubstitution | None:
    """Recover ``(old_text?, new_text)`` from an explanation, or ``None``."""

    if not explanation:
        return None
    for _name, pattern, extractor in EXTRACTION_PATTERNS:
        match = pattern.search(explanation)
        if match is None:
            continue
        substitution = extractor(match)
        if substitution.new_text:
            return substitution
    return None


class AnchorRegistry:
    """Maps semantic keywords to named-slot identifiers."""

    def __init__(self, anchors: Mapping[str, Sequence[str]] | None = None) -> None:
        source = DEFAULT_ANCHORS if anchors is None else anchors
        self._anchors: dict[str, tuple[str, ...]] = {key.lower(): tuple(value) for key, value in source.items()}

    def register(self, keyword: str, *slots: str) -> None:
        if not keyword or not slots:
            raise ValueError("keyword and at least one slot name are required")
        self._anchors[keyword.lower()] = tuple(slots)

    def slots_for(self, phrase: str | None) -> tuple[str, ...]:
        """Return slot names for the first known keyword in *phrase*."""

        if not phrase:
            return ()
        for word in _WORD_RE.findall(phrase):
            slots = self._anchors.get(word.lower())
            if slots:
                return slots
        return ()


def _anchor_open_re(slot: str) -> re.Pattern[str]:
    name = re.escape(slot)
    return re.compile(
        rf"<(?P<tag>[a-zA-Z][\w-]*)\b[^>]*?(?<![\w-])(?:id\s*=\s*[\"']slot-{name}[\"']|data-slot\s*=\s*[\"']{name}[\"'])[^>]*>",
        re.IGNORECASE,
    )


def _matching_close(markup: str, tag: str, start: int) -> tuple[int, int] | None:
    """Return the span of the close tag balancing an open *tag* ending at *start*."""

    tag_re = re.compile(rf"<(?P<close>/)?{re.escape(tag)}\b[^>]*?(?P<self>/)?>", re.IGNORECASE)
    depth = 1
    for match in tag_re.finditer(markup, start):
        if match.group("close"):
            depth -= 1
            if depth == 0:
                return match.start(), match.end()
        elif not match.group("self"):
            depth += 1
    return None


def find_anchor_content(markup: str, slots: Iterable[str]) -> tuple[int, int] | None:
    """Return the content span of the innermost element carrying one of *slots*."""

    best: tuple[int, int] | None = None
    for slot in slots:
        for match in _anchor_open_re(slot).finditer(markup):
            tag = match.group("tag").lower()
            if tag in _VOID_TAGS or match.group(0).endswith("/>"):
                continue
            close = _matching_close(markup, tag, match.end())
            if close is None:
                continue
            span = (match.end(), close[0])
            if best is None or (span[1] - span[0]) < (best[1] - best[0]):
                best = span
        if best is not None:
            return best
    return best


def replace_in_text(markup: str, needle: str, replacement: str) -> str:
    """Replace case-insensitive *needle* inside text segments only."""

    if not needle:
        return markup
    pattern = re.compile(re.escape(needle), re.IGNORECASE)
    parts = _TAG_SPLIT_RE.split(markup)
    for index in range(0, len(parts), 2):
        parts[index] = pattern.sub(lambda _match: replacement, parts[index])
    return "".join(parts)


class FallbackTextualMutator:
    """Heuristic text substitution on serialized markup.

    Strategies run in order and the first that changes the markup wins:
    named-slot anchor, recovered old text, then known placeholder phrases.
    """

    def __init__(
        self,
        anchors: AnchorRegistry | None = None,
        placeholders: Sequence[str] = DEFAULT_PLACEHOLDERS,
    ) -> None:
        self.anchors = anchors or AnchorRegistry()
        self.placeholders = tuple(sorted(placeholders, key=len, reverse=True))

    def applies_to(self, explanation: str | None) -> bool:
        return has_change_vocabulary(explanation)

    def substitute(self, markup: str, substitution: TextSubstitution) -> tuple[str, str] | None:
        """Return ``(new_markup, strategy)`` or ``None`` when nothing changes."""

        screen_text(substitution.new_text)
        new_text = substitution.new_text

        slots = self.anchors.slots_for(substitution.target)
        span = find_anchor_content(markup, slots) if slots else None
        if span is not None:
            start, end = span
            candidate = f"{markup[:start]}{new_text}{markup[end:]}"
            if candidate != markup:
                return candidate, "anchor"

        if substitution.old_text:
            candidate = replace_in_text(markup, substitution.old_text, new_text)
            if candidate != markup:
                return candidate, "old_text"

        for phrase in self.placeholders:
            candidate = replace_in_text(markup, phrase, new_text)
            if candidate != markup:
                return candidate, "placeholder"
        return None

    def try_fallback(self, document: DocumentAccessor, explanation: str | None) -> FallbackResult | None:
        """Attempt the fallback against *document*; ``None`` if nothing applied.

        Raises:
            UnsafeInstruction: the recovered text carries a denylisted value.
        """

        if not self.applies_to(explanation):
            LOGGER.debug("Explanation has no change vocabulary; skipping fallback")
            return None
        substitution = extract_substitution(explanation)
        if substitution is None:
            LOGGER.debug("No quoted substitution found in explanation %r", explanation)
            return None

        markup = document.get_markup()
        produced = self.substitute(markup, substitution)
        if produced is None:
            LOGGER.info("Fallback found no applicable strategy for %r", substitution)
            return None
        new_markup, strategy = produced
        document.set_markup(new_markup)
        if document.get_markup() == markup:
            LOGGER.info("Fallback markup re-parsed to the original document")
            return None
        LOGGER.info("Fallback applied via %s strategy (%s)", strategy, substitution.pattern)
        telemetry_service.emit(
            "mutation.fallback",
            {"strategy": strategy, "pattern": substitution.pattern, "target": substitution.target},
        )
        return FallbackResult(markup=document.get_markup(), strategy=strategy, substitution=substitution)


__all__ = [
    "AnchorRegistry",
    "DEFAULT_ANCHORS",
    "DEFAULT_PLACEHOLDERS",
    "EXTRACTION_PATTERNS",
    "FallbackResult",
    "FallbackTextualMutator",
    "TextSubstitution",
    "extract_substitution",
    "find_anchor_content",
    "has_change_vocabulary",
    "replace_in_text",
]
