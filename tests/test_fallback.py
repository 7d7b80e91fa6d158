"""Tests for the fallback textual mutator."""

from __future__ import annotations

import pytest

from sitewright.ai.errors import UnsafeInstruction
from sitewright.ai.mutation.fallback import (
    AnchorRegistry,
    FallbackTextualMutator,
    TextSubstitution,
    extract_substitution,
    find_anchor_content,
    has_change_vocabulary,
    replace_in_text,
)
from sitewright.editor.soup_document import SoupDocument
from sitewright.services import telemetry


@pytest.fixture
def mutator() -> FallbackTextualMutator:
    return FallbackTextualMutator()


class TestExtraction:
    @pytest.mark.parametrize(
        ("explanation", "pattern", "old", "new"),
        [
            ("I changed the headline from 'Welcome' to 'Hello there'", "from_to", "Welcome", "Hello there"),
            ("I changed the title to 'Acme Farms'", "changed_to", None, "Acme Farms"),
            ("Update the tagline to “Fresh every day”", "change_to", None, "Fresh every day"),
            ("The heading now reads to 'Harvest'", "to", None, "Harvest"),
            ("I changed the title to 'Joe's Farm'", "changed_to", None, "Joe's Farm"),
            ("Changed the name from “Your Brand” to “Joe’s Farm”.", "from_to", "Your Brand", "Joe’s Farm"),
        ],
    )
    def test_patterns(self, explanation: str, pattern: str, old: str | None, new: str) -> None:
        substitution = extract_substitution(explanation)
        assert substitution is not None
        assert substitution.pattern == pattern
        assert substitution.old_text == old
        assert substitution.new_text == new

    def test_changed_to_keeps_target_phrase(self) -> None:
        substitution = extract_substitution("I changed the title to 'Acme Farms'")
        assert substitution is not None
        assert substitution.target == "the title"

    def test_unquoted_text_yields_nothing(self) -> None:
        assert extract_substitution("I changed the title to Acme Farms") is None

    def test_vocabulary_detection(self) -> None:
        assert has_change_vocabulary("Updated the button")
        assert not has_change_vocabulary("Here you go")
        assert not has_change_vocabulary(None)


class TestMarkupHelpers:
    def test_anchor_prefers_innermost_element(self) -> None:
        markup = '<div data-slot="title"><h1 id="slot-title">Old</h1></div>'
        span = find_anchor_content(markup, ["title"])
        assert span is not None
        assert markup[span[0] : span[1]] == "Old"

    def test_anchor_handles_nested_same_tag(self) -> None:
        markup = '<div data-slot="brand"><div>Inner</div> Brand</div><div>after</div>'
        span = find_anchor_content(markup, ["brand"])
        assert span is not None
        assert markup[span[0] : span[1]] == "<div>Inner</div> Brand"

    def test_anchor_ignores_prefixed_id_attributes(self) -> None:
        markup = '<div data-id="slot-title">Wrong</div><h1 id="slot-title">Right</h1>'
        span = find_anchor_content(markup, ["title"])
        assert span is not None
        assert markup[span[0] : span[1]] == "Right"

    def test_replace_in_text_skips_attributes(self) -> None:
        markup = '<a title="Welcome">welcome home</a>'
        assert replace_in_text(markup, "Welcome", "Hi") == '<a title="Welcome">Hi home</a>'

    def test_registry_custom_keyword(self) -> None:
        registry = AnchorRegistry({})
        registry.register("motto", "tagline")
        assert registry.slots_for("the motto") == ("tagline",)
        assert registry.slots_for("the footer") == ()
        with pytest.raises(ValueError):
            registry.register("empty")


class TestTryFallback:
    def test_anchor_strategy(self, mutator: FallbackTextualMutator) -> None:
        document = SoupDocument('<header><h1 data-slot="title">Your Business Name</h1></header>')
        result = mutator.try_fallback(document, "I changed the title to 'Acme Farms'")
        assert result is not None
        assert result.strategy == "anchor"
        assert document.get_markup() == '<header><h1 data-slot="title">Acme Farms</h1></header>'

    def test_old_text_strategy(self, mutator: FallbackTextualMutator) -> None:
        document = SoupDocument("<h2>Welcome</h2><p>Welcome to the farm</p>")
        result = mutator.try_fallback(document, "Updated the greeting from 'Welcome' to 'Hello there'")
        assert result is not None
        assert result.strategy == "old_text"
        assert document.get_markup() == "<h2>Hello there</h2><p>Hello there to the farm</p>"

    def test_placeholder_strategy_prefers_longest_phrase(self, mutator: FallbackTextualMutator) -> None:
        document = SoupDocument("<p>Welcome to Your Business Name</p>")
        result = mutator.try_fallback(document, "I set the business name to 'Acme'")
        assert result is not None
        assert result.strategy == "placeholder"
        assert document.get_markup() == "<p>Welcome to Acme</p>"

    def test_no_vocabulary_means_no_attempt(self, mutator: FallbackTextualMutator) -> None:
        document = SoupDocument("<p>Your Business Name</p>")
        assert mutator.try_fallback(document, "Here you go: 'Acme'") is None
        assert document.get_markup() == "<p>Your Business Name</p>"

    def test_nothing_applicable_leaves_document(self, mutator: FallbackTextualMutator) -> None:
        document = SoupDocument("<p>Plain text</p>")
        assert mutator.try_fallback(document, "I changed the footer to 'Bye'") is None
        assert document.get_markup() == "<p>Plain text</p>"

    def test_unsafe_replacement_is_rejected(self, mutator: FallbackTextualMutator) -> None:
        document = SoupDocument('<h1 data-slot="title">Old</h1>')
        with pytest.raises(UnsafeInstruction):
            mutator.try_fallback(document, "I changed the title to '<script>steal()</script>'")
        assert document.get_markup() == '<h1 data-slot="title">Old</h1>'

    def test_emits_fallback_telemetry(self, mutator: FallbackTextualMutator) -> None:
        received: list[dict[str, object]] = []
        telemetry.register_event_listener("mutation.fallback", received.append)
        try:
            mutator.try_fallback(SoupDocument('<h1 data-slot="title">Old</h1>'), "I changed the title to 'New'")
        finally:
            telemetry.unregister_event_listener("mutation.fallback", received.append)
        assert received[0]["strategy"] == "anchor"


def test_substitute_returns_none_when_markup_unchanged(mutator: FallbackTextualMutator) -> None:
    assert mutator.substitute("<p>Acme</p>", TextSubstitution(new_text="Acme", old_text="Acme")) is None
