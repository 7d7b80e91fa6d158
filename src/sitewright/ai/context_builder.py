"""Prompt assembly for the website assistant.

Builds the natural-language prompt sent upstream from the current markup,
stylesheet, selection and device context. The output is opaque text: no
other component parses it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from ..editor.accessor import DocumentAccessor, DocumentNode, describe_node
from .tokens import TokenCounterProtocol, TokenCounterRegistry, truncate_to_tokens

TRUNCATION_MARKER = "... (truncated)"
DEFAULT_DEVICES = ("Desktop", "Tablet", "Mobile portrait")


@dataclass(slots=True)
class ContextBuilder:
    """Pure prompt builder; holds only formatting configuration.

    Attributes:
        max_prompt_tokens: Optional cap applied separately to markup and
            stylesheet. ``None`` embeds both verbatim.
        model_name: Model whose tokenizer measures the cap.
        available_devices: Device names listed for responsive styling.
    """

    max_prompt_tokens: int | None = None
    model_name: str | None = None
    available_devices: Sequence[str] = field(default_factory=lambda: DEFAULT_DEVICES)
    token_registry: TokenCounterRegistry | None = None

    def build(
        self,
        document: DocumentAccessor,
        selection: DocumentNode | None,
        instruction_text: str | None,
        device_context: str = "Desktop",
    ) -> str:
        """Return the prompt for one request.

        Args:
            document: Live document; only read.
            selection: Selected node, which constrains the model to that node.
            instruction_text: User instruction, or ``None`` to ask for one
                autonomous improvement.
            device_context: Currently active device/viewport name.
        """

        markup = document.get_markup()
        stylesheet = document.get_stylesheet()
        counter = self._counter()
        shown_markup = self._cap(markup, counter)
        shown_stylesheet = self._cap(stylesheet, counter)
        instruction = (instruction_text or "").strip() or None

        sections = [
            _role_section(),
            _output_format_section(),
            _grammar_section(),
            _device_section(device_context, self.available_devices),
            _state_section(shown_markup, len(markup), shown_stylesheet, len(stylesheet), document.node_count()),
            _selection_section(selection),
            _request_section(instruction),
            _rules_section(),
        ]
        return "\n\n".join(section for section in sections if section)

    def count_tokens(self, text: str) -> int:
        return self._counter().count(text)

    def _counter(self) -> TokenCounterProtocol:
        registry = self.token_registry or TokenCounterRegistry.global_instance()
        return registry.ensure(self.model_name)

    def _cap(self, text: str, counter: TokenCounterProtocol) -> str:
        trimmed, truncated = truncate_to_tokens(text, self.max_prompt_tokens, counter)
        return f"{trimmed}{TRUNCATION_MARKER}" if truncated else trimmed


def build_prompt(
    document: DocumentAccessor,
    selection: DocumentNode | None,
    instruction_text: str | None,
    device_context: str = "Desktop",
) -> str:
    """Build a prompt with default configuration."""

    return ContextBuilder().build(document, selection, instruction_text, device_context)


def _role_section() -> str:
    return """You are an AI assistant integrated into a visual website builder.

Your role is to analyze the current website state and either:
1. Suggest one improvement automatically (when no user request is provided)
2. Carry out the user's request (when a user request is provided)"""


def _output_format_section() -> str:
    return """## Output Format

You MUST return ONLY valid JSON, no markdown code blocks, no extra text.
Use exactly one of these two shapes:

Preferred, the complete updated document:
{
  "explanation": "One short, non-technical sentence describing the change",
  "newMarkup": "<the COMPLETE updated HTML, not a fragment>",
  "newStylesheet": "<the COMPLETE updated CSS>"
}

Or targeted operations:
{
  "explanation": "One short, non-technical sentence describing the change",
  "operations": [ ...instructions... ]
}

In the explanation, quote new text exactly, for example:
"I changed the title to 'Acme Farms'"."""


def _grammar_section() -> str:
    return """## Operations

Each operation is an object with an "op" and a "target".
target is {"selector": "<css selector>"} or {"selected": true}.

- {"op": "set_content", "target": ..., "value": "New text"}
- {"op": "set_attribute", "target": ..., "name": "alt", "value": "Logo"}
- {"op": "remove_attribute", "target": ..., "name": "title"}
- {"op": "set_style", "target": ..., "styles": {"color": "#333"}}
- {"op": "add_class", "target": ..., "value": "highlight"}
- {"op": "remove_class", "target": ..., "value": "highlight"}
- {"op": "remove", "target": ...}
- {"op": "replace_with", "target": ..., "value": "<p>markup</p>"}
- {"op": "empty", "target": ...}

Scripts, event handler attributes and javascript: URLs are rejected."""


def _device_section(device_context: str, devices: Sequence[str]) -> str:
    listed = ", ".join(devices) if devices else device_context
    return f"""## Device

Available devices: {listed}
Current device: {device_context}
Styles apply to the current device; the first device applies to all screen sizes."""


def _state_section(markup: str, markup_len: int, stylesheet: str, stylesheet_len: int, node_count: int) -> str:
    return f"""## Current Website State

HTML ({markup_len} characters):
{markup}

CSS ({stylesheet_len} characters):
{stylesheet}

Element count: {node_count}"""


def _selection_section(selection: DocumentNode | None) -> str:
    summary = describe_node(selection)
    if summary is None:
        return "No element currently selected."
    classes = ", ".join(summary["classes"]) or "none"  # type: ignore[arg-type]
    return f"""## Selected Element (CONSTRAINT)

- ID: {summary["id"] or "none"}
- Tag: {summary["tag"]}
- Classes: {classes}

The user has selected this element. Operate ONLY on the selected element.
Do NOT search the document for it: target it with {{"selected": true}}.
Do not modify any other element."""


def _request_section(instruction: str | None) -> str:
    if instruction is not None:
        return f"""## User Request

"{instruction}"

Make exactly the requested change."""
    return """## Automatic Suggestion

Analyze the current website and suggest exactly ONE meaningful improvement. Focus on:
- SEO (missing alt text, heading structure)
- Accessibility (labels, color contrast)
- Responsive design
- Design consistency (spacing, typography, color palette)

Return a single suggestion that would genuinely improve the website."""


def _rules_section() -> str:
    return """## Rules

- MODIFY existing elements; never remove or replace them unless explicitly asked.
- Preserve the document structure.
- If you cannot find an element, say so in the explanation instead of creating a new one.
- Return ONLY valid JSON."""


__all__ = ["ContextBuilder", "TRUNCATION_MARKER", "build_prompt"]
