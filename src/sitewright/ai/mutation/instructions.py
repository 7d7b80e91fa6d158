"""Closed instruction grammar for imperative edits.

Model-supplied operations are parsed into :class:`Instruction` values and
interpreted against the document accessor; nothing is ever evaluated.
Anything outside the grammar, and any value carrying a dynamic-evaluation,
timer, network or module-loading primitive, raises ``UnsafeInstruction``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from jsonschema import Draft7Validator

from ...editor.accessor import DocumentNode
from ..errors import UnsafeInstruction
from .tracker import InstrumentedAccessor, TrackedNode

LOGGER = logging.getLogger(__name__)

SET_CONTENT = "set_content"
SET_ATTRIBUTE = "set_attribute"
REMOVE_ATTRIBUTE = "remove_attribute"
SET_STYLE = "set_style"
ADD_CLASS = "add_class"
REMOVE_CLASS = "remove_class"
REMOVE = "remove"
REPLACE_WITH = "replace_with"
EMPTY = "empty"

OPERATIONS = (
    SET_CONTENT,
    SET_ATTRIBUTE,
    REMOVE_ATTRIBUTE,
    SET_STYLE,
    ADD_CLASS,
    REMOVE_CLASS,
    REMOVE,
    REPLACE_WITH,
    EMPTY,
)
DESTRUCTIVE_OPERATIONS = frozenset({REMOVE, REPLACE_WITH, EMPTY})

SELECTED_ELEMENT = "selected element"

# (label, pattern) pairs; matched against every value written into the document
DENYLIST: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("eval", re.compile(r"\beval\s*\(")),
    ("Function", re.compile(r"\bFunction\s*\(")),
    ("setTimeout", re.compile(r"\bsetTimeout\s*\(")),
    ("setInterval", re.compile(r"\bsetInterval\s*\(")),
    ("XMLHttpRequest", re.compile(r"XMLHttpRequest")),
    ("fetch", re.compile(r"\bfetch\s*\(")),
    ("import", re.compile(r"\bimport\s*\(|\bimport\s+[\w{}*,\s]+\s+from\s+['\"]")),
    ("require", re.compile(r"\brequire\s*\(")),
    ("script", re.compile(r"<\s*script", re.IGNORECASE)),
    ("javascript-url", re.compile(r"javascript\s*:", re.IGNORECASE)),
    ("inline-handler", re.compile(r"<[^>]*\son[a-z]+\s*=", re.IGNORECASE)),
)
_EVENT_HANDLER_ATTR = re.compile(r"^on[a-z]+$", re.IGNORECASE)

_TARGET_SCHEMA: dict[str, Any] = {
    "oneOf": [
        {
            "type": "object",
            "required": ["selector"],
            "properties": {"selector": {"type": "string", "minLength": 1}},
            "additionalProperties": False,
        },
        {
            "type": "object",
            "required": ["selected"],
            "properties": {"selected": {"const": True}},
            "additionalProperties": False,
        },
    ]
}


def _requires(op: str, *fields: str) -> dict[str, Any]:
    return {"if": {"properties": {"op": {"const": op}}}, "then": {"required": list(fields)}}


_INSTRUCTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["op", "target"],
    "properties": {
        "op": {"enum": list(OPERATIONS)},
        "target": _TARGET_SCHEMA,
        "value": {"type": "string"},
        "name": {"type": "string", "minLength": 1},
        "styles": {"type": "object", "additionalProperties": {"type": ["string", "number", "null"]}},
    },
    "additionalProperties": False,
    "allOf": [
        _requires(SET_CONTENT, "value"),
        _requires(SET_ATTRIBUTE, "name", "value"),
        _requires(REMOVE_ATTRIBUTE, "name"),
        _requires(SET_STYLE, "styles"),
        _requires(ADD_CLASS, "value"),
        _requires(REMOVE_CLASS, "value"),
        _requires(REPLACE_WITH, "value"),
    ],
}
_INSTRUCTION_VALIDATOR = Draft7Validator(_INSTRUCTION_SCHEMA)


@dataclass(frozen=True, slots=True)
class Target:
    """Either a CSS selector or the editor's current selection."""

    selector: str | None = None
    selected: bool = False

    def describe(self) -> str:
        return SELECTED_ELEMENT if self.selected else str(self.selector)


@dataclass(frozen=True, slots=True)
class Instruction:
    """One operation of the closed grammar."""

    op: str
    target: Target
    value: str | None = None
    name: str | None = None
    styles: Mapping[str, str] = field(default_factory=dict)

    @property
    def destructive(self) -> bool:
        return self.op in DESTRUCTIVE_OPERATIONS


def screen_text(text: str) -> None:
    """Raise ``UnsafeInstruction`` if *text* contains a denylisted primitive."""

    for label, pattern in DENYLIST:
        if pattern.search(text):
            raise UnsafeInstruction(
                detail=f"Denylisted pattern {label!r} found in model operations",
                pattern=label,
            )


def parse_operations(raw: Sequence[Mapping[str, Any]] | str) -> tuple[Instruction, ...]:
    """Parse model-supplied operations into instructions.

    A string payload is screened against the denylist first; if it is a
    JSON list it is parsed as such, otherwise it is rejected as outside the
    grammar.

    Raises:
        UnsafeInstruction: for denylisted values or anything outside the grammar.
    """

    if isinstance(raw, str):
        screen_text(raw)
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            raise UnsafeInstruction(detail="Operations were free-form code, not instruction objects") from None
        if not isinstance(decoded, list):
            raise UnsafeInstruction(detail="Operations payload must be a list of instruction objects")
        raw = decoded

    instructions = tuple(_parse_instruction(index, item) for index, item in enumerate(raw))
    if not instructions:
        raise UnsafeInstruction(detail="Operations payload was empty")
    return instructions


def _parse_instruction(index: int, item: Any) -> Instruction:
    if not isinstance(item, Mapping):
        raise UnsafeInstruction(detail=f"operations[{index}] is not an object")
    error = next(iter(sorted(_INSTRUCTION_VALIDATOR.iter_errors(item), key=lambda err: list(err.path))), None)
    if error is not None:
        location = "/".join(str(part) for part in error.path)
        suffix = f" ({location})" if location else ""
        raise UnsafeInstruction(detail=f"operations[{index}] outside the instruction grammar{suffix}: {error.message}")

    raw_target = item["target"]
    target = Target(selected=True) if raw_target.get("selected") else Target(selector=raw_target["selector"])
    styles = {str(key): "" if value is None else str(value) for key, value in (item.get("styles") or {}).items()}
    instruction = Instruction(
        op=item["op"],
        target=target,
        value=item.get("value"),
        name=item.get("name"),
        styles=styles,
    )
    _screen_instruction(instruction)
    return instruction


def _screen_instruction(instruction: Instruction) -> None:
    if instruction.name and instruction.op == SET_ATTRIBUTE and _EVENT_HANDLER_ATTR.match(instruction.name):
        raise UnsafeInstruction(
            detail=f"Event handler attribute {instruction.name!r} is not allowed",
            pattern="inline-handler",
        )
    for text in _written_values(instruction):
        screen_text(text)


def _written_values(instruction: Instruction) -> Iterable[str]:
    if instruction.value:
        yield instruction.value
    for name, value in instruction.styles.items():
        yield name
        yield value


def warn_destructive(instructions: Sequence[Instruction]) -> list[str]:
    """Log (never block) destructive operations; return the warnings."""

    warnings = [
        f"Operation {instruction.op} on {instruction.target.describe()} may remove or replace elements"
        for instruction in instructions
        if instruction.destructive
    ]
    if warnings:
        LOGGER.warning("Destructive operations detected: %s", warnings)
    return warnings


def resolve_targets(
    accessor: InstrumentedAccessor,
    target: Target,
    selection_scope: DocumentNode | None,
) -> list[TrackedNode]:
    """Return the tracked nodes an instruction applies to."""

    if selection_scope is not None:
        return [accessor.track(selection_scope)]
    if target.selected:
        node = accessor.get_selected_node()
        return [node] if node is not None else []
    return accessor.find_nodes(str(target.selector))


def execute(
    accessor: InstrumentedAccessor,
    instruction: Instruction,
    selection_scope: DocumentNode | None = None,
) -> int:
    """Interpret a single instruction; returns the number of target nodes."""

    nodes = resolve_targets(accessor, instruction.target, selection_scope)
    for node in nodes:
        _apply_to_node(node, instruction)
    return len(nodes)


def _apply_to_node(node: TrackedNode, instruction: Instruction) -> None:
    op = instruction.op
    if op == SET_CONTENT:
        node.set_content(instruction.value or "")
    elif op == SET_ATTRIBUTE:
        node.set_attribute(str(instruction.name), instruction.value or "")
    elif op == REMOVE_ATTRIBUTE:
        node.remove_attribute(str(instruction.name))
    elif op == SET_STYLE:
        node.set_style(instruction.styles)
    elif op == ADD_CLASS:
        node.add_class(instruction.value or "")
    elif op == REMOVE_CLASS:
        node.remove_class(instruction.value or "")
    elif op == REMOVE:
        node.remove()
    elif op == REPLACE_WITH:
        node.replace_with(instruction.value or "")
    elif op == EMPTY:
        node.empty()
    else:  # pragma: no cover - parse_operations rejects unknown ops
        raise UnsafeInstruction(detail=f"Unknown operation {op!r}")


__all__ = [
    "DENYLIST",
    "DESTRUCTIVE_OPERATIONS",
    "Instruction",
    "OPERATIONS",
    "Target",
    "execute",
    "parse_operations",
    "resolve_targets",
    "screen_text",
    "warn_destructive",
]
