"""Rebuild document subtrees from translated tagged strings."""

from __future__ import annotations

import copy
import html
import re
from typing import List, Set, Tuple

from .encoder import MARKER_NAME
from .errors import MalformedTranslationResponse
from .structures import Element, Node, Text, TranslationUnit, marker_kinds, resolve_path

MARKER_PATTERN = re.compile(
    rf"<(?P<closing>/)?{MARKER_NAME}(?P<index>\d+)\s*(?P<void>/)?>"
)


def _append_text(children: List[Node], raw: str) -> None:
    text = html.unescape(raw)
    if not text:
        return
    if children and isinstance(children[-1], Text):
        children[-1] = Text(children[-1].value + text)
    else:
        children.append(Text(text))


class StructuralDecoder:
    """Parses translated strings and splices them into their trees.

    Only marker indices are trusted: the service may move markers around the
    words it translates, but every index assigned by the encoder must come back
    exactly once and in a properly nested shape.
    """

    def __init__(self, *, translate_alt_text: bool = False) -> None:
        self.paired_kinds, self.void_kinds = marker_kinds(translate_alt_text)

    def decode(self, unit: TranslationUnit, translated: str) -> List[Node]:
        """Return the rebuilt children of the unit's root."""

        children: List[Node] = []
        stack: List[Tuple[int, Element]] = []
        seen: Set[int] = set()
        cursor = 0

        def current() -> List[Node]:
            return stack[-1][1].children if stack else children

        for match in MARKER_PATTERN.finditer(translated):
            _append_text(current(), translated[cursor:match.start()])
            cursor = match.end()

            index = int(match.group("index"))
            closing = match.group("closing") is not None
            void = match.group("void") is not None

            if closing:
                if void:
                    raise MalformedTranslationResponse(
                        unit.unit_id, f"marker {index} is both closing and self-closing"
                    )
                if not stack or stack[-1][0] != index:
                    raise MalformedTranslationResponse(
                        unit.unit_id, f"closing marker {index} does not match an open marker"
                    )
                stack.pop()
                continue

            original = unit.markers.get(index)
            if original is None:
                raise MalformedTranslationResponse(
                    unit.unit_id, f"unknown marker index {index}"
                )
            if index in seen:
                raise MalformedTranslationResponse(
                    unit.unit_id, f"marker {index} appears more than once"
                )
            seen.add(index)

            if void:
                if original.kind not in self.void_kinds:
                    raise MalformedTranslationResponse(
                        unit.unit_id, f"marker {index} lost its content"
                    )
                current().append(copy.deepcopy(original))
                continue

            if original.kind not in self.paired_kinds:
                raise MalformedTranslationResponse(
                    unit.unit_id, f"marker {index} must be self-closing"
                )
            element = original.shallow_copy()
            current().append(element)
            stack.append((index, element))

        _append_text(current(), translated[cursor:])

        if stack:
            raise MalformedTranslationResponse(
                unit.unit_id, f"marker {stack[-1][0]} is never closed"
            )
        missing = sorted(set(unit.markers) - seen)
        if missing:
            raise MalformedTranslationResponse(
                unit.unit_id,
                "missing markers " + ", ".join(str(index) for index in missing),
            )
        return children

    def splice(self, unit: TranslationUnit, children: List[Node]) -> None:
        """Replace the content of the unit's root, leaving the rest of the tree alone."""

        root = resolve_path(unit.tree, unit.path)
        root.children = children

    def apply(self, unit: TranslationUnit, translated: str) -> None:
        self.splice(unit, self.decode(unit, translated))
