"""Turn document trees into tagged translation units."""

from __future__ import annotations

import html
from typing import AbstractSet, Dict, Iterator, List, Optional, Tuple

from .errors import UnsupportedNodeKind
from .structures import (
    CONTAINER_KINDS,
    PASSTHROUGH_KINDS,
    ROOT_KINDS,
    VOID_KINDS,
    Element,
    Node,
    Text,
    TranslationUnit,
    TreePath,
    marker_kinds,
    resolve_path,
)

MARKER_NAME = "m"


def open_marker(index: int) -> str:
    return f"<{MARKER_NAME}{index}>"


def close_marker(index: int) -> str:
    return f"</{MARKER_NAME}{index}>"


def void_marker(index: int) -> str:
    return f"<{MARKER_NAME}{index}/>"


def escape_text(text: str) -> str:
    """Escape literal text so it cannot be read as a marker."""

    return html.escape(text, quote=False)


def has_translatable_text(node: Node, void_kinds: AbstractSet = VOID_KINDS) -> bool:
    """Return True when any text reachable outside void markers is non-blank."""

    if isinstance(node, Text):
        return bool(node.value.strip())
    if node.kind in void_kinds:
        return False
    return any(has_translatable_text(child, void_kinds) for child in node.children)


class StructuralEncoder:
    """Walks trees and encodes each translatable root as one unit.

    Unit ids are assigned sequentially across every root the encoder sees, so a
    single encoder instance should serve one translation run. With
    ``translate_alt_text`` images become paired markers around their alt text.
    """

    def __init__(self, first_id: int = 1, *, translate_alt_text: bool = False) -> None:
        self._next_id = first_id
        self.paired_kinds, self.void_kinds = marker_kinds(translate_alt_text)

    def iter_roots(self, tree: Element) -> Iterator[Tuple[TreePath, Element]]:
        """Yield translatable roots in pre-order with their child-index paths."""

        yield from self._walk(tree, ())

    def _walk(self, node: Element, path: TreePath) -> Iterator[Tuple[TreePath, Element]]:
        if node.kind in ROOT_KINDS:
            yield path, node
            return
        if node.kind in PASSTHROUGH_KINDS:
            return
        if node.kind not in CONTAINER_KINDS:
            raise UnsupportedNodeKind(node.kind)
        for index, child in enumerate(node.children):
            if isinstance(child, Element):
                yield from self._walk(child, path + (index,))

    def encode_root(
        self,
        tree: Element,
        path: TreePath,
        *,
        location: str = "",
    ) -> Optional[TranslationUnit]:
        """Encode the root at ``path``; return None when it has no text to translate."""

        root = resolve_path(tree, path)
        if root.kind not in ROOT_KINDS:
            raise UnsupportedNodeKind(root.kind, location)

        markers: Dict[int, Element] = {}
        parts: List[str] = []
        for child in root.children:
            self._encode_inline(child, parts, markers, location)

        if not has_translatable_text(root, self.void_kinds):
            return None

        unit = TranslationUnit(
            unit_id=self._next_id,
            tagged="".join(parts),
            markers=markers,
            tree=tree,
            path=path,
            location=location,
        )
        self._next_id += 1
        return unit

    def _encode_inline(
        self,
        node: Node,
        parts: List[str],
        markers: Dict[int, Element],
        location: str,
    ) -> None:
        if isinstance(node, Text):
            parts.append(escape_text(node.value))
            return

        if node.kind in self.void_kinds:
            index = len(markers) + 1
            markers[index] = node
            parts.append(void_marker(index))
            return

        if node.kind not in self.paired_kinds:
            raise UnsupportedNodeKind(node.kind, location)

        index = len(markers) + 1
        markers[index] = node
        parts.append(open_marker(index))
        for child in node.children:
            self._encode_inline(child, parts, markers, location)
        parts.append(close_marker(index))
