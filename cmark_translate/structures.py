"""Core data structures for the translator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Tuple, Union


class NodeKind(Enum):
    """Closed set of structural node kinds."""

    # block containers
    DOCUMENT = "document"
    BLOCK_QUOTE = "block_quote"
    BULLET_LIST = "bullet_list"
    ORDERED_LIST = "ordered_list"
    LIST_ITEM = "list_item"
    TABLE = "table"
    TABLE_HEAD = "table_head"
    TABLE_BODY = "table_body"
    TABLE_ROW = "table_row"

    # translatable roots
    PARAGRAPH = "paragraph"
    HEADING = "heading"
    TABLE_CELL = "table_cell"
    CELL = "cell"

    # block passthrough
    CODE_BLOCK = "code_block"
    HTML_BLOCK = "html_block"
    THEMATIC_BREAK = "thematic_break"

    # inline
    EMPHASIS = "emphasis"
    STRONG = "strong"
    STRIKETHROUGH = "strikethrough"
    LINK = "link"
    RUN = "run"
    IMAGE = "image"
    CODE_SPAN = "code_span"
    HTML_INLINE = "html_inline"
    LINE_BREAK = "line_break"
    SOFT_BREAK = "soft_break"

    OPAQUE = "opaque"


CONTAINER_KINDS = frozenset(
    {
        NodeKind.DOCUMENT,
        NodeKind.BLOCK_QUOTE,
        NodeKind.BULLET_LIST,
        NodeKind.ORDERED_LIST,
        NodeKind.LIST_ITEM,
        NodeKind.TABLE,
        NodeKind.TABLE_HEAD,
        NodeKind.TABLE_BODY,
        NodeKind.TABLE_ROW,
    }
)
ROOT_KINDS = frozenset(
    {NodeKind.PARAGRAPH, NodeKind.HEADING, NodeKind.TABLE_CELL, NodeKind.CELL}
)
PASSTHROUGH_KINDS = frozenset(
    {NodeKind.CODE_BLOCK, NodeKind.HTML_BLOCK, NodeKind.THEMATIC_BREAK, NodeKind.OPAQUE}
)
# Inline kinds whose children are translated along with the surrounding text.
PAIRED_KINDS = frozenset(
    {
        NodeKind.EMPHASIS,
        NodeKind.STRONG,
        NodeKind.STRIKETHROUGH,
        NodeKind.LINK,
        NodeKind.RUN,
    }
)
# Inline kinds carried through translation as a single self-closing marker.
VOID_KINDS = frozenset(
    {
        NodeKind.IMAGE,
        NodeKind.CODE_SPAN,
        NodeKind.HTML_INLINE,
        NodeKind.LINE_BREAK,
        NodeKind.SOFT_BREAK,
        NodeKind.OPAQUE,
    }
)


def marker_kinds(
    translate_alt_text: bool = False,
) -> Tuple[FrozenSet[NodeKind], FrozenSet[NodeKind]]:
    """Return the (paired, void) inline kinds; images are paired when alt text is translated."""

    if translate_alt_text:
        return PAIRED_KINDS | {NodeKind.IMAGE}, VOID_KINDS - {NodeKind.IMAGE}
    return PAIRED_KINDS, VOID_KINDS


@dataclass
class Text:
    """A leaf holding literal, translatable text."""

    value: str


@dataclass
class Element:
    """A structural node: kind, attributes, and ordered children."""

    kind: NodeKind
    children: List["Node"] = field(default_factory=list)
    attrs: Dict[str, Any] = field(default_factory=dict)

    def shallow_copy(self) -> "Element":
        """Return a childless copy carrying the same kind and attributes."""

        return Element(kind=self.kind, children=[], attrs=dict(self.attrs))


Node = Union[Text, Element]
TreePath = Tuple[int, ...]


def resolve_path(tree: Element, path: TreePath) -> Element:
    """Follow child indices from the tree root to an element."""

    node: Node = tree
    for index in path:
        if not isinstance(node, Element):
            raise IndexError(f"Path {path} crosses a text leaf.")
        node = node.children[index]
    if not isinstance(node, Element):
        raise IndexError(f"Path {path} does not point at an element.")
    return node


def plain_text(node: Node) -> str:
    """Concatenate every text leaf below a node."""

    if isinstance(node, Text):
        return node.value
    return "".join(plain_text(child) for child in node.children)


@dataclass
class TranslationUnit:
    """One root-level translatable region, encoded as a tagged string."""

    unit_id: int
    tagged: str
    markers: Dict[int, Element]
    tree: Element
    path: TreePath
    location: str

    @property
    def size(self) -> int:
        return len(self.tagged)


@dataclass
class Batch:
    """A batch of units constrained by character and unit limits."""

    batch_id: int
    units: List[TranslationUnit]

    @property
    def size(self) -> int:
        return sum(unit.size for unit in self.units)

    @property
    def texts(self) -> List[str]:
        return [unit.tagged for unit in self.units]
