"""CommonMark <-> document tree conversion.

Parsing is delegated to markdown-it-py (CommonMark preset plus GFM tables and
strikethrough). Rendering writes normalised CommonMark back out of the tree:
the output is not byte-identical to the input, but parsing it again yields the
same tree. Reference-style links are written inline, emphasis prefers ``*``
and falls back to ``_`` or to bare ``<em>``-style tags where the flanking rules
leave no delimiter that parses, and such tag pairs read back as emphasis. List
markers, fence strings and setext underlines are kept.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from markdown_it import MarkdownIt
from markdown_it.common.utils import isMdAsciiPunct, isPunctChar, isWhiteSpace
from markdown_it.tree import SyntaxTreeNode

from .errors import UnsupportedNodeKind
from .structures import Element, Node, NodeKind, Text

logger = logging.getLogger(__name__)


def build_parser() -> MarkdownIt:
    return MarkdownIt("commonmark").enable(["table", "strikethrough"])


# --- Parsing ---------------------------------------------------------------


def parse_markdown(source: str, parser: Optional[MarkdownIt] = None) -> Element:
    """Parse CommonMark source into a DOCUMENT element."""

    md = parser or build_parser()
    tokens = md.parse(source)
    root = SyntaxTreeNode(tokens)
    lines = source.splitlines(keepends=True)
    return Element(
        kind=NodeKind.DOCUMENT,
        children=[_convert_block(child, lines) for child in root.children],
    )


def _source_slice(node: SyntaxTreeNode, lines: Sequence[str]) -> str:
    if not node.map:
        return node.content
    start, end = node.map
    return "".join(lines[start:end]).rstrip("\n")


def _inline_children(node: SyntaxTreeNode) -> List[Node]:
    """Convert the single ``inline`` child of a leaf block."""

    children: List[Node] = []
    for child in node.children:
        if child.type == "inline":
            children.extend(_convert_inlines(child.children))
    return children


def _list_is_tight(node: SyntaxTreeNode) -> bool:
    for item in node.children:
        for block in item.children:
            if block.type == "paragraph" and not block.hidden:
                return False
    return True


def _cell_alignment(node: SyntaxTreeNode) -> Optional[str]:
    style = node.attrs.get("style")
    if isinstance(style, str) and ":" in style:
        return style.split(":", 1)[1].strip()
    return None


def _convert_block(node: SyntaxTreeNode, lines: Sequence[str]) -> Element:
    kind = node.type

    if kind == "paragraph":
        return Element(NodeKind.PARAGRAPH, _inline_children(node))
    if kind == "heading":
        setext = node.markup if node.markup in ("=", "-") else None
        return Element(
            NodeKind.HEADING,
            _inline_children(node),
            {"level": int(node.tag[1:]), "setext": setext},
        )
    if kind == "blockquote":
        return Element(
            NodeKind.BLOCK_QUOTE,
            [_convert_block(child, lines) for child in node.children],
        )
    if kind in ("bullet_list", "ordered_list"):
        items = [
            Element(
                NodeKind.LIST_ITEM,
                [_convert_block(block, lines) for block in item.children],
            )
            for item in node.children
        ]
        attrs: Dict[str, object] = {"tight": _list_is_tight(node)}
        if kind == "bullet_list":
            attrs["marker"] = node.markup or "-"
            return Element(NodeKind.BULLET_LIST, items, attrs)
        attrs["start"] = int(node.attrs.get("start", 1))
        attrs["delimiter"] = node.markup or "."
        return Element(NodeKind.ORDERED_LIST, items, attrs)
    if kind == "fence":
        return Element(
            NodeKind.CODE_BLOCK,
            [],
            {"literal": node.content, "fence": node.markup, "info": node.info},
        )
    if kind == "code_block":
        return Element(
            NodeKind.CODE_BLOCK,
            [],
            {"literal": node.content, "fence": None, "info": ""},
        )
    if kind == "html_block":
        return Element(NodeKind.HTML_BLOCK, [], {"literal": node.content})
    if kind == "hr":
        return Element(NodeKind.THEMATIC_BREAK, [], {"marker": node.markup[:1] or "-"})
    if kind == "table":
        return Element(
            NodeKind.TABLE, [_convert_block(child, lines) for child in node.children]
        )
    if kind in ("thead", "tbody"):
        section = NodeKind.TABLE_HEAD if kind == "thead" else NodeKind.TABLE_BODY
        return Element(section, [_convert_block(child, lines) for child in node.children])
    if kind == "tr":
        return Element(
            NodeKind.TABLE_ROW, [_convert_block(child, lines) for child in node.children]
        )
    if kind in ("th", "td"):
        return Element(
            NodeKind.TABLE_CELL,
            _inline_children(node),
            {"header": kind == "th", "align": _cell_alignment(node)},
        )

    logger.debug("Keeping unknown block %r verbatim", kind)
    return Element(NodeKind.OPAQUE, [], {"literal": _source_slice(node, lines), "block": True})


_HTML_FORM_PATTERN = re.compile(r"<(/?)(em|strong|del)>")
_HTML_FORM_KINDS = {
    "em": NodeKind.EMPHASIS,
    "strong": NodeKind.STRONG,
    "del": NodeKind.STRIKETHROUGH,
}


def _html_form(node: Node) -> Optional[Tuple[bool, str]]:
    if not isinstance(node, Element) or node.kind is not NodeKind.HTML_INLINE:
        return None
    match = _HTML_FORM_PATTERN.fullmatch(node.attrs.get("literal", ""))
    if not match:
        return None
    return bool(match.group(1)), match.group(2)


def _closing_form(nodes: Sequence[Node], start: int, tag: str) -> Optional[int]:
    depth = 0
    for index in range(start + 1, len(nodes)):
        form = _html_form(nodes[index])
        if form is None or form[1] != tag:
            continue
        if not form[0]:
            depth += 1
        elif depth:
            depth -= 1
        else:
            return index
    return None


def _pair_html_forms(nodes: List[Node]) -> List[Node]:
    """Read bare ``<em>``, ``<strong>`` and ``<del>`` tag pairs as their elements."""

    result: List[Node] = []
    index = 0
    while index < len(nodes):
        form = _html_form(nodes[index])
        if form is not None and not form[0]:
            close = _closing_form(nodes, index, form[1])
            if close is not None:
                children = _pair_html_forms(nodes[index + 1 : close])
                result.append(Element(_HTML_FORM_KINDS[form[1]], children))
                index = close + 1
                continue
        result.append(nodes[index])
        index += 1
    return result


def _convert_inlines(nodes: Sequence[SyntaxTreeNode]) -> List[Node]:
    result: List[Node] = []
    for node in nodes:
        converted = _convert_inline(node)
        if isinstance(converted, Text):
            if not converted.value:
                continue
            if result and isinstance(result[-1], Text):
                result[-1] = Text(result[-1].value + converted.value)
                continue
        result.append(converted)
    return _pair_html_forms(result)


def _convert_inline(node: SyntaxTreeNode) -> Node:
    kind = node.type

    if kind in ("text", "text_special"):
        return Text(node.content)
    if kind == "softbreak":
        return Element(NodeKind.SOFT_BREAK)
    if kind == "hardbreak":
        return Element(NodeKind.LINE_BREAK)
    if kind == "em":
        return Element(NodeKind.EMPHASIS, _convert_inlines(node.children))
    if kind == "strong":
        return Element(NodeKind.STRONG, _convert_inlines(node.children))
    if kind == "s":
        return Element(NodeKind.STRIKETHROUGH, _convert_inlines(node.children))
    if kind == "link":
        if node.markup == "autolink":
            literal = "".join(child.content for child in node.children)
            return Element(NodeKind.OPAQUE, [], {"literal": f"<{literal}>"})
        return Element(
            NodeKind.LINK,
            _convert_inlines(node.children),
            {"href": node.attrs.get("href", ""), "title": node.attrs.get("title")},
        )
    if kind == "image":
        return Element(
            NodeKind.IMAGE,
            _convert_inlines(node.children),
            {"src": node.attrs.get("src", ""), "title": node.attrs.get("title")},
        )
    if kind == "code_inline":
        return Element(
            NodeKind.CODE_SPAN, [], {"literal": node.content, "markup": node.markup}
        )
    if kind == "html_inline":
        return Element(NodeKind.HTML_INLINE, [], {"literal": node.content})

    logger.debug("Keeping unknown inline %r verbatim", kind)
    return Element(NodeKind.OPAQUE, [], {"literal": node.content or node.markup})


# --- Rendering -------------------------------------------------------------

_ENTITY_PATTERN = re.compile(
    r"&(?:#[0-9]{1,7}|#[xX][0-9a-fA-F]{1,6}|[A-Za-z][A-Za-z0-9]{1,31});"
)
_ALWAYS_ESCAPED = frozenset("\\`*[]~|")
_LINE_START_PATTERN = re.compile(r"[>=-]|#{1,6}(?=\s|$)|\+(?=\s|$)|\d{1,9}[.)](?=\s|$)")


def escape_text(text: str) -> str:
    """Backslash-escape characters that would otherwise start markup."""

    text = text.replace("\n", " ")
    out: List[str] = []
    for index, char in enumerate(text):
        if char in _ALWAYS_ESCAPED:
            out.append("\\" + char)
        elif char == "_":
            before = text[index - 1] if index else ""
            after = text[index + 1] if index + 1 < len(text) else ""
            if before.isalnum() and after.isalnum():
                out.append(char)
            else:
                out.append("\\_")
        elif char == "<" and re.match(r"[A-Za-z/!?]", text[index + 1 : index + 2]):
            out.append("\\<")
        elif char == "&" and _ENTITY_PATTERN.match(text, index):
            out.append("\\&")
        else:
            out.append(char)
    return "".join(out)


def _escape_line_start(line: str) -> str:
    stripped = line.strip(" \t")
    match = _LINE_START_PATTERN.match(stripped)
    if not match:
        return stripped
    token = match.group(0)
    if token[0].isdigit():
        return token[:-1] + "\\" + token[-1] + stripped[len(token):]
    return "\\" + stripped


def _render_destination(url: str) -> str:
    if not url or re.search(r"[\s<>()]", url):
        return "<" + url.replace("<", "\\<").replace(">", "\\>") + ">"
    return url


def _render_title(title: Optional[str]) -> str:
    if not title:
        return ""
    return ' "' + title.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _render_code_span(literal: str, markup: str) -> str:
    runs = {len(run) for run in re.findall(r"`+", literal)}
    length = len(markup)
    while length in runs:
        length += 1
    fence = "`" * length
    padded = literal
    if literal and (
        literal[0] == "`"
        or literal[-1] == "`"
        or (literal[0] == " " and literal[-1] == " " and literal.strip(" "))
    ):
        padded = f" {literal} "
    return f"{fence}{padded}{fence}"


# Delimiter forms tried in order, then the inline HTML tag used when no
# delimiter can both open and close at that position.
_DELIMITED_FORMS: Dict[NodeKind, Tuple[Tuple[str, ...], str]] = {
    NodeKind.EMPHASIS: (("*", "_"), "em"),
    NodeKind.STRONG: (("**", "__"), "strong"),
    NodeKind.STRIKETHROUGH: (("~~",), "del"),
}
# Stand-in for the first character of a delimited sibling or parent, which is
# always punctuation whatever form it ends up using.
_MARKUP_EDGE = "<"


def _is_space(char: str) -> bool:
    # Line boundaries count as whitespace.
    return not char or isWhiteSpace(ord(char))


def _is_punct(char: str) -> bool:
    return bool(char) and (isMdAsciiPunct(ord(char)) or isPunctChar(char))


def _flanking(before: str, after: str) -> Tuple[bool, bool]:
    left = not (
        _is_space(after) or (_is_punct(after) and not (_is_space(before) or _is_punct(before)))
    )
    right = not (
        _is_space(before) or (_is_punct(before) and not (_is_space(after) or _is_punct(after)))
    )
    return left, right


def _delimiter_fits(delimiter: str, before: str, first: str, last: str, after: str) -> bool:
    """Return True when ``delimiter`` opens before ``first`` and closes after ``last``.

    Follows the flanking rules markdown-it applies when scanning a delimiter
    run. A delimiter touching a run of the same character would merge with it,
    so that never fits.
    """

    marker = delimiter[0]
    if marker in (before, first, last, after):
        return False
    split_word = marker != "_"
    left, right = _flanking(before, first)
    can_open = left and (split_word or not right or _is_punct(before))
    left, right = _flanking(last, after)
    can_close = right and (split_word or not left or _is_punct(after))
    return can_open and can_close


def _render_delimited(node: Element, before: str, after: str) -> str:
    forms, tag = _DELIMITED_FORMS[node.kind]
    inner = render_inlines(node.children, _MARKUP_EDGE, _MARKUP_EDGE)
    stripped = inner.strip(" ")
    if not stripped:
        return f"<{tag}>{inner}</{tag}>"
    # Delimiters next to whitespace do not open or close emphasis.
    leading = inner[: len(inner) - len(inner.lstrip(" "))]
    trailing = inner[len(inner.rstrip(" ")) :]
    if leading:
        before = " "
    if trailing:
        after = " "
    for delimiter in forms:
        if _delimiter_fits(delimiter, before, stripped[0], stripped[-1], after):
            return f"{leading}{delimiter}{stripped}{delimiter}{trailing}"
    return f"{leading}<{tag}>{stripped}</{tag}>{trailing}"


def _next_edge(rendered: Sequence[Optional[str]], default: str) -> str:
    for part in rendered:
        if part is None:
            return _MARKUP_EDGE
        if part:
            return part[0]
    return default


def render_inlines(nodes: Sequence[Node], before: str = " ", after: str = " ") -> str:
    """Render inline nodes between the characters ``before`` and ``after``."""

    rendered: List[Optional[str]] = []
    for index, node in enumerate(nodes):
        if isinstance(node, Text):
            text = escape_text(node.value)
            following = nodes[index + 1] if index + 1 < len(nodes) else None
            if isinstance(following, Element) and following.kind is NodeKind.SOFT_BREAK:
                text = text.rstrip(" ")
            elif isinstance(following, Element) and following.kind is NodeKind.LINK:
                if text.endswith("!"):
                    text = text[:-1] + "\\!"
            rendered.append(text)
        elif node.kind in _DELIMITED_FORMS:
            rendered.append(None)
        else:
            rendered.append(_render_inline(node))

    parts: List[str] = []
    previous = before
    for index, node in enumerate(nodes):
        part = rendered[index]
        if part is None:
            following = _next_edge(rendered[index + 1 :], after)
            part = _render_delimited(node, previous, following)
        if part:
            previous = part[-1]
        parts.append(part)
    return "".join(parts)


def _render_inline(node: Element) -> str:
    kind = node.kind
    if kind in _DELIMITED_FORMS:
        return _render_delimited(node, " ", " ")
    if kind is NodeKind.LINK:
        inner = render_inlines(node.children, "[", "]")
        destination = _render_destination(node.attrs.get("href", ""))
        return f"[{inner}]({destination}{_render_title(node.attrs.get('title'))})"
    if kind is NodeKind.IMAGE:
        inner = render_inlines(node.children, "[", "]")
        destination = _render_destination(node.attrs.get("src", ""))
        return f"![{inner}]({destination}{_render_title(node.attrs.get('title'))})"
    if kind is NodeKind.CODE_SPAN:
        return _render_code_span(node.attrs.get("literal", ""), node.attrs.get("markup") or "`")
    if kind in (NodeKind.HTML_INLINE, NodeKind.OPAQUE):
        return node.attrs.get("literal", "")
    if kind is NodeKind.LINE_BREAK:
        return "\\\n"
    if kind is NodeKind.SOFT_BREAK:
        return "\n"
    if kind is NodeKind.RUN:
        return render_inlines(node.children)
    raise UnsupportedNodeKind(kind)


def _render_paragraph(node: Element, tight: bool) -> str:
    rendered = render_inlines(node.children)
    return "\n".join(_escape_line_start(line) for line in rendered.split("\n"))


def _render_heading(node: Element, tight: bool) -> str:
    level = int(node.attrs.get("level", 1))
    setext = node.attrs.get("setext")
    rendered = render_inlines(node.children)
    if setext and level <= 2:
        body = "\n".join(_escape_line_start(line) for line in rendered.split("\n"))
        return f"{body}\n{setext * 3}"
    body = _escape_line_start(rendered.replace("\n", " ")) if rendered else ""
    if body.endswith("#"):
        body = body[:-1] + "\\#"
    return f"{'#' * level} {body}".rstrip()


def _prefix_lines(text: str, first: str, rest: str) -> str:
    lines = text.split("\n")
    out = []
    for index, line in enumerate(lines):
        prefix = first if index == 0 else rest
        out.append(prefix + line if line else prefix.rstrip())
    return "\n".join(out)


def _render_block_quote(node: Element, tight: bool) -> str:
    inner = render_blocks(node.children, tight=False)
    if not inner:
        return ">"
    return _prefix_lines(inner, "> ", "> ")


def _render_list(node: Element, tight: bool) -> str:
    list_tight = bool(node.attrs.get("tight", True))
    ordered = node.kind is NodeKind.ORDERED_LIST
    start = int(node.attrs.get("start", 1))
    delimiter = node.attrs.get("delimiter", ".")
    bullet = node.attrs.get("marker", "-")

    items: List[str] = []
    for offset, item in enumerate(node.children):
        marker = f"{start + offset}{delimiter}" if ordered else bullet
        if not isinstance(item, Element):
            continue
        content = render_blocks(item.children, tight=list_tight)
        if not content:
            items.append(marker)
            continue
        indent = " " * (len(marker) + 1)
        items.append(_prefix_lines(content, marker + " ", indent))
    return ("\n" if list_tight else "\n\n").join(items)


def _render_code_block(node: Element, tight: bool) -> str:
    literal = node.attrs.get("literal", "")
    fence = node.attrs.get("fence")
    if not fence:
        body = literal.rstrip("\n")
        return "\n".join("    " + line if line else "" for line in body.split("\n"))
    fence_char = fence[0]
    longest = max(
        (len(run) for run in re.findall(rf"^ {{0,3}}({re.escape(fence_char)}+)", literal, re.M)),
        default=0,
    )
    if longest >= len(fence):
        fence = fence_char * (longest + 1)
    if literal and not literal.endswith("\n"):
        literal += "\n"
    return f"{fence}{node.attrs.get('info', '')}\n{literal}{fence}"


def _render_literal_block(node: Element, tight: bool) -> str:
    return node.attrs.get("literal", "").rstrip("\n")


def _render_thematic_break(node: Element, tight: bool) -> str:
    return (node.attrs.get("marker") or "-") * 3


def _render_table(node: Element, tight: bool) -> str:
    rows: List[Element] = []
    header_count = 0
    for section in node.children:
        if not isinstance(section, Element):
            continue
        section_rows = [row for row in section.children if isinstance(row, Element)]
        if section.kind is NodeKind.TABLE_HEAD:
            header_count += len(section_rows)
        rows.extend(section_rows)
    if not rows:
        return ""

    def render_row(row: Element) -> str:
        cells = [
            render_inlines(cell.children).strip().replace("|", "\\|")
            for cell in row.children
            if isinstance(cell, Element)
        ]
        return "| " + " | ".join(cells) + " |"

    header = rows[0]
    delimiters = []
    for cell in header.children:
        align = cell.attrs.get("align") if isinstance(cell, Element) else None
        delimiters.append(
            {"left": ":---", "right": "---:", "center": ":---:"}.get(align or "", "---")
        )
    lines = [render_row(header), "| " + " | ".join(delimiters) + " |"]
    lines.extend(render_row(row) for row in rows[max(header_count, 1):])
    return "\n".join(lines)


def _render_opaque(node: Element, tight: bool) -> str:
    return node.attrs.get("literal", "")


BlockRenderer = Callable[[Element, bool], str]

_BLOCK_RENDERERS: Dict[NodeKind, BlockRenderer] = {
    NodeKind.PARAGRAPH: _render_paragraph,
    NodeKind.HEADING: _render_heading,
    NodeKind.BLOCK_QUOTE: _render_block_quote,
    NodeKind.BULLET_LIST: _render_list,
    NodeKind.ORDERED_LIST: _render_list,
    NodeKind.CODE_BLOCK: _render_code_block,
    NodeKind.HTML_BLOCK: _render_literal_block,
    NodeKind.THEMATIC_BREAK: _render_thematic_break,
    NodeKind.TABLE: _render_table,
    NodeKind.OPAQUE: _render_opaque,
}


def render_blocks(nodes: Sequence[Node], *, tight: bool = False) -> str:
    rendered: List[str] = []
    for node in nodes:
        if not isinstance(node, Element):
            rendered.append(escape_text(node.value))
            continue
        renderer = _BLOCK_RENDERERS.get(node.kind)
        if renderer is None:
            raise UnsupportedNodeKind(node.kind)
        rendered.append(renderer(node, tight))
    return ("\n" if tight else "\n\n").join(rendered)


def render_markdown(tree: Element) -> str:
    """Render a DOCUMENT element back to CommonMark text."""

    if tree.kind is not NodeKind.DOCUMENT:
        raise UnsupportedNodeKind(tree.kind)
    body = render_blocks(tree.children)
    return body + "\n" if body else ""
