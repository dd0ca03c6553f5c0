"""Document loading, front matter handling, and reinsertion utilities."""

from __future__ import annotations

import logging
import pathlib
import re
import tomllib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple
from zipfile import BadZipFile

import tomli_w
import yaml
from openpyxl import load_workbook
from openpyxl.cell.rich_text import CellRichText, TextBlock
from openpyxl.utils.exceptions import InvalidFileException

from .errors import DocumentFormatError, UnsupportedFileTypeError
from .markdown import parse_markdown, render_markdown
from .structures import Element, Node, NodeKind, Text, TreePath, plain_text

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIXES = {".md", ".markdown"}
SPREADSHEET_SUFFIXES = {".xlsx"}
SUPPORTED_SUFFIXES = MARKDOWN_SUFFIXES | SPREADSHEET_SUFFIXES

# Front matter keys whose string values are translated on request.
FRONT_MATTER_KEYS = ("title", "description")
FRONT_MATTER_EXTRA_KEYS = ("time",)


# --- Front matter ----------------------------------------------------------

FRONT_MATTER_PATTERN = re.compile(
    r"\A(?P<delimiter>\+\+\+|---)[ \t]*\r?\n(?P<raw>.*?)^(?P=delimiter)[ \t]*(?:\r?\n|\Z)",
    re.DOTALL | re.MULTILINE,
)


@dataclass
class FrontMatter:
    """Front matter block split off a markdown file, kept byte-identical."""

    delimiter: str
    raw: str

    @property
    def format(self) -> str:
        return "toml" if self.delimiter == "+++" else "yaml"

    def render(self) -> str:
        return f"{self.delimiter}\n{self.raw}{self.delimiter}\n"


def split_front_matter(text: str) -> Tuple[Optional[FrontMatter], str]:
    """Return (front matter, body); TOML front matter must be terminated."""

    match = FRONT_MATTER_PATTERN.match(text)
    if match:
        front = FrontMatter(delimiter=match.group("delimiter"), raw=match.group("raw"))
        return front, text[match.end():]
    if text.startswith("+++"):
        raise DocumentFormatError("Front matter starting with +++ is never closed.")
    return None, text


def _front_matter_slots(data: dict) -> List[Tuple[dict, str]]:
    slots: List[Tuple[dict, str]] = []
    for key in FRONT_MATTER_KEYS:
        if isinstance(data.get(key), str):
            slots.append((data, key))
    extra = data.get("extra")
    if isinstance(extra, dict):
        for key in FRONT_MATTER_EXTRA_KEYS:
            if isinstance(extra.get(key), str):
                slots.append((extra, key))
    return slots


def load_front_matter(front: FrontMatter) -> dict:
    try:
        if front.format == "toml":
            data = tomllib.loads(front.raw)
        else:
            data = yaml.safe_load(front.raw)
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        raise DocumentFormatError(f"Front matter could not be parsed: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DocumentFormatError("Front matter must be a mapping.")
    return data


def dump_front_matter(front: FrontMatter, data: dict) -> FrontMatter:
    if front.format == "toml":
        raw = tomli_w.dumps(data)
    else:
        raw = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    return FrontMatter(delimiter=front.delimiter, raw=raw)


# --- Shortcodes ------------------------------------------------------------

_SHORTCODE_PATTERNS = (
    (re.compile(r"\{\{(.*?)(?:\}\}|\Z)", re.DOTALL), "<!--{{{{{}}}}}-->"),
    (re.compile(r"\{%(.*?)(?:%\}|\Z)", re.DOTALL), "<!--{{%{}%}}-->"),
)
_ESCAPED_SHORTCODE_PATTERNS = (
    (re.compile(r"<!--\{%(.*?)%\}-->", re.DOTALL), "{{%{}%}}"),
    (re.compile(r"<!--\{\{(.*?)\}\}-->", re.DOTALL), "{{{{{}}}}}"),
)


def escape_shortcodes(text: str) -> str:
    """Hide {{ ... }} and {% ... %} shortcodes inside HTML comments."""

    for pattern, template in _SHORTCODE_PATTERNS:
        text = pattern.sub(lambda match: template.format(match.group(1)), text)
    return text


def unescape_shortcodes(text: str) -> str:
    """Restore shortcodes hidden by escape_shortcodes."""

    for pattern, template in _ESCAPED_SHORTCODE_PATTERNS:
        text = pattern.sub(lambda match: template.format(match.group(1)), text)
    return text


# --- Handlers --------------------------------------------------------------


def describe_root(root: Element, path: TreePath) -> str:
    position = ".".join(str(index + 1) for index in path) or "root"
    return f"{root.kind.value.replace('_', ' ')} {position}"


class BaseDocumentHandler(ABC):
    """Common base class for document handlers."""

    document_type = "base"

    def __init__(self, source_path: pathlib.Path):
        self.source_path = source_path

    @abstractmethod
    def trees(self) -> List[Tuple[Element, str]]:
        """Return the document trees with a location prefix for each."""

    @abstractmethod
    def save(self, destination: pathlib.Path) -> None:
        """Persist the translated document."""

    def front_matter_texts(self) -> List[str]:
        """Strings outside the trees that may be translated."""

        return []

    def apply_front_matter(self, translated: List[str]) -> None:
        """Write back translations for front_matter_texts, in the same order."""


class MarkdownDocumentHandler(BaseDocumentHandler):
    """Parses a CommonMark file and writes the translated tree back."""

    document_type = "markdown"

    def __init__(self, source_path: pathlib.Path, *, escape_codes: bool = True):
        super().__init__(source_path)
        self.escape_codes = escape_codes
        try:
            text = source_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise DocumentFormatError(f"{source_path} is not valid UTF-8: {exc}") from exc
        self.front_matter, body = split_front_matter(text)
        if escape_codes:
            body = escape_shortcodes(body)
        self.tree = parse_markdown(body)
        self._front_data: Optional[dict] = None
        self._front_slots: List[Tuple[dict, str]] = []

    def trees(self) -> List[Tuple[Element, str]]:
        return [(self.tree, "")]

    def render(self) -> str:
        body = render_markdown(self.tree)
        if self.escape_codes:
            body = unescape_shortcodes(body)
        if self.front_matter is None:
            return body
        return self.front_matter.render() + "\n" + body

    def save(self, destination: pathlib.Path) -> None:
        destination.write_text(self.render(), encoding="utf-8")

    def front_matter_texts(self) -> List[str]:
        if self.front_matter is None:
            return []
        self._front_data = load_front_matter(self.front_matter)
        self._front_slots = _front_matter_slots(self._front_data)
        return [container[key] for container, key in self._front_slots]

    def apply_front_matter(self, translated: List[str]) -> None:
        if self.front_matter is None or self._front_data is None:
            return
        for (container, key), value in zip(self._front_slots, translated):
            container[key] = value
        self.front_matter = dump_front_matter(self.front_matter, self._front_data)


def cell_to_tree(value: Any) -> Optional[Element]:
    """Build a CELL tree for a string or rich-text cell value, else None."""

    if isinstance(value, CellRichText):
        children: List[Node] = []
        for block in value:
            if isinstance(block, TextBlock):
                runs: List[Node] = [Text(block.text)] if block.text else []
                children.append(Element(NodeKind.RUN, runs, {"font": block.font}))
            elif block:
                children.append(Text(str(block)))
        return Element(NodeKind.CELL, children)
    if isinstance(value, str):
        if value.startswith("="):
            return None
        return Element(NodeKind.CELL, [Text(value)] if value else [])
    return None


def tree_to_value(tree: Element) -> Any:
    """Inverse of cell_to_tree."""

    if all(isinstance(child, Text) for child in tree.children):
        return plain_text(tree)
    blocks: List[Any] = []
    for child in tree.children:
        if isinstance(child, Text):
            blocks.append(child.value)
        elif child.kind is NodeKind.RUN:
            blocks.append(TextBlock(child.attrs.get("font"), plain_text(child)))
        else:
            blocks.append(plain_text(child))
    return CellRichText(blocks)


class SpreadsheetDocumentHandler(BaseDocumentHandler):
    """Treats every string cell of a workbook as its own tree."""

    document_type = "spreadsheet"

    def __init__(self, source_path: pathlib.Path):
        super().__init__(source_path)
        try:
            self.workbook = load_workbook(str(source_path), rich_text=True)
        except (InvalidFileException, BadZipFile, KeyError) as exc:
            raise DocumentFormatError(f"{source_path} is not a readable workbook: {exc}") from exc
        self.cells: List[Tuple[Any, Element, str]] = []
        for sheet in self.workbook.worksheets:
            for row in sheet.iter_rows():
                for cell in row:
                    if cell.data_type == "f":
                        continue
                    tree = cell_to_tree(cell.value)
                    if tree is not None:
                        self.cells.append((cell, tree, f"{sheet.title}!{cell.coordinate}"))
        logger.debug("Loaded %d text cells from %s", len(self.cells), source_path)

    def trees(self) -> List[Tuple[Element, str]]:
        return [(tree, location) for _, tree, location in self.cells]

    def save(self, destination: pathlib.Path) -> None:
        for cell, tree, _ in self.cells:
            cell.value = tree_to_value(tree)
        self.workbook.save(str(destination))


def is_supported(path: pathlib.Path) -> bool:
    return path.suffix.lower() in SUPPORTED_SUFFIXES


def iter_supported_files(directory: pathlib.Path) -> Iterable[pathlib.Path]:
    for path in sorted(directory.rglob("*")):
        if path.is_file() and is_supported(path):
            yield path


def detect_handler(
    path: pathlib.Path,
    *,
    escape_codes: bool = True,
) -> Tuple[str, BaseDocumentHandler]:
    """Select an appropriate handler for the provided file."""

    suffix = path.suffix.lower()
    if suffix in MARKDOWN_SUFFIXES:
        handler: BaseDocumentHandler = MarkdownDocumentHandler(path, escape_codes=escape_codes)
        return handler.document_type, handler
    if suffix in SPREADSHEET_SUFFIXES:
        handler = SpreadsheetDocumentHandler(path)
        return handler.document_type, handler
    raise UnsupportedFileTypeError(
        "This file type isn't supported. Please use .md, .markdown or .xlsx."
    )
