"""Glossary file reader.

A glossary file is a table whose first row holds language codes, one column
per language. Every further row is one entry; the columns matching the source
and target language give the term pair.
"""

from __future__ import annotations

import csv
import logging
import pathlib
from typing import Dict, Iterable, List, Sequence
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .errors import DocumentFormatError, UnsupportedFileTypeError

logger = logging.getLogger(__name__)

DELIMITED_SUFFIXES = {".tsv": "\t", ".txt": "\t", ".csv": ","}
WORKBOOK_SUFFIXES = {".xlsx"}


def _language_key(code: object) -> str:
    return str(code or "").strip().replace("_", "-").split("-", 1)[0].lower()


def _read_rows(path: pathlib.Path) -> List[List[str]]:
    suffix = path.suffix.lower()
    if suffix in DELIMITED_SUFFIXES:
        with path.open(encoding="utf-8-sig", newline="") as handle:
            return [row for row in csv.reader(handle, delimiter=DELIMITED_SUFFIXES[suffix])]
    if suffix in WORKBOOK_SUFFIXES:
        workbook = load_workbook(str(path), read_only=True, data_only=True)
        try:
            sheet = workbook.worksheets[0]
            return [
                ["" if value is None else str(value) for value in row]
                for row in sheet.iter_rows(values_only=True)
            ]
        finally:
            workbook.close()
    raise UnsupportedFileTypeError(
        "Glossaries must be .tsv, .csv or .xlsx files."
    )


def _column(header: Sequence[str], language: str, path: pathlib.Path) -> int:
    wanted = _language_key(language)
    for index, code in enumerate(header):
        if _language_key(code) == wanted:
            return index
    raise DocumentFormatError(
        f"{path}: no column for language '{language}' in the first row "
        f"({', '.join(str(code) for code in header)})."
    )


def entries_from_rows(
    rows: Iterable[Sequence[str]],
    source_language: str,
    target_language: str,
    *,
    path: pathlib.Path = pathlib.Path("<glossary>"),
) -> Dict[str, str]:
    """Build a source -> target mapping from rows whose first row is the header."""

    iterator = iter(rows)
    header = next(iterator, None)
    if not header:
        raise DocumentFormatError(f"{path}: the glossary is empty.")
    source_column = _column(header, source_language, path)
    target_column = _column(header, target_language, path)

    entries: Dict[str, str] = {}
    for line_number, row in enumerate(iterator, start=2):
        if max(source_column, target_column) >= len(row):
            continue
        source = row[source_column].strip()
        target = row[target_column].strip()
        if not source or not target:
            continue
        if source in entries:
            logger.warning(
                "%s:%d: duplicate glossary term '%s' ignored.", path, line_number, source
            )
            continue
        entries[source] = target
    return entries


def read_glossary(
    path: pathlib.Path,
    source_language: str,
    target_language: str,
) -> Dict[str, str]:
    try:
        rows = _read_rows(path)
    except (OSError, UnicodeDecodeError, InvalidFileException, BadZipFile) as exc:
        raise DocumentFormatError(f"Glossary {path} could not be read: {exc}") from exc
    entries = entries_from_rows(rows, source_language, target_language, path=path)
    logger.info("Read %d glossary entries from %s", len(entries), path)
    return entries
