"""File parsers for CSV and JSON uploads with a unified ParseResult interface.

Provides parse_bytes() / parse_file() as the entry points. Implementations:
- CSV: csv.reader with chardet encoding detection, BOM handling and
  header normalization (trimmed, lower-cased, whitespace -> underscore)
- JSON: a JSON array of objects, a single object, or JSON Lines

Syntax errors are batch-level: a malformed document raises ParseError and
nothing from it is ingested. Non-object JSON array items only warn.
File size guard: rejects files > 50 MB.
"""

from __future__ import annotations

import csv
import io
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import chardet

# 50 MB in bytes
_MAX_FILE_SIZE = 50 * 1024 * 1024

SUPPORTED_TYPES = {"csv", "json"}

_WHITESPACE_RE = re.compile(r"\s+")


class ParseError(ValueError):
    """Raised when an upload is not syntactically valid CSV/JSON."""


@dataclass
class ParseResult:
    """Result of parsing an uploaded file.

    Attributes:
        rows: List of column:value dicts (one per parsed row).
        column_names: Ordered list of column/field names.
        row_count: Number of parsed rows.
        warnings: Non-fatal issues encountered during parsing.
        file_type: The type of file that was parsed (csv/json).
    """

    rows: list[dict[str, Any]]
    column_names: list[str]
    row_count: int
    warnings: list[str] = field(default_factory=list)
    file_type: str = ""


def normalize_header(name: str) -> str:
    """Normalize a CSV header: strip BOM/whitespace, lower-case, spaces to '_'."""
    return _WHITESPACE_RE.sub("_", name.lstrip("\ufeff").strip().lower())


def file_type_for(filename: str) -> str | None:
    """Map a filename to its file_type ('csv'/'json'), or None if unsupported."""
    suffix = Path(filename).suffix.lower().lstrip(".")
    return suffix if suffix in SUPPORTED_TYPES else None


def parse_file(path: Path, file_type: str) -> ParseResult:
    """Parse a data file on disk and return a ParseResult.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If the file type is unsupported or the file exceeds 50 MB.
        ParseError: If the content is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    file_size = path.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        raise ValueError(
            f"File size ({file_size / (1024 * 1024):.1f} MB) exceeds the 50 MB limit."
        )
    return parse_bytes(path.read_bytes(), file_type)


def parse_bytes(raw_bytes: bytes, file_type: str) -> ParseResult:
    """Parse uploaded bytes as the given file type."""
    file_type = file_type.lower().strip().lstrip(".")

    if file_type not in SUPPORTED_TYPES:
        raise ValueError(
            f"Unsupported file type: '{file_type}'. "
            f"Supported types: {', '.join(sorted(SUPPORTED_TYPES))}"
        )

    if len(raw_bytes.strip()) == 0:
        return ParseResult(
            rows=[],
            column_names=[],
            row_count=0,
            warnings=["File is empty"],
            file_type=file_type,
        )

    text = raw_bytes.decode(_detect_encoding(raw_bytes), errors="replace")
    if file_type == "csv":
        return _parse_csv(text)
    return _parse_json(text)


def _detect_encoding(raw_bytes: bytes) -> str:
    """Detect the encoding of raw bytes using chardet.

    Returns a safe encoding string. Falls back to 'utf-8' if detection fails.
    """
    # Check for UTF-8 BOM
    if raw_bytes[:3] == b"\xef\xbb\xbf":
        return "utf-8-sig"

    result = chardet.detect(raw_bytes)
    encoding = result.get("encoding")
    if encoding is None:
        return "utf-8"
    # Normalize common aliases
    enc_lower = encoding.lower()
    if enc_lower in ("ascii", "utf-8", "utf8"):
        return "utf-8"
    return encoding


# ---------------------------------------------------------------------------
# CSV Parser
# ---------------------------------------------------------------------------


def _sniff_delimiter(header_line: str) -> str:
    try:
        return csv.Sniffer().sniff(header_line, delimiters=",;\t|").delimiter
    except csv.Error:
        return ","


def _parse_csv(text: str) -> ParseResult:
    """Parse CSV text; any row with the wrong number of fields fails the batch."""
    header_line = text.lstrip("\ufeff").lstrip("\r\n").split("\n", 1)[0]
    reader = csv.reader(io.StringIO(text), delimiter=_sniff_delimiter(header_line))

    try:
        header = next(reader, None)
        while header is not None and not header:
            header = next(reader, None)
        if header is None:
            return ParseResult(
                rows=[],
                column_names=[],
                row_count=0,
                warnings=["File is empty or has no header row"],
                file_type="csv",
            )

        column_names = [normalize_header(name) for name in header]
        rows: list[dict[str, Any]] = []
        errors: list[str] = []

        for values in reader:
            if not values:
                continue  # blank line
            if len(values) != len(column_names):
                errors.append(
                    f"Row {reader.line_num}: expected {len(column_names)} fields, "
                    f"found {len(values)}"
                )
                continue
            rows.append(dict(zip(column_names, values)))
    except csv.Error as exc:
        raise ParseError(f"CSV parsing errors: {exc}") from exc

    if errors:
        raise ParseError(f"CSV parsing errors: {', '.join(errors)}")

    return ParseResult(
        rows=rows,
        column_names=column_names,
        row_count=len(rows),
        file_type="csv",
    )


# ---------------------------------------------------------------------------
# JSON Parser
# ---------------------------------------------------------------------------


def _parse_json(text: str) -> ParseResult:
    """Parse a JSON array, a single JSON object, or JSON Lines."""
    text = text.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        if not text.startswith("{") or "\n" not in text:
            raise ParseError(f"Invalid JSON format: {exc}") from exc
        return _parse_json_lines(text)

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ParseError("Invalid JSON format: expected an array of objects or an object")

    rows: list[dict[str, Any]] = []
    warnings: list[str] = []
    for idx, item in enumerate(data, start=1):
        if not isinstance(item, dict):
            warnings.append(f"Row {idx}: not an object, skipped")
            continue
        rows.append(dict(item))

    return ParseResult(
        rows=rows,
        column_names=_ordered_keys(rows),
        row_count=len(rows),
        warnings=warnings,
        file_type="json",
    )


def _parse_json_lines(text: str) -> ParseResult:
    """Parse JSON Lines (one object per line). A malformed line fails the batch."""
    rows: list[dict[str, Any]] = []

    for line_num, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Invalid JSON format: line {line_num}: {exc.msg}") from exc
        if not isinstance(obj, dict):
            raise ParseError(f"Invalid JSON format: line {line_num} is not an object")
        rows.append(obj)

    return ParseResult(
        rows=rows,
        column_names=_ordered_keys(rows),
        row_count=len(rows),
        file_type="json",
    )


def _ordered_keys(rows: list[dict[str, Any]]) -> list[str]:
    """Extract ordered unique keys from a list of dicts, preserving first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                result.append(key)
    return result
