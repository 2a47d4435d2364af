"""
Spreadsheet input/output: delimiter sniffing, parsing into a RowStore and
exporting the augmented `;` file.
"""

from __future__ import annotations

import io
import logging
import re
from typing import Optional, Union

import polars as pl
from rapidfuzz import fuzz

from row_store import RowStore


logger = logging.getLogger(__name__)


TYPE_COLUMN = "Tipologia di Sito"
DETAILS_COLUMN = "Dettagli"
SOURCES_COLUMN = "Fonti"
RESULT_COLUMNS = [TYPE_COLUMN, DETAILS_COLUMN, SOURCES_COLUMN]
OUTPUT_DELIMITER = ";"
DEFAULT_EXPORT_FILENAME = "inserzionisti_completi_con_ID_e_categoria.csv"

PREFERRED_URL_COLUMN = "Sito Web Trovato"
URL_HEADER_HINTS = ["sito", "web", "link"]
URL_FUZZY_NAMES = ["website", "url", "sito web", "homepage", "domain", "dominio"]
URL_FUZZY_THRESHOLD = 80.0

_LINE_SPLIT_RE = re.compile(r"\r?\n")
_QUOTE_ENDS_RE = re.compile(r'^"|"$')


def detect_delimiter(header_line: str) -> str:
    return ";" if ";" in (header_line or "") else ","


def sanitize_column_names(columns: list[str]) -> list[str]:
    """Normalize blank/duplicate headers while preserving readability."""
    seen: dict[str, int] = {}
    normalized = []
    for idx, raw_name in enumerate(columns, start=1):
        base = (raw_name or "").strip()
        if not base:
            base = f"column_{idx}"
        key = base.lower()
        count = seen.get(key, 0) + 1
        seen[key] = count
        normalized.append(base if count == 1 else f"{base}_{count}")
    return normalized


def _clean_cell(value: Optional[str], loose_quotes: bool = False) -> str:
    text = str(value or "").strip()
    if loose_quotes:
        return _QUOTE_ENDS_RE.sub("", text).strip()
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        text = text[1:-1].strip()
    return text


def _decode(content: Union[str, bytes]) -> str:
    if isinstance(content, bytes):
        return content.decode("utf-8-sig", errors="replace")
    return content.lstrip("\ufeff")


def _read_rows(lines: list[str], delimiter: str, quote_char: Optional[str]) -> list[tuple]:
    df = pl.read_csv(
        io.BytesIO("\n".join(lines).encode("utf-8")),
        separator=delimiter,
        has_header=False,
        infer_schema_length=0,
        truncate_ragged_lines=True,
        quote_char=quote_char,
    )
    return df.fill_null("").rows()


def parse_csv(content: Union[str, bytes]) -> RowStore:
    """Parse a delimited file into a fresh RowStore with every row IDLE.

    Unbalanced quotes fall back to a plain split per line, with a stray quote
    trimmed from either end of each cell.
    """
    text = _decode(content)
    lines = [line for line in _LINE_SPLIT_RE.split(text) if line.strip()]
    if len(lines) < 2:
        return RowStore()

    delimiter = detect_delimiter(lines[0])
    loose_quotes = False
    try:
        rows = _read_rows(lines, delimiter, '"')
    except pl.exceptions.ComputeError:
        logger.warning("Malformed quoting in CSV input, re-reading without quote handling")
        rows = _read_rows(lines, delimiter, None)
        loose_quotes = True

    headers = sanitize_column_names([_clean_cell(name, loose_quotes) for name in rows[0]])
    records = [
        {header: _clean_cell(row[i], loose_quotes) if i < len(row) else "" for i, header in enumerate(headers)}
        for row in rows[1:]
    ]
    return RowStore.from_records(headers, records)


def _result_value(item, column: str) -> str:
    result = item.result
    if result is None:
        return ""
    if column == TYPE_COLUMN:
        return result.type or ""
    if column == DETAILS_COLUMN:
        return result.details or ""
    return ", ".join(result.sources)


def generate_csv(store: RowStore) -> str:
    """Render the store as `;` text with the three analysis columns appended."""
    if len(store) == 0:
        return ""

    original = [h for h in store.headers if h not in RESULT_COLUMNS]
    all_headers = original + RESULT_COLUMNS
    data: dict[str, list[Optional[str]]] = {header: [] for header in all_headers}
    for item in store.items:
        for header in all_headers:
            if header in RESULT_COLUMNS:
                value = _result_value(item, header)
            else:
                value = item.values.get(header) or ""
            # Empty cells go out as nulls so the writer leaves them bare instead of quoting "".
            data[header].append(value or None)

    df = pl.DataFrame(data, schema={header: pl.String for header in all_headers})
    return df.write_csv(
        separator=OUTPUT_DELIMITER,
        quote_char='"',
        quote_style="necessary",
        line_terminator="\n",
        null_value="",
    )


def _normalize_header(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", " ", str(value or "").lower()).strip()


def guess_url_column(headers: list[str]) -> Optional[str]:
    """Pick the column most likely to hold website URLs."""
    if not headers:
        return None
    if PREFERRED_URL_COLUMN in headers:
        return PREFERRED_URL_COLUMN
    for hint in URL_HEADER_HINTS:
        for header in headers:
            if hint in str(header or "").lower():
                return header

    best_header: Optional[str] = None
    best_score = 0.0
    for header in headers:
        norm = _normalize_header(header)
        if not norm:
            continue
        score = max(float(fuzz.token_set_ratio(norm, name)) for name in URL_FUZZY_NAMES)
        if score > best_score:
            best_header, best_score = header, score
    if best_header is not None and best_score >= URL_FUZZY_THRESHOLD:
        return best_header
    return headers[0]
