"""Spreadsheet reading, sign statistics and mapping-driven row parsing."""

import csv
import hashlib
import io
import math
import re
from datetime import datetime
from decimal import Decimal
from typing import Any

import pandas as pd

from app.core.errors import ExtractionFailure
from app.core.models import AmountStats, MappingConfig
from app.core.utils import get_logger
from app.services.converters import AmountConverter, DateConverter, DescriptionConverter

logger = get_logger("statement-importer.spreadsheet")

MIN_ROWS_FOR_STATS = 5
NUMERIC_PROBE_ROWS = 50
NUMERIC_MIN_HITS = 5
STATS_SAMPLE_ROWS = 200
HEADER_SCAN_ROWS = 20
MIN_HEADER_LABELS = 2

_NUMERIC_NOISE_RE = re.compile(r"[$€£¥,\s]")
DATE_FIELDS = ("transaction_date", "posted_date")
AMOUNT_FIELDS = ("amount", "debit", "credit", "balance")


def _is_blank(cell: Any) -> bool:
    if cell is None:
        return True
    if isinstance(cell, float) and math.isnan(cell):
        return True
    return isinstance(cell, str) and not cell.strip()


def _clean_cell(cell: Any) -> Any:
    if cell is None or (isinstance(cell, float) and math.isnan(cell)):
        return ""
    if isinstance(cell, pd.Timestamp):
        return cell.to_pydatetime()
    if isinstance(cell, float) and cell.is_integer():
        return int(cell)
    return cell


def _decode(data: bytes) -> str:
    for encoding in ("utf-8-sig", "cp1252", "latin-1"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace")


def read_csv_rows(data: bytes) -> list[list[Any]]:
    """Read CSV bytes into a list of rows, dropping blank rows."""
    text = _decode(data)
    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel
    reader = csv.reader(io.StringIO(text), dialect)
    return [row for row in reader if any(not _is_blank(cell) for cell in row)]


def read_excel_rows(data: bytes) -> list[list[Any]]:
    """Read the first sheet of an XLSX/XLS workbook into a list of rows, dropping blank rows."""
    try:
        frame = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, dtype=object)
    except Exception as exc:
        msg = f"Could not read workbook: {exc}"
        raise ExtractionFailure(msg, user_message="The spreadsheet could not be read.") from exc
    rows = []
    for values in frame.itertuples(index=False, name=None):
        row = [_clean_cell(cell) for cell in values]
        if any(not _is_blank(cell) for cell in row):
            rows.append(row)
    return rows


def read_rows(data: bytes, file_format: str) -> list[list[Any]]:
    """Read a spreadsheet of the given format."""
    if file_format == "csv":
        return read_csv_rows(data)
    if file_format in ("xlsx", "xls"):
        return read_excel_rows(data)
    msg = f"Unsupported spreadsheet format: {file_format}"
    raise ExtractionFailure(msg)


def _as_number(cell: Any) -> float | None:
    if _is_blank(cell) or isinstance(cell, bool | datetime):
        return None
    if isinstance(cell, int | float | Decimal):
        number = float(cell)
    else:
        try:
            number = float(_NUMERIC_NOISE_RE.sub("", str(cell)))
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return number


def analyze_amounts(rows: list[list[Any]]) -> AmountStats | None:
    """Count positive and negative values in the numeric columns of a dataset."""
    if len(rows) < MIN_ROWS_FOR_STATS:
        return None
    probe = rows[:NUMERIC_PROBE_ROWS]
    width = max((len(row) for row in probe), default=0)
    numeric_columns = [
        idx
        for idx in range(width)
        if sum(1 for row in probe if idx < len(row) and _as_number(row[idx])) > NUMERIC_MIN_HITS
    ]
    if not numeric_columns:
        return None
    positive = negative = sampled = 0
    for row in rows[:STATS_SAMPLE_ROWS]:
        for idx in numeric_columns:
            if idx >= len(row):
                continue
            number = _as_number(row[idx])
            if not number:
                continue
            sampled += 1
            if number > 0:
                positive += 1
            else:
                negative += 1
    percent = round(positive / sampled * 100) if sampled else 0
    return AmountStats(
        positive_count=positive,
        negative_count=negative,
        positive_percent=percent,
        sampled_rows=sampled,
    )


def format_preview(rows: list[list[Any]], limit: int = HEADER_SCAN_ROWS) -> str:
    """Render the first rows as `Row i: [col]: value` lines for a prompt."""
    lines = []
    for idx, row in enumerate(rows[:limit]):
        cells = ", ".join(f"[{col}]: {_render(cell)}" for col, cell in enumerate(row))
        lines.append(f"Row {idx}: {cells}")
    return "\n".join(lines)


def _render(cell: Any) -> str:
    if isinstance(cell, datetime):
        return f'"{cell.isoformat()}"'
    if isinstance(cell, int | float) and not isinstance(cell, bool):
        return str(cell)
    return '"' + str(cell).replace('"', '\\"') + '"'


def header_signature(row: list[Any]) -> str | None:
    """Stable fingerprint of a header row, or None when the row does not look like a header."""
    labels = [str(cell).strip().lower() for cell in row]
    text_labels = [label for label in labels if label and _as_number(label) is None]
    if len(text_labels) < MIN_HEADER_LABELS:
        return None
    return hashlib.sha256("|".join(labels).encode("utf-8")).hexdigest()


def candidate_signatures(rows: list[list[Any]], limit: int = HEADER_SCAN_ROWS) -> list[tuple[int, str]]:
    """Header signatures for each of the first rows, with their indices."""
    found = []
    for idx, row in enumerate(rows[:limit]):
        signature = header_signature(row)
        if signature:
            found.append((idx, signature))
    return found


def parse_with_mapping(rows: list[list[Any]], mapping: MappingConfig) -> list[dict[str, Any]]:
    """Convert the data rows below the header into typed field dictionaries.

    Amount sign reversal is not applied here; it is returned as `reverse_sign` so the sign resolver can decide.
    """
    fields = mapping.field_mappings.mapped()
    parsed = []
    for row in rows[mapping.header_row_index + 1 :]:
        raw: dict[str, Any] = {}
        for name, column in fields.items():
            if column.column_index < len(row):
                raw[name] = row[column.column_index]
        record: dict[str, Any] = {"raw": {key: _jsonable(value) for key, value in raw.items()}}
        for name, value in raw.items():
            record[name] = _convert_field(name, value, mapping)
        instruction = mapping.conversion_for("amount")
        record["reverse_sign"] = instruction.reverse_sign if instruction else None
        parsed.append(record)
    logger.info(f"Parsed {len(parsed)} data rows below header row {mapping.header_row_index}")
    return parsed


def _convert_field(name: str, value: Any, mapping: MappingConfig) -> Any:
    instruction = mapping.conversion_for(name)
    if name in DATE_FIELDS:
        return DateConverter.convert(
            value,
            fmt=instruction.format if instruction else None,
            excel_serial=bool(instruction and instruction.excel_serial),
        )
    if name in AMOUNT_FIELDS:
        return AmountConverter.convert(
            value,
            remove_symbols=instruction.remove_symbols is not False if instruction else True,
            handle_parentheses=instruction.handle_parentheses is not False if instruction else True,
        )
    text = DescriptionConverter.convert(
        value,
        trim=instruction.trim is not False if instruction else True,
        remove_internal_codes=bool(instruction and instruction.remove_internal_codes),
    )
    return text or None


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value
