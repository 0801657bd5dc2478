"""Field converters used by the statement normalizer.

Each converter takes a raw cell value as it comes out of a spreadsheet or a completion response and returns the
canonical Python value, or None when the value cannot be read. Converters never raise on bad input.
"""

import math
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from dateutil import parser as date_parser

from app.core.utils import as_utc

# Longest tokens first so YYYY is not read as two YY.
_FORMAT_TOKENS = (
    ("yyyy", "%Y"),
    ("YYYY", "%Y"),
    ("MMMM", "%B"),
    ("MMM", "%b"),
    ("yy", "%y"),
    ("YY", "%y"),
    ("MM", "%m"),
    ("dd", "%d"),
    ("DD", "%d"),
    ("HH", "%H"),
    ("mm", "%M"),
    ("ss", "%S"),
    ("M", "%m"),
    ("d", "%d"),
    ("D", "%d"),
)
_TOKEN_RE = re.compile("|".join(token for token, _ in _FORMAT_TOKENS))
_TOKEN_MAP = dict(_FORMAT_TOKENS)

_EXCEL_EPOCH = datetime(1899, 12, 31)
_EXCEL_PHANTOM_LEAP_DAY = 60

_AMOUNT_SYMBOLS_RE = re.compile(r"[$€£¥₹,()]")
_PREFIXED_CODE_RE = re.compile(r"^[A-Z]{2,}:\s*\d+\s*-\s*", re.IGNORECASE)
_NUMERIC_CODE_RE = re.compile(r"^\d{4,}\s*-\s*")
_WHITESPACE_RE = re.compile(r"\s+")


def to_strptime_format(fmt: str) -> str:
    """Translate a spreadsheet-style date format such as DD/MM/YYYY into a strptime pattern."""
    return _TOKEN_RE.sub(lambda match: _TOKEN_MAP[match.group(0)], fmt)


class DateConverter:
    """Read dates from explicit formats, Excel serials, ISO strings or free text."""

    @staticmethod
    def convert(value: object, fmt: str | None = None, excel_serial: bool = False) -> datetime | None:
        """Convert a raw value to a UTC datetime, trying each strategy in order."""
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return as_utc(datetime(value.year, value.month, value.day, value.hour, value.minute, value.second))
        if isinstance(value, date):
            return as_utc(datetime(value.year, value.month, value.day))
        if excel_serial and isinstance(value, int | float) and not isinstance(value, bool):
            return DateConverter.excel_serial_to_date(value)
        text = str(value).strip()
        if not text:
            return None
        if excel_serial:
            try:
                return DateConverter.excel_serial_to_date(float(text))
            except ValueError:
                pass
        if fmt:
            try:
                return as_utc(datetime.strptime(text, to_strptime_format(fmt)))
            except ValueError:
                pass
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError:
            pass
        try:
            return as_utc(date_parser.parse(text))
        except (ValueError, OverflowError):
            return None

    @staticmethod
    def excel_serial_to_date(serial: float) -> datetime | None:
        """Convert an Excel serial day number, skipping the 1900-02-29 that never existed."""
        if not math.isfinite(serial) or serial < 1:
            return None
        days = int(serial)
        if days > _EXCEL_PHANTOM_LEAP_DAY:
            days -= 1
        try:
            return as_utc(_EXCEL_EPOCH + timedelta(days=days))
        except OverflowError:
            return None


class AmountConverter:
    """Read monetary amounts written with symbols, thousands separators or accounting parentheses."""

    @staticmethod
    def convert(
        value: object,
        reverse_sign: bool = False,
        remove_symbols: bool = True,
        handle_parentheses: bool = True,
    ) -> Decimal | None:
        """Convert a raw value to a Decimal. Numbers pass through unless reversal is requested."""
        if value is None or value == "" or isinstance(value, bool):
            return None
        if isinstance(value, int | float | Decimal):
            number = Decimal(str(value))
            if not number.is_finite():
                return None
            return -number if reverse_sign else number
        text = str(value).strip()
        if not text:
            return None
        # "(100)" and "$(100)" are both accounting negatives
        negative_paren = "(" in text and text.endswith(")")
        if remove_symbols:
            text = _AMOUNT_SYMBOLS_RE.sub("", text)
        else:
            text = text.replace("(", "").replace(")", "")
        text = text.replace(" ", "")
        try:
            number = Decimal(text)
        except InvalidOperation:
            return None
        if not number.is_finite():
            return None
        if handle_parentheses and negative_paren:
            number = -abs(number)
        if reverse_sign:
            number = -number
        return number


class DescriptionConverter:
    """Clean description text exported by banks."""

    @staticmethod
    def convert(value: object, trim: bool = True, remove_internal_codes: bool = False) -> str:
        """Strip formula prefixes, optional internal codes and redundant whitespace."""
        if value is None or value == "":
            return ""
        text = str(value)
        if trim:
            text = text.strip()
        if text.startswith("="):
            text = text[1:]
        if remove_internal_codes:
            text = _PREFIXED_CODE_RE.sub("", text)
            text = _NUMERIC_CODE_RE.sub("", text)
        return _WHITESPACE_RE.sub(" ", text).strip()
