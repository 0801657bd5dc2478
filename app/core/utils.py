"""Shared utility functions for the Statement Importer project."""

import hashlib
import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import colorlog

LOGGER_ROOT = "statement-importer"
CENTS = Decimal("0.01")


def get_logger(name: str) -> logging.Logger:
    """Get a logger with a colorized format for the project.

    Handlers live on the top-level logger (`statement-importer`); named children propagate to it, so the file handler
    added by `setup_logging` sees every module.
    """
    root = logging.getLogger(name.split(".", 1)[0])
    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "bold_red",
            },
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(logging.INFO)
        root.propagate = False
    return logging.getLogger(name)


def ensure_dir(path: str | Path) -> None:
    """Ensure a directory exists (like mkdir -p)."""
    Path(path).mkdir(parents=True, exist_ok=True)


def new_id() -> str:
    """Return a new random identifier."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Get the current UTC time."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def sha256_hex(data: bytes) -> str:
    """Content fingerprint used for duplicate detection."""
    return hashlib.sha256(data).hexdigest()


def format_amount(value: Decimal | float | int | str | None) -> str | None:
    """Normalize an amount to a two-decimal string for storage and comparison."""
    if value is None:
        return None
    return str(Decimal(str(value)).quantize(CENTS))


def truncate(text: str, limit: int) -> str:
    """Shorten text for log lines."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
