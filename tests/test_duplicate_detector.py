"""Tests for duplicate detection by fingerprint, size and receipt details."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from conftest import OTHER_OWNER, OWNER

from app.core.db import Document, Receipt, session_scope
from app.core.errors import DuplicateFileError
from app.services.duplicate_detector import DuplicateDetector


async def _add_document(session_factory, owner: str, content_hash: str, size: int, name: str = "a.jpg") -> str:
    document = Document(
        user_id=owner,
        document_type="receipt",
        file_format="jpg",
        file_name=name,
        file_url=f"https://files.example.com/{name}",
        file_size_bytes=size,
        content_hash=content_hash,
    )
    async with session_scope(session_factory) as session:
        session.add(document)
    return document.id


async def _add_receipt(session_factory, document_id: str, merchant: str, when: datetime, amount: str) -> None:
    async with session_scope(session_factory) as session:
        session.add(
            Receipt(document_id=document_id, user_id=OWNER, merchant_name=merchant, date=when, total_amount=amount)
        )


async def test_fingerprint_match_is_high_confidence(session_factory) -> None:
    document_id = await _add_document(session_factory, OWNER, "hash-1", 1000)
    detector = DuplicateDetector(session_factory)
    match = await detector.detect(OWNER, "hash-1", 2000)
    if match is None or match.document_id != document_id:
        msg = f"Expected a match on {document_id}, got {match}"
        raise AssertionError(msg)
    if (match.match_type, match.confidence) != ("exact_image", "high"):
        msg = f"Unexpected match kind {match}"
        raise AssertionError(msg)


async def test_other_owner_never_matches(session_factory) -> None:
    await _add_document(session_factory, OTHER_OWNER, "hash-1", 1000)
    detector = DuplicateDetector(session_factory)
    match = await detector.detect(OWNER, "hash-1", 1000)
    if match is not None:
        msg = f"Expected no cross-owner match, got {match}"
        raise AssertionError(msg)


async def test_single_size_match_is_medium(session_factory) -> None:
    document_id = await _add_document(session_factory, OWNER, "hash-1", 1234)
    detector = DuplicateDetector(session_factory)
    match = await detector.detect(OWNER, "hash-2", 1234)
    if match is None or (match.document_id, match.confidence) != (document_id, "medium"):
        msg = f"Expected a medium size match, got {match}"
        raise AssertionError(msg)

    await _add_document(session_factory, OWNER, "hash-3", 1234, name="b.jpg")
    if await detector.detect(OWNER, "hash-4", 1234) is not None:
        msg = "Expected several size matches to be inconclusive"
        raise AssertionError(msg)


async def test_same_day_receipt_ignores_time(session_factory) -> None:
    document_id = await _add_document(session_factory, OWNER, "hash-1", 1000)
    await _add_receipt(session_factory, document_id, "Corner Cafe", datetime(2024, 5, 3, 8, 15, tzinfo=UTC), "12.50")
    detector = DuplicateDetector(session_factory)
    match = await detector.detect(
        OWNER,
        "hash-2",
        5000,
        merchant="  corner cafe ",
        date=datetime(2024, 5, 3, 19, 40, tzinfo=UTC),
        amount=Decimal("12.5"),
    )
    if match is None or (match.match_type, match.confidence) != ("merchant_date_amount", "medium"):
        msg = f"Expected a same-day receipt match, got {match}"
        raise AssertionError(msg)

    next_day = await detector.detect(
        OWNER, "hash-2", 5000, merchant="Corner Cafe", date=datetime(2024, 5, 4, 8, 15, tzinfo=UTC), amount="12.50"
    )
    if next_day is not None:
        msg = f"Expected no match on the next day, got {next_day}"
        raise AssertionError(msg)


async def test_receipt_match_with_size_is_high(session_factory) -> None:
    document_id = await _add_document(session_factory, OWNER, "hash-1", 777)
    await _add_document(session_factory, OWNER, "hash-9", 777, name="c.jpg")
    await _add_receipt(session_factory, document_id, "Corner Cafe", datetime(2024, 5, 3, tzinfo=UTC), "12.50")
    detector = DuplicateDetector(session_factory)
    match = await detector.detect(
        OWNER, "hash-2", 777, merchant="Corner Cafe", date=datetime(2024, 5, 3, 12, tzinfo=UTC), amount="12.50"
    )
    if match is None or (match.document_id, match.confidence) != (document_id, "high"):
        msg = f"Expected a high confidence receipt match, got {match}"
        raise AssertionError(msg)


async def test_ensure_unique_names_previous_upload(session_factory) -> None:
    document_id = await _add_document(session_factory, OWNER, "hash-1", 1000, name="march.pdf")
    detector = DuplicateDetector(session_factory)
    with pytest.raises(DuplicateFileError) as exc_info:
        await detector.ensure_unique(OWNER, "hash-1")
    if exc_info.value.duplicate_of_document_id != document_id:
        msg = f"Expected duplicate of {document_id}, got {exc_info.value.duplicate_of_document_id}"
        raise AssertionError(msg)
    if "march.pdf" not in exc_info.value.user_message:
        msg = f"Expected the file name in the message, got {exc_info.value.user_message!r}"
        raise AssertionError(msg)
    await detector.ensure_unique(OWNER, "hash-1", exclude_document_id=document_id)
