"""Duplicate detection across an owner's uploads.

Three strategies run in order: content fingerprint, byte size, and merchant + calendar day + amount for receipts.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.db import Document, Receipt
from app.core.errors import DuplicateFileError
from app.core.models import DuplicateMatch
from app.core.utils import as_utc, format_amount, get_logger

logger = get_logger("statement-importer.duplicates")

MATCH_LIMIT = 10


class DuplicateDetector:
    """Find a prior document that is the same upload."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], date_window_days: int = 0) -> None:
        """Initialize with the session factory and how many days either side still count as the same day."""
        self.session_factory = session_factory
        self.date_window_days = date_window_days

    async def find_by_hash(
        self, owner_id: str, content_hash: str, exclude_document_id: str | None = None
    ) -> Document | None:
        query = select(Document).where(Document.user_id == owner_id, Document.content_hash == content_hash)
        if exclude_document_id:
            query = query.where(Document.id != exclude_document_id)
        async with self.session_factory() as session:
            return await session.scalar(query.order_by(Document.created_at).limit(1))

    async def find_by_size(
        self, owner_id: str, file_size: int | None, exclude_document_id: str | None = None
    ) -> list[str]:
        if not file_size:
            return []
        query = select(Document.id).where(Document.user_id == owner_id, Document.file_size_bytes == file_size)
        if exclude_document_id:
            query = query.where(Document.id != exclude_document_id)
        async with self.session_factory() as session:
            result = await session.scalars(query.limit(MATCH_LIMIT))
            return list(result.all())

    async def find_by_merchant_date_amount(
        self,
        owner_id: str,
        merchant: str,
        date: datetime,
        amount: Decimal | str,
        exclude_document_id: str | None = None,
    ) -> list[str]:
        """Receipts with the same merchant and amount on the same calendar day, time ignored."""
        day = as_utc(date).replace(hour=0, minute=0, second=0, microsecond=0)
        start = day - timedelta(days=self.date_window_days)
        end = day + timedelta(days=self.date_window_days + 1)
        query = select(Receipt.document_id).where(
            Receipt.user_id == owner_id,
            func.lower(func.trim(Receipt.merchant_name)) == merchant.strip().lower(),
            Receipt.total_amount == format_amount(amount),
            Receipt.date >= start,
            Receipt.date < end,
        )
        if exclude_document_id:
            query = query.where(Receipt.document_id != exclude_document_id)
        async with self.session_factory() as session:
            result = await session.scalars(query.limit(MATCH_LIMIT))
            return list(result.all())

    async def detect(
        self,
        owner_id: str,
        content_hash: str | None,
        file_size: int | None,
        merchant: str | None = None,
        date: datetime | None = None,
        amount: Decimal | str | None = None,
        exclude_document_id: str | None = None,
    ) -> DuplicateMatch | None:
        """Return the best duplicate match, or None."""
        if content_hash:
            existing = await self.find_by_hash(owner_id, content_hash, exclude_document_id)
            if existing is not None:
                return DuplicateMatch(document_id=existing.id, match_type="exact_image", confidence="high")
        size_matches = await self.find_by_size(owner_id, file_size, exclude_document_id)
        if len(size_matches) == 1:
            return DuplicateMatch(document_id=size_matches[0], match_type="exact_image", confidence="medium")
        if merchant and date and amount is not None:
            merchant_matches = await self.find_by_merchant_date_amount(
                owner_id, merchant, date, amount, exclude_document_id
            )
            if merchant_matches:
                both = [document_id for document_id in merchant_matches if document_id in size_matches]
                if both:
                    return DuplicateMatch(document_id=both[0], match_type="merchant_date_amount", confidence="high")
                return DuplicateMatch(
                    document_id=merchant_matches[0], match_type="merchant_date_amount", confidence="medium"
                )
        return None

    async def ensure_unique(self, owner_id: str, content_hash: str, exclude_document_id: str | None = None) -> None:
        """Raise DuplicateFileError naming the earlier upload when the fingerprint collides."""
        existing = await self.find_by_hash(owner_id, content_hash, exclude_document_id)
        if existing is None:
            return
        name = existing.file_name or "a previous upload"
        logger.info(f"Fingerprint collision with document {existing.id} ({name})")
        raise DuplicateFileError(
            f"Duplicate of document {existing.id}",
            user_message=f"This file was already uploaded as {name}.",
            duplicate_of_document_id=existing.id,
            match_type="exact_image",
        )
