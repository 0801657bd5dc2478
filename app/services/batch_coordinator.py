"""BatchCoordinator: lifecycle of import batches and their items.

Every operation is scoped to an owner; a batch or item that does not exist or belongs to somebody else raises
UnauthorizedError. Batch counters and status are never incremented in place. After each item transition they are
re-derived from the item rows by `recompute_batch_stats`.
"""

import json
import math
from datetime import datetime, timedelta
from urllib.parse import urlparse

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.db import ImportBatch, ImportBatchItem, session_scope
from app.core.errors import DomainError, EnqueueFailure, UnauthorizedError, ValidationError
from app.core.models import (
    BatchItemView,
    BatchPage,
    BatchProgress,
    BatchStatus,
    BatchSummary,
    BatchView,
    ImportType,
    ItemStatus,
    JobPayload,
    RetryAllResult,
)
from app.core.utils import as_utc, get_logger, utcnow
from app.workers.queue import JobQueue

logger = get_logger("statement-importer.batches")

BATCH_NOT_FOUND = "Batch not found or unauthorized"
ITEM_NOT_FOUND = "Batch item not found"
MAX_PAGE_SIZE = 100

ITEM_TRANSITIONS: dict[str, set[str]] = {
    ItemStatus.PENDING.value: {ItemStatus.PROCESSING.value, ItemStatus.SKIPPED.value},
    ItemStatus.PROCESSING.value: {
        ItemStatus.COMPLETED.value,
        ItemStatus.FAILED.value,
        ItemStatus.DUPLICATE.value,
        ItemStatus.SKIPPED.value,
    },
}
FINAL_ITEM_STATUSES = {
    ItemStatus.COMPLETED.value,
    ItemStatus.FAILED.value,
    ItemStatus.DUPLICATE.value,
    ItemStatus.SKIPPED.value,
}
# Batch states that item transitions never overwrite.
STICKY_BATCH_STATUSES = {BatchStatus.CANCELLED.value, BatchStatus.FAILED.value}

FILE_FORMATS = {
    "jpg": "jpg",
    "jpeg": "jpg",
    "png": "png",
    "webp": "webp",
    "gif": "gif",
    "pdf": "pdf",
    "csv": "csv",
    "xlsx": "xlsx",
    "xls": "xls",
}
DEFAULT_FILE_FORMAT = "jpg"


def serialize_errors(errors: list[str] | None) -> str | None:
    """Store an error list as a JSON array."""
    if errors is None:
        return None
    return json.dumps([str(error) for error in errors])


def deserialize_errors(raw: str | None) -> list[str]:
    """Read a stored error list back; anything unreadable becomes a single entry."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return [raw]
    if isinstance(value, list):
        return [str(error) for error in value]
    return [str(value)]


def infer_file_format(file_url: str | None, file_name: str | None = None) -> str:
    """File format from the URL path extension, then the file name, defaulting to jpg."""
    candidates = []
    if file_url:
        candidates.append(urlparse(file_url).path)
    if file_name:
        candidates.append(file_name)
    for candidate in candidates:
        if "." not in candidate:
            continue
        extension = candidate.rsplit(".", 1)[-1].lower()
        if extension in FILE_FORMATS:
            return FILE_FORMATS[extension]
    return DEFAULT_FILE_FORMAT


def build_job_payload(batch: ImportBatch, item: ImportBatchItem) -> JobPayload:
    """Job payload for one item. Shared by first submission and both retry paths."""
    return JobPayload(
        batch_id=batch.id,
        item_id=item.id,
        owner_id=batch.user_id,
        file_url=item.file_url,
        file_name=item.file_name,
        file_format=infer_file_format(item.file_url, item.file_name),
        import_type=batch.import_type,
        statement_type=batch.statement_type,
        file_size_bytes=item.file_size_bytes,
    )


def estimate_completion(
    processed: int, remaining: int, started_at: datetime | None, now: datetime | None = None
) -> datetime | None:
    """Project the finish time from the processing rate so far."""
    if processed <= 0 or started_at is None:
        return None
    now = now or utcnow()
    elapsed = (now - as_utc(started_at)).total_seconds()
    if elapsed <= 0:
        return None
    rate = processed / elapsed
    return now + timedelta(seconds=remaining / rate)


def compute_progress(batch: ImportBatch, now: datetime | None = None) -> BatchProgress:
    total = batch.total_files or 0
    processed = batch.processed_files or 0
    remaining = max(total - processed, 0)
    percentage = math.floor(processed * 100 / total + 0.5) if total > 0 else 0
    return BatchProgress(
        percentage=percentage,
        status=batch.status,
        processed=processed,
        total=total,
        successful=batch.successful_files or 0,
        failed=batch.failed_files or 0,
        duplicates=batch.duplicate_files or 0,
        remaining=remaining,
        is_complete=batch.status == BatchStatus.COMPLETED.value or processed >= total,
        estimated_completion=estimate_completion(processed, remaining, batch.started_at, now),
    )


def batch_view(batch: ImportBatch) -> BatchView:
    return BatchView(
        id=batch.id,
        import_type=batch.import_type,
        statement_type=batch.statement_type,
        source_format=batch.source_format,
        status=batch.status,
        total_files=batch.total_files,
        processed_files=batch.processed_files,
        successful_files=batch.successful_files,
        failed_files=batch.failed_files,
        duplicate_files=batch.duplicate_files,
        started_at=as_utc(batch.started_at),
        completed_at=as_utc(batch.completed_at),
        estimated_completion_at=as_utc(batch.estimated_completion_at),
        errors=deserialize_errors(batch.errors),
        created_at=as_utc(batch.created_at),
    )


def item_view(item: ImportBatchItem) -> BatchItemView:
    return BatchItemView(
        id=item.id,
        batch_id=item.batch_id,
        document_id=item.document_id,
        file_name=item.file_name,
        file_url=item.file_url,
        file_size_bytes=item.file_size_bytes,
        order=item.order,
        status=item.status,
        retry_count=item.retry_count,
        error_code=item.error_code,
        error_message=item.error_message,
        duplicate_of_document_id=item.duplicate_of_document_id,
        duplicate_match_type=item.duplicate_match_type,
        processed_at=as_utc(item.processed_at),
        processing_duration_ms=item.processing_duration_ms,
        created_at=as_utc(item.created_at),
    )


class BatchCoordinator:
    """Owns batch and item state; submits items to the job queue."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], queue: JobQueue | None = None) -> None:
        """Initialize with the session factory and the queue used for submission and retries."""
        self.session_factory = session_factory
        self.queue = queue

    # --- Lookups ---

    async def _get_batch(self, session: AsyncSession, owner_id: str, batch_id: str) -> ImportBatch:
        if not owner_id:
            raise UnauthorizedError(BATCH_NOT_FOUND)
        batch = await session.scalar(
            select(ImportBatch).where(ImportBatch.id == batch_id, ImportBatch.user_id == owner_id)
        )
        if batch is None:
            raise UnauthorizedError(BATCH_NOT_FOUND)
        return batch

    async def _get_item(
        self, session: AsyncSession, owner_id: str, item_id: str
    ) -> tuple[ImportBatch, ImportBatchItem]:
        item = await session.get(ImportBatchItem, item_id)
        if item is None:
            raise UnauthorizedError(ITEM_NOT_FOUND)
        batch = await self._get_batch(session, owner_id, item.batch_id)
        return batch, item

    async def get_batch(self, owner_id: str, batch_id: str) -> BatchView:
        async with self.session_factory() as session:
            return batch_view(await self._get_batch(session, owner_id, batch_id))

    # --- Batches ---

    async def create_batch(
        self,
        owner_id: str,
        import_type: ImportType | str,
        total_files: int,
        statement_type: str | None = None,
        source_format: str | None = None,
    ) -> str:
        """Create a pending batch expecting `total_files` items and return its id."""
        if not owner_id:
            raise UnauthorizedError("Unauthorized")
        import_type = import_type.value if isinstance(import_type, ImportType) else import_type
        if import_type not in {kind.value for kind in ImportType}:
            msg = f"Unknown import type: {import_type}"
            raise ValidationError(msg)
        if isinstance(total_files, bool) or not isinstance(total_files, int) or total_files <= 0:
            msg = "total_files must be a positive integer"
            raise ValidationError(msg)
        statement_type = getattr(statement_type, "value", statement_type)
        async with session_scope(self.session_factory) as session:
            batch = ImportBatch(
                user_id=owner_id,
                import_type=import_type,
                statement_type=statement_type,
                source_format=source_format,
                total_files=total_files,
                status=BatchStatus.PENDING.value,
            )
            session.add(batch)
            await session.flush()
            batch_id = batch.id
        logger.info(f"Created batch {batch_id}: {import_type}, {total_files} files, owner {owner_id}")
        return batch_id

    async def add_item(
        self,
        owner_id: str,
        batch_id: str,
        file_name: str,
        file_url: str | None,
        file_size_bytes: int | None = None,
        order: int = 0,
    ) -> str:
        """Register a file in the batch and submit it to the queue."""
        if order < 0:
            msg = "order must not be negative"
            raise ValidationError(msg)
        async with session_scope(self.session_factory) as session:
            batch = await self._get_batch(session, owner_id, batch_id)
            if batch.status in STICKY_BATCH_STATUSES:
                msg = f"Batch is {batch.status}"
                raise ValidationError(msg)
            existing = await session.scalars(select(ImportBatchItem.id).where(ImportBatchItem.batch_id == batch_id))
            if len(existing.all()) >= batch.total_files:
                msg = f"Batch already holds {batch.total_files} items"
                raise ValidationError(msg)
            item = ImportBatchItem(
                batch_id=batch_id,
                file_name=file_name,
                file_url=file_url or None,
                file_size_bytes=file_size_bytes,
                order=order,
                status=ItemStatus.PENDING.value,
                retry_count=0,
            )
            session.add(item)
            await session.flush()
            item_id = item.id
            payload = build_job_payload(batch, item) if item.file_url else None
        if payload is not None and self.queue is not None:
            try:
                await self.queue.enqueue(payload)
            except EnqueueFailure as exc:
                await self._mark_enqueue_failed(item_id, batch_id, exc)
                raise
        return item_id

    async def list_batches(
        self, owner_id: str, limit: int = 20, cursor: str | None = None, status: str | None = None
    ) -> BatchPage:
        """Newest first, `limit` per page; `cursor` is the id of the last batch on the previous page."""
        if limit < 1 or limit > MAX_PAGE_SIZE:
            msg = f"limit must be between 1 and {MAX_PAGE_SIZE}"
            raise ValidationError(msg)
        if status is not None and status not in {s.value for s in BatchStatus}:
            msg = f"Unknown batch status: {status}"
            raise ValidationError(msg)
        async with self.session_factory() as session:
            query = select(ImportBatch).where(ImportBatch.user_id == owner_id)
            if status:
                query = query.where(ImportBatch.status == status)
            if cursor:
                anchor = await session.scalar(
                    select(ImportBatch).where(ImportBatch.id == cursor, ImportBatch.user_id == owner_id)
                )
                if anchor is not None:
                    query = query.where(
                        or_(
                            ImportBatch.created_at < anchor.created_at,
                            and_(ImportBatch.created_at == anchor.created_at, ImportBatch.id < anchor.id),
                        )
                    )
            result = await session.scalars(
                query.order_by(ImportBatch.created_at.desc(), ImportBatch.id.desc()).limit(limit + 1)
            )
            batches = list(result.all())
        has_more = len(batches) > limit
        page = batches[:limit]
        return BatchPage(
            batches=[batch_view(batch) for batch in page],
            next_cursor=page[-1].id if has_more and page else None,
        )

    async def list_items(self, owner_id: str, batch_id: str, status: str | None = None) -> list[BatchItemView]:
        async with self.session_factory() as session:
            await self._get_batch(session, owner_id, batch_id)
            query = select(ImportBatchItem).where(ImportBatchItem.batch_id == batch_id)
            if status:
                query = query.where(ImportBatchItem.status == status)
            result = await session.scalars(query.order_by(ImportBatchItem.order, ImportBatchItem.created_at))
            return [item_view(item) for item in result.all()]

    async def get_batch_summary(self, owner_id: str, batch_id: str) -> BatchSummary:
        """The batch with every item, in processing order."""
        batch = await self.get_batch(owner_id, batch_id)
        items = await self.list_items(owner_id, batch_id)
        return BatchSummary(batch=batch, items=items)

    async def get_progress(self, owner_id: str, batch_id: str) -> BatchProgress:
        async with self.session_factory() as session:
            batch = await self._get_batch(session, owner_id, batch_id)
            return compute_progress(batch)

    async def complete_batch(
        self, owner_id: str, batch_id: str, status: BatchStatus | str, errors: list[str] | None = None
    ) -> BatchView:
        """Explicitly finish a batch as completed or failed."""
        status = status.value if isinstance(status, BatchStatus) else status
        if status not in {BatchStatus.COMPLETED.value, BatchStatus.FAILED.value}:
            msg = "A batch can only be completed as 'completed' or 'failed'"
            raise ValidationError(msg)
        async with session_scope(self.session_factory) as session:
            batch = await self._get_batch(session, owner_id, batch_id)
            batch.status = status
            batch.completed_at = utcnow()
            batch.estimated_completion_at = None
            if errors is not None:
                batch.errors = serialize_errors(errors)
            view = batch_view(batch)
        logger.info(f"Batch {batch_id} marked {status}")
        return view

    async def cancel_batch(self, owner_id: str, batch_id: str) -> BatchView:
        """Stop accepting work for a batch. Items already processed are kept."""
        async with session_scope(self.session_factory) as session:
            batch = await self._get_batch(session, owner_id, batch_id)
            if batch.status in {BatchStatus.COMPLETED.value, *STICKY_BATCH_STATUSES}:
                msg = f"Batch is already {batch.status}"
                raise ValidationError(msg)
            batch.status = BatchStatus.CANCELLED.value
            batch.completed_at = utcnow()
            batch.estimated_completion_at = None
            view = batch_view(batch)
        logger.info(f"Batch {batch_id} cancelled")
        return view

    async def is_cancelled(self, batch_id: str) -> bool:
        async with self.session_factory() as session:
            status = await session.scalar(select(ImportBatch.status).where(ImportBatch.id == batch_id))
        return status == BatchStatus.CANCELLED.value

    async def recompute_batch_stats(self, batch_id: str) -> None:
        """Derive counts and status from the item rows. Safe to call any number of times."""
        async with session_scope(self.session_factory) as session:
            batch = await session.get(ImportBatch, batch_id)
            if batch is None:
                return
            result = await session.scalars(select(ImportBatchItem.status).where(ImportBatchItem.batch_id == batch_id))
            statuses = list(result.all())
            successful = statuses.count(ItemStatus.COMPLETED.value)
            failed = statuses.count(ItemStatus.FAILED.value)
            duplicates = statuses.count(ItemStatus.DUPLICATE.value)
            skipped = statuses.count(ItemStatus.SKIPPED.value)
            processed = successful + failed + duplicates
            batch.processed_files = processed
            batch.successful_files = successful
            batch.failed_files = failed
            batch.duplicate_files = duplicates
            if batch.status in STICKY_BATCH_STATUSES:
                return
            now = utcnow()
            started = processed + skipped > 0 or ItemStatus.PROCESSING.value in statuses
            is_complete = batch.total_files > 0 and processed + skipped >= batch.total_files
            if started and batch.started_at is None:
                batch.started_at = now
            if is_complete:
                batch.status = BatchStatus.COMPLETED.value
                batch.completed_at = batch.completed_at or now
                batch.estimated_completion_at = None
            elif started:
                batch.status = BatchStatus.PROCESSING.value
                batch.completed_at = None
                batch.estimated_completion_at = estimate_completion(
                    processed, max(batch.total_files - processed, 0), batch.started_at, now
                )
            else:
                batch.status = BatchStatus.PENDING.value
                batch.completed_at = None

    # --- Items ---

    async def update_item_status(
        self,
        owner_id: str,
        item_id: str,
        status: ItemStatus | str,
        error_code: str | None = None,
        error_message: str | None = None,
        duplicate_of: str | None = None,
        match_type: str | None = None,
        document_id: str | None = None,
        processing_duration_ms: int | None = None,
    ) -> BatchItemView:
        """Move an item along its state machine and re-derive the batch aggregates."""
        status = status.value if isinstance(status, ItemStatus) else status
        if status not in {s.value for s in ItemStatus}:
            msg = f"Unknown item status: {status}"
            raise ValidationError(msg)
        if status == ItemStatus.DUPLICATE.value and not duplicate_of:
            msg = "A duplicate item must reference the document it duplicates"
            raise ValidationError(msg)
        async with session_scope(self.session_factory) as session:
            _, item = await self._get_item(session, owner_id, item_id)
            allowed = ITEM_TRANSITIONS.get(item.status, set())
            if status not in allowed:
                msg = f"Cannot move item from {item.status} to {status}"
                raise ValidationError(msg)
            item.status = status
            if document_id is not None:
                item.document_id = document_id
            if status == ItemStatus.FAILED.value:
                item.error_code = error_code or "PROCESSING_ERROR"
                item.error_message = error_message
            elif error_code is not None or error_message is not None:
                item.error_code = error_code
                item.error_message = error_message
            if status == ItemStatus.DUPLICATE.value:
                item.duplicate_of_document_id = duplicate_of
                item.duplicate_match_type = match_type or "exact_image"
            if status in FINAL_ITEM_STATUSES:
                item.processed_at = utcnow()
                if processing_duration_ms is not None:
                    item.processing_duration_ms = processing_duration_ms
            batch_id = item.batch_id
            view = item_view(item)
        await self.recompute_batch_stats(batch_id)
        return view

    async def _mark_enqueue_failed(self, item_id: str, batch_id: str, error: DomainError) -> None:
        async with session_scope(self.session_factory) as session:
            item = await session.get(ImportBatchItem, item_id)
            item.status = ItemStatus.FAILED.value
            item.error_code = error.code
            item.error_message = error.message
        await self.recompute_batch_stats(batch_id)
        logger.error(f"Could not enqueue item {item_id}: {error.message}")

    async def _requeue(self, batch: ImportBatch, item: ImportBatchItem) -> None:
        """failed -> pending, then submit; reverts to failed when the queue refuses the job.

        The status change is a conditional update so that of two concurrent retries only one wins.
        """
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                update(ImportBatchItem)
                .where(ImportBatchItem.id == item.id, ImportBatchItem.status == ItemStatus.FAILED.value)
                .values(
                    status=ItemStatus.PENDING.value,
                    retry_count=func.coalesce(ImportBatchItem.retry_count, 0) + 1,
                    error_code=None,
                    error_message=None,
                    processed_at=None,
                )
            )
            if result.rowcount == 0:
                msg = "Item is not in failed status"
                raise ValidationError(msg)
            row = await session.get(ImportBatchItem, item.id)
            payload = build_job_payload(batch, row)
        await self.recompute_batch_stats(batch.id)
        if self.queue is None:
            error = EnqueueFailure("Job queue is not configured")
            await self._mark_enqueue_failed(item.id, batch.id, error)
            raise error
        try:
            await self.queue.enqueue(payload)
        except EnqueueFailure as exc:
            await self._mark_enqueue_failed(item.id, batch.id, exc)
            raise

    async def retry_item(self, owner_id: str, item_id: str) -> BatchItemView:
        """Re-queue one failed item."""
        async with self.session_factory() as session:
            batch, item = await self._get_item(session, owner_id, item_id)
        if batch.status == BatchStatus.CANCELLED.value:
            msg = "Batch is cancelled"
            raise ValidationError(msg)
        if item.status != ItemStatus.FAILED.value:
            msg = "Item is not in failed status"
            raise ValidationError(msg)
        if not item.file_url:
            msg = "Item has no file reference and cannot be retried"
            raise ValidationError(msg)
        await self._requeue(batch, item)
        logger.info(f"Retrying item {item_id} ({item.file_name}), attempt {item.retry_count + 1}")
        async with self.session_factory() as session:
            return item_view(await session.get(ImportBatchItem, item_id))

    async def retry_all_failed(self, owner_id: str, batch_id: str) -> RetryAllResult:
        """Re-queue every failed item of a batch, collecting per-item errors."""
        async with self.session_factory() as session:
            batch = await self._get_batch(session, owner_id, batch_id)
            result = await session.scalars(
                select(ImportBatchItem)
                .where(ImportBatchItem.batch_id == batch_id, ImportBatchItem.status == ItemStatus.FAILED.value)
                .order_by(ImportBatchItem.order)
            )
            failed_items = list(result.all())
        if not failed_items:
            return RetryAllResult(success=True, retried_count=0)
        if batch.status == BatchStatus.CANCELLED.value:
            msg = "Batch is cancelled"
            raise ValidationError(msg)
        retried = 0
        errors: list[str] = []
        for item in failed_items:
            if not item.file_url:
                errors.append(f"{item.file_name}: Missing file reference")
                continue
            try:
                await self._requeue(batch, item)
            except DomainError as exc:
                errors.append(f"{item.file_name}: {exc.message}")
                continue
            retried += 1
        logger.info(f"Bulk retry for batch {batch_id}: {retried}/{len(failed_items)} re-queued")
        return RetryAllResult(success=retried > 0, retried_count=retried, errors=errors)

    async def resume_interrupted(self) -> int:
        """Re-submit items a previous run left pending or processing; returns how many were queued.

        Processing items go back to pending first. Items of cancelled or explicitly failed batches are left alone.
        """
        open_batches = select(ImportBatch.id).where(ImportBatch.status.not_in(STICKY_BATCH_STATUSES))
        async with session_scope(self.session_factory) as session:
            reset = await session.execute(
                update(ImportBatchItem)
                .where(
                    ImportBatchItem.status == ItemStatus.PROCESSING.value,
                    ImportBatchItem.batch_id.in_(open_batches),
                )
                .values(status=ItemStatus.PENDING.value)
            )
            result = await session.execute(
                select(ImportBatch, ImportBatchItem)
                .join(ImportBatch, ImportBatch.id == ImportBatchItem.batch_id)
                .where(
                    ImportBatchItem.status == ItemStatus.PENDING.value,
                    ImportBatchItem.file_url.is_not(None),
                    ImportBatch.status.not_in(STICKY_BATCH_STATUSES),
                )
                .order_by(ImportBatch.created_at, ImportBatchItem.order)
            )
            payloads = [build_job_payload(batch, item) for batch, item in result.all()]
        if reset.rowcount:
            logger.warning(f"Reset {reset.rowcount} interrupted items to pending")
        for batch_id in dict.fromkeys(payload.batch_id for payload in payloads):
            await self.recompute_batch_stats(batch_id)
        if not payloads:
            return 0
        if self.queue is None:
            logger.warning(f"{len(payloads)} pending items found but no job queue is configured")
            return 0
        resumed = 0
        for payload in payloads:
            try:
                await self.queue.enqueue(payload)
            except EnqueueFailure as exc:
                await self._mark_enqueue_failed(payload.item_id, payload.batch_id, exc)
                continue
            resumed += 1
        logger.info(f"Resumed {resumed}/{len(payloads)} pending items")
        return resumed
