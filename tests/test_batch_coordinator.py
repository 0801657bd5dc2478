"""Tests for batch lifecycle, derived aggregates, retries and pagination."""

from datetime import UTC, datetime, timedelta

import pytest
from conftest import OTHER_OWNER, OWNER, FakeQueue

from app.core.db import ImportBatch, ImportBatchItem, session_scope
from app.core.errors import EnqueueFailure, UnauthorizedError, ValidationError
from app.core.models import BatchStatus, ItemStatus
from app.services.batch_coordinator import (
    BatchCoordinator,
    compute_progress,
    deserialize_errors,
    estimate_completion,
    infer_file_format,
    serialize_errors,
)


async def _fail_item(coordinator: BatchCoordinator, item_id: str, message: str = "boom") -> None:
    await coordinator.update_item_status(OWNER, item_id, ItemStatus.PROCESSING)
    await coordinator.update_item_status(OWNER, item_id, ItemStatus.FAILED, error_message=message)


async def test_create_batch_validation(session_factory) -> None:
    coordinator = BatchCoordinator(session_factory)
    for import_type, total in (("receipts", 0), ("receipts", -1), ("invoices", 2), ("receipts", True)):
        with pytest.raises(ValidationError):
            await coordinator.create_batch(OWNER, import_type, total)
    with pytest.raises(UnauthorizedError):
        await coordinator.create_batch("", "receipts", 1)

    batch_id = await coordinator.create_batch(OWNER, "bank_statements", 3, statement_type="credit_card")
    batch = await coordinator.get_batch(OWNER, batch_id)
    if (batch.status, batch.total_files, batch.processed_files, batch.statement_type) != (
        "pending",
        3,
        0,
        "credit_card",
    ):
        msg = f"Unexpected new batch {batch}"
        raise AssertionError(msg)


async def test_other_owner_cannot_see_batch(session_factory) -> None:
    coordinator = BatchCoordinator(session_factory)
    batch_id = await coordinator.create_batch(OWNER, "receipts", 1)
    with pytest.raises(UnauthorizedError):
        await coordinator.get_progress(OTHER_OWNER, batch_id)
    with pytest.raises(UnauthorizedError):
        await coordinator.add_item(OTHER_OWNER, batch_id, "a.jpg", "https://files.example.com/a.jpg")


async def test_add_item_enqueues_payload(session_factory, fake_queue) -> None:
    coordinator = BatchCoordinator(session_factory, fake_queue)
    batch_id = await coordinator.create_batch(OWNER, "bank_statements", 2, statement_type="bank_account")
    item_id = await coordinator.add_item(
        OWNER, batch_id, "march.csv", "https://files.example.com/uploads/march.csv?sig=1", 2048, order=1
    )
    payload = fake_queue.payloads[0]
    if (payload.item_id, payload.file_format, payload.statement_type, payload.owner_id) != (
        item_id,
        "csv",
        "bank_account",
        OWNER,
    ):
        msg = f"Unexpected payload {payload}"
        raise AssertionError(msg)

    await coordinator.add_item(OWNER, batch_id, "april.csv", "https://files.example.com/april.csv")
    with pytest.raises(ValidationError):
        await coordinator.add_item(OWNER, batch_id, "may.csv", "https://files.example.com/may.csv")
    with pytest.raises(ValidationError):
        await coordinator.add_item(OWNER, batch_id, "neg.csv", "https://files.example.com/neg.csv", order=-1)


async def test_enqueue_failure_marks_item_failed(session_factory) -> None:
    coordinator = BatchCoordinator(session_factory, FakeQueue(fail=True))
    batch_id = await coordinator.create_batch(OWNER, "receipts", 1)
    with pytest.raises(EnqueueFailure):
        await coordinator.add_item(OWNER, batch_id, "a.jpg", "https://files.example.com/a.jpg")
    items = await coordinator.list_items(OWNER, batch_id)
    if (items[0].status, items[0].error_code) != ("failed", "ENQUEUE_FAILED"):
        msg = f"Expected the item to be failed with ENQUEUE_FAILED, got {items[0]}"
        raise AssertionError(msg)
    progress = await coordinator.get_progress(OWNER, batch_id)
    if (progress.failed, progress.status) != (1, "completed"):
        msg = f"Unexpected progress {progress}"
        raise AssertionError(msg)


async def test_progress_from_zero_to_complete(session_factory, fake_queue) -> None:
    coordinator = BatchCoordinator(session_factory, fake_queue)
    batch_id = await coordinator.create_batch(OWNER, "receipts", 10)
    item_ids = [
        await coordinator.add_item(OWNER, batch_id, f"r{idx}.jpg", f"https://files.example.com/r{idx}.jpg", order=idx)
        for idx in range(10)
    ]
    progress = await coordinator.get_progress(OWNER, batch_id)
    if (progress.percentage, progress.is_complete, progress.status) != (0, False, "pending"):
        msg = f"Unexpected empty progress {progress}"
        raise AssertionError(msg)

    for idx, item_id in enumerate(item_ids):
        await coordinator.update_item_status(OWNER, item_id, ItemStatus.PROCESSING)
        if idx == 0:
            await coordinator.update_item_status(OWNER, item_id, ItemStatus.DUPLICATE, duplicate_of="doc-1")
        elif idx == 1:
            await coordinator.update_item_status(OWNER, item_id, ItemStatus.FAILED, error_message="unreadable")
        else:
            await coordinator.update_item_status(OWNER, item_id, ItemStatus.COMPLETED, processing_duration_ms=120)
        if idx == 4:
            midway = await coordinator.get_progress(OWNER, batch_id)
            if (midway.percentage, midway.status, midway.remaining) != (50, "processing", 5):
                msg = f"Unexpected midway progress {midway}"
                raise AssertionError(msg)

    progress = await coordinator.get_progress(OWNER, batch_id)
    if (progress.percentage, progress.is_complete, progress.status) != (100, True, "completed"):
        msg = f"Unexpected final progress {progress}"
        raise AssertionError(msg)
    if (progress.successful, progress.failed, progress.duplicates) != (8, 1, 1):
        msg = f"Unexpected counts {progress}"
        raise AssertionError(msg)
    if progress.estimated_completion is not None:
        msg = "A completed batch has no completion estimate"
        raise AssertionError(msg)


async def test_item_transitions_are_enforced(session_factory, fake_queue) -> None:
    coordinator = BatchCoordinator(session_factory, fake_queue)
    batch_id = await coordinator.create_batch(OWNER, "receipts", 1)
    item_id = await coordinator.add_item(OWNER, batch_id, "a.jpg", "https://files.example.com/a.jpg")
    with pytest.raises(ValidationError):
        await coordinator.update_item_status(OWNER, item_id, ItemStatus.COMPLETED)
    await coordinator.update_item_status(OWNER, item_id, ItemStatus.PROCESSING)
    with pytest.raises(ValidationError):
        await coordinator.update_item_status(OWNER, item_id, ItemStatus.DUPLICATE)
    with pytest.raises(UnauthorizedError):
        await coordinator.update_item_status(OTHER_OWNER, item_id, ItemStatus.COMPLETED)
    failed = await coordinator.update_item_status(OWNER, item_id, ItemStatus.FAILED)
    if failed.error_code != "PROCESSING_ERROR" or failed.processed_at is None:
        msg = f"Unexpected failed item {failed}"
        raise AssertionError(msg)
    with pytest.raises(ValidationError):
        await coordinator.update_item_status(OWNER, item_id, ItemStatus.PROCESSING)


async def test_retry_item_reopens_batch(session_factory, fake_queue) -> None:
    coordinator = BatchCoordinator(session_factory, fake_queue)
    batch_id = await coordinator.create_batch(OWNER, "receipts", 1)
    item_id = await coordinator.add_item(OWNER, batch_id, "a.jpg", "https://files.example.com/a.jpg")
    await _fail_item(coordinator, item_id)
    if (await coordinator.get_batch(OWNER, batch_id)).status != "completed":
        msg = "Expected the batch to complete once its only item failed"
        raise AssertionError(msg)

    retried = await coordinator.retry_item(OWNER, item_id)
    if (retried.status, retried.retry_count, retried.error_message, retried.processed_at) != ("pending", 1, None, None):
        msg = f"Unexpected retried item {retried}"
        raise AssertionError(msg)
    if len(fake_queue.payloads) != 2:
        msg = f"Expected a second submission, got {len(fake_queue.payloads)}"
        raise AssertionError(msg)
    batch = await coordinator.get_batch(OWNER, batch_id)
    if (batch.status, batch.failed_files, batch.processed_files) != ("pending", 0, 0):
        msg = f"Expected the batch to reopen, got {batch}"
        raise AssertionError(msg)

    with pytest.raises(ValidationError):
        await coordinator.retry_item(OWNER, item_id)


async def test_stale_retry_loses_to_the_first(session_factory, fake_queue) -> None:
    coordinator = BatchCoordinator(session_factory, fake_queue)
    batch_id = await coordinator.create_batch(OWNER, "receipts", 1)
    item_id = await coordinator.add_item(OWNER, batch_id, "a.jpg", "https://files.example.com/a.jpg")
    await _fail_item(coordinator, item_id)
    # Both callers read the item while it was still failed.
    async with session_factory() as session:
        batch = await session.get(ImportBatch, batch_id)
        stale_item = await session.get(ImportBatchItem, item_id)

    await coordinator.retry_item(OWNER, item_id)
    with pytest.raises(ValidationError):
        await coordinator._requeue(batch, stale_item)

    items = await coordinator.list_items(OWNER, batch_id)
    if (items[0].status, items[0].retry_count, len(fake_queue.payloads)) != ("pending", 1, 2):
        msg = f"Expected one accepted retry, got {items[0].status}, {items[0].retry_count}, {len(fake_queue.payloads)}"
        raise AssertionError(msg)


async def test_retry_rejects_missing_file_reference(session_factory, fake_queue) -> None:
    coordinator = BatchCoordinator(session_factory, fake_queue)
    batch_id = await coordinator.create_batch(OWNER, "receipts", 2)
    item_id = await coordinator.add_item(OWNER, batch_id, "lost.jpg", None)
    if fake_queue.payloads:
        msg = "Items without a file reference are not submitted"
        raise AssertionError(msg)
    await _fail_item(coordinator, item_id)
    with pytest.raises(ValidationError):
        await coordinator.retry_item(OWNER, item_id)

    other_id = await coordinator.add_item(OWNER, batch_id, "b.jpg", "https://files.example.com/b.jpg")
    await _fail_item(coordinator, other_id)
    result = await coordinator.retry_all_failed(OWNER, batch_id)
    if (result.success, result.retried_count, result.errors) != (True, 1, ["lost.jpg: Missing file reference"]):
        msg = f"Unexpected bulk retry result {result}"
        raise AssertionError(msg)


async def test_retry_all_with_nothing_failed(session_factory, fake_queue) -> None:
    coordinator = BatchCoordinator(session_factory, fake_queue)
    batch_id = await coordinator.create_batch(OWNER, "receipts", 1)
    result = await coordinator.retry_all_failed(OWNER, batch_id)
    if (result.success, result.retried_count, result.errors) != (True, 0, []):
        msg = f"Unexpected empty retry result {result}"
        raise AssertionError(msg)


async def test_retry_reverts_when_queue_refuses(session_factory) -> None:
    queue = FakeQueue()
    coordinator = BatchCoordinator(session_factory, queue)
    batch_id = await coordinator.create_batch(OWNER, "receipts", 1)
    item_id = await coordinator.add_item(OWNER, batch_id, "a.jpg", "https://files.example.com/a.jpg")
    await _fail_item(coordinator, item_id)
    queue.fail = True
    result = await coordinator.retry_all_failed(OWNER, batch_id)
    if result.success or result.retried_count != 0 or not result.errors[0].startswith("a.jpg: "):
        msg = f"Unexpected result when the queue refuses {result}"
        raise AssertionError(msg)
    items = await coordinator.list_items(OWNER, batch_id)
    if (items[0].status, items[0].error_code, items[0].retry_count) != ("failed", "ENQUEUE_FAILED", 1):
        msg = f"Expected the item back in failed, got {items[0]}"
        raise AssertionError(msg)


async def test_cancel_and_complete(session_factory, fake_queue) -> None:
    coordinator = BatchCoordinator(session_factory, fake_queue)
    batch_id = await coordinator.create_batch(OWNER, "receipts", 2)
    item_id = await coordinator.add_item(OWNER, batch_id, "a.jpg", "https://files.example.com/a.jpg")
    cancelled = await coordinator.cancel_batch(OWNER, batch_id)
    if cancelled.status != "cancelled" or not await coordinator.is_cancelled(batch_id):
        msg = f"Expected a cancelled batch, got {cancelled}"
        raise AssertionError(msg)
    await coordinator.update_item_status(OWNER, item_id, ItemStatus.SKIPPED)
    if (await coordinator.get_batch(OWNER, batch_id)).status != "cancelled":
        msg = "Item transitions must not overwrite a cancelled batch"
        raise AssertionError(msg)
    with pytest.raises(ValidationError):
        await coordinator.cancel_batch(OWNER, batch_id)
    with pytest.raises(ValidationError):
        await coordinator.add_item(OWNER, batch_id, "b.jpg", "https://files.example.com/b.jpg")

    other_id = await coordinator.create_batch(OWNER, "receipts", 1)
    with pytest.raises(ValidationError):
        await coordinator.complete_batch(OWNER, other_id, BatchStatus.PROCESSING)
    done = await coordinator.complete_batch(OWNER, other_id, "failed", errors=["storage offline"])
    if (done.status, done.errors) != ("failed", ["storage offline"]) or done.completed_at is None:
        msg = f"Unexpected explicitly failed batch {done}"
        raise AssertionError(msg)


async def test_resume_interrupted_items(session_factory, fake_queue) -> None:
    before_restart = BatchCoordinator(session_factory, fake_queue)
    batch_id = await before_restart.create_batch(OWNER, "receipts", 4)
    urls = [f"https://files.example.com/r{idx}.jpg" for idx in range(3)]
    running, waiting, done = [
        await before_restart.add_item(OWNER, batch_id, f"r{idx}.jpg", url, order=idx) for idx, url in enumerate(urls)
    ]
    await before_restart.add_item(OWNER, batch_id, "lost.jpg", None, order=3)
    await before_restart.update_item_status(OWNER, running, ItemStatus.PROCESSING)
    await before_restart.update_item_status(OWNER, done, ItemStatus.PROCESSING)
    await before_restart.update_item_status(OWNER, done, ItemStatus.COMPLETED)
    cancelled_id = await before_restart.create_batch(OWNER, "receipts", 1)
    await before_restart.add_item(OWNER, cancelled_id, "c.jpg", "https://files.example.com/c.jpg")
    await before_restart.cancel_batch(OWNER, cancelled_id)

    queue = FakeQueue()
    resumed = await BatchCoordinator(session_factory, queue).resume_interrupted()
    if (resumed, [payload.item_id for payload in queue.payloads]) != (2, [running, waiting]):
        msg = f"Expected the running and waiting items to be resubmitted, got {resumed}: {queue.payloads}"
        raise AssertionError(msg)
    items = {item.id: item.status for item in await before_restart.list_items(OWNER, batch_id)}
    if (items[running], items[waiting], items[done]) != ("pending", "pending", "completed"):
        msg = f"Unexpected item statuses after restart {items}"
        raise AssertionError(msg)
    if (await before_restart.get_batch(OWNER, cancelled_id)).status != "cancelled":
        msg = "A cancelled batch must stay cancelled"
        raise AssertionError(msg)


async def test_list_batches_pages_newest_first(session_factory) -> None:
    coordinator = BatchCoordinator(session_factory)
    created = []
    for idx in range(5):
        batch_id = await coordinator.create_batch(OWNER, "receipts", idx + 1)
        created.append(batch_id)
    await coordinator.create_batch(OTHER_OWNER, "receipts", 1)
    base = datetime(2024, 1, 1, tzinfo=UTC)
    async with session_scope(session_factory) as session:
        for idx, batch_id in enumerate(created):
            batch = await session.get(ImportBatch, batch_id)
            batch.created_at = base + timedelta(minutes=idx)

    first = await coordinator.list_batches(OWNER, limit=2)
    second = await coordinator.list_batches(OWNER, limit=2, cursor=first.next_cursor)
    third = await coordinator.list_batches(OWNER, limit=2, cursor=second.next_cursor)
    seen = [batch.id for page in (first, second, third) for batch in page.batches]
    if seen != list(reversed(created)):
        msg = f"Expected newest first without overlap, got {seen}"
        raise AssertionError(msg)
    if third.next_cursor is not None:
        msg = "The last page has no cursor"
        raise AssertionError(msg)
    with pytest.raises(ValidationError):
        await coordinator.list_batches(OWNER, limit=101)
    with pytest.raises(ValidationError):
        await coordinator.list_batches(OWNER, status="archived")


def test_errors_round_trip() -> None:
    if deserialize_errors(serialize_errors(["a", "b"])) != ["a", "b"]:
        msg = "Errors should survive storage"
        raise AssertionError(msg)
    if deserialize_errors("not json") != ["not json"] or deserialize_errors(None) != []:
        msg = "Unreadable errors should become a single entry"
        raise AssertionError(msg)


def test_infer_file_format() -> None:
    cases = {
        ("https://x.example.com/a/b/Statement.PDF?token=1", None): "pdf",
        ("s3://bucket/key/receipt.jpeg", None): "jpg",
        ("https://x.example.com/download?id=7", "export.xlsx"): "xlsx",
        ("https://x.example.com/download", None): "jpg",
    }
    for (url, name), expected in cases.items():
        if infer_file_format(url, name) != expected:
            msg = f"infer_file_format({url!r}, {name!r}) should be {expected}"
            raise AssertionError(msg)


def test_progress_estimate() -> None:
    now = datetime(2024, 1, 1, 12, tzinfo=UTC)
    estimate = estimate_completion(2, 8, now - timedelta(seconds=20), now)
    if estimate != now + timedelta(seconds=80):
        msg = f"Unexpected estimate {estimate}"
        raise AssertionError(msg)
    batch = ImportBatch(status="processing", total_files=3, processed_files=1, successful_files=1)
    progress = compute_progress(batch, now)
    if (progress.percentage, progress.remaining, progress.estimated_completion) != (33, 2, None):
        msg = f"Unexpected progress {progress}"
        raise AssertionError(msg)
