"""FastAPI endpoints for the Statement Importer API.

This module defines the batch control surface (create batches, register files, follow progress, retry failures,
finish or cancel), category rule management, category availability and the health check. Every route is scoped to
the owner named in the `X-User-Id` header.
"""

from fastapi import APIRouter, Depends, Query, Response

from app.api.dependencies import get_categories, get_coordinator, get_owner_id, get_queue, get_rules
from app.categorization.repositories import CategoryRepository, RuleRepository
from app.core.models import (
    AddItemRequest,
    BatchItemView,
    BatchPage,
    BatchProgress,
    BatchStatus,
    BatchSummary,
    BatchView,
    CategoryView,
    CompleteBatchRequest,
    CreateBatchRequest,
    CreatedResponse,
    ItemStatus,
    RetryAllResult,
    RuleRequest,
    RuleToggleRequest,
    RuleView,
    UpdateItemStatusRequest,
)
from app.core.utils import get_logger
from app.services.batch_coordinator import BatchCoordinator
from app.workers.queue import JobQueue

router = APIRouter()
logger = get_logger("statement-importer.api")

NOT_FOUND_EXAMPLE = {"application/json": {"example": {"detail": "Batch not found or unauthorized", "code": "UNAUTHORIZED"}}}


@router.post(
    "/batches",
    status_code=201,
    response_model=CreatedResponse,
    summary="Create an import batch",
    description=(
        "Create a batch that will hold `total_files` files of one import type.\n\n"
        "**Request body:**\n"
        "- `import_type`: `receipts`, `bank_statements` or `mixed`.\n"
        "- `total_files`: positive number of files the batch will hold.\n"
        "- `statement_type` (optional): `bank_account` or `credit_card`; drives the sign convention.\n"
        "- `source_format` (optional): free-form hint such as `csv` or `pdf`.\n\n"
        "**Response:**\n"
        "- 201 Created: `{ 'id': '<uuid>' }`.\n"
        "- 400 Bad Request: invalid import type or file count."
    ),
    response_description="Batch created. Returns its id.",
    responses={
        201: {
            "description": "Batch created.",
            "content": {"application/json": {"example": {"id": "123e4567-e89b-12d3-a456-426614174000"}}},
        },
        400: {
            "description": "Validation failed.",
            "content": {
                "application/json": {
                    "example": {"detail": "total_files must be a positive integer", "code": "VALIDATION_ERROR"}
                }
            },
        },
    },
)
async def create_batch(
    body: CreateBatchRequest,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> CreatedResponse:
    """Create an import batch."""
    logger.info(f"Create batch request: owner={owner_id}, type={body.import_type.value}, files={body.total_files}")
    batch_id = await coordinator.create_batch(
        owner_id,
        body.import_type,
        body.total_files,
        statement_type=body.statement_type.value if body.statement_type else None,
        source_format=body.source_format,
    )
    return CreatedResponse(id=batch_id)


@router.post(
    "/batches/{batch_id}/items",
    status_code=201,
    response_model=CreatedResponse,
    summary="Add a file to a batch",
    description=(
        "Register one file of the batch and queue it for processing.\n\n"
        "**Path parameter:**\n"
        "- `batch_id`: The batch identifier returned by POST /batches.\n\n"
        "**Response:**\n"
        "- 201 Created: `{ 'id': '<item uuid>' }`.\n"
        "- 400 Bad Request: the batch is full, failed or cancelled.\n"
        "- 404 Not Found: unknown batch or another owner's batch.\n"
        "- 503 Service Unavailable: the item was stored but could not be queued; retry it later."
    ),
    response_description="Item created and queued.",
    responses={404: {"description": "Batch not found.", "content": NOT_FOUND_EXAMPLE}, 503: {"description": "Queue unavailable."}},
)
async def add_item(
    batch_id: str,
    body: AddItemRequest,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> CreatedResponse:
    """Add a file to a batch."""
    item_id = await coordinator.add_item(
        owner_id, batch_id, body.file_name, body.file_url, body.file_size_bytes, body.order
    )
    return CreatedResponse(id=item_id)


@router.get(
    "/batches",
    response_model=BatchPage,
    summary="List import batches",
    description=(
        "List the owner's batches, newest first.\n\n"
        "**Query parameters:**\n"
        "- `limit`: page size, 1 to 100 (default 20).\n"
        "- `cursor`: `next_cursor` from the previous page.\n"
        "- `status` (optional): only batches in this status."
    ),
)
async def list_batches(
    limit: int = Query(20, ge=1, le=100),
    cursor: str | None = None,
    status: BatchStatus | None = None,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> BatchPage:
    """List import batches."""
    return await coordinator.list_batches(owner_id, limit=limit, cursor=cursor, status=status.value if status else None)


@router.get(
    "/batches/{batch_id}",
    response_model=BatchSummary,
    summary="Get a batch with its items",
    responses={404: {"description": "Batch not found.", "content": NOT_FOUND_EXAMPLE}},
)
async def get_batch(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> BatchSummary:
    """Get a batch with its items."""
    return await coordinator.get_batch_summary(owner_id, batch_id)


@router.get("/batches/{batch_id}/items", response_model=list[BatchItemView], summary="List the items of a batch")
async def list_items(
    batch_id: str,
    status: ItemStatus | None = None,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> list[BatchItemView]:
    return await coordinator.list_items(owner_id, batch_id, status=status.value if status else None)


@router.get(
    "/batches/{batch_id}/progress",
    response_model=BatchProgress,
    summary="Get batch progress",
    description=(
        "Progress derived from the batch counters.\n\n"
        "`percentage` is processed over total files; `estimated_completion` projects the finish time from the rate "
        "so far and is null until at least one file has been processed. `is_complete` is true once every file has "
        "been processed or the batch was completed."
    ),
    responses={
        200: {
            "description": "Progress of the batch.",
            "content": {
                "application/json": {
                    "example": {
                        "percentage": 40,
                        "status": "processing",
                        "processed": 4,
                        "total": 10,
                        "successful": 3,
                        "failed": 1,
                        "duplicates": 0,
                        "remaining": 6,
                        "is_complete": False,
                        "estimated_completion": "2025-05-18T10:31:10Z",
                    }
                }
            },
        },
        404: {"description": "Batch not found.", "content": NOT_FOUND_EXAMPLE},
    },
)
async def get_progress(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> BatchProgress:
    """Get batch progress."""
    return await coordinator.get_progress(owner_id, batch_id)


@router.post(
    "/batches/{batch_id}/retry-failed",
    response_model=RetryAllResult,
    summary="Retry every failed item of a batch",
    description=(
        "Move every failed item back to pending and queue it again. Items without a file reference cannot be "
        "retried and are reported in `errors` as `<file name>: <error>`. `success` is true when at least one item "
        "was queued again, or when there was nothing to retry."
    ),
)
async def retry_failed(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> RetryAllResult:
    """Retry every failed item of a batch."""
    result = await coordinator.retry_all_failed(owner_id, batch_id)
    logger.info(f"Retry-failed for batch {batch_id}: {result.retried_count} re-queued, {len(result.errors)} errors")
    return result


@router.post("/batches/{batch_id}/complete", response_model=BatchView, summary="Mark a batch completed or failed")
async def complete_batch(
    batch_id: str,
    body: CompleteBatchRequest,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> BatchView:
    return await coordinator.complete_batch(owner_id, batch_id, body.status, body.errors)


@router.post("/batches/{batch_id}/cancel", response_model=BatchView, summary="Cancel a batch")
async def cancel_batch(
    batch_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> BatchView:
    """Cancel a batch. Items still waiting are skipped; finished items are kept."""
    return await coordinator.cancel_batch(owner_id, batch_id)


@router.patch(
    "/items/{item_id}/status",
    response_model=BatchItemView,
    summary="Update the status of a batch item",
    description=(
        "Move an item along its state machine: `pending -> processing | skipped` and "
        "`processing -> completed | failed | duplicate | skipped`. Failed items go back to pending only through "
        "the retry endpoint. A `duplicate` status needs `duplicate_of_document_id`."
    ),
    responses={
        400: {"description": "Transition not allowed."},
        404: {"description": "Item not found.", "content": NOT_FOUND_EXAMPLE},
    },
)
async def update_item_status(
    item_id: str,
    body: UpdateItemStatusRequest,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> BatchItemView:
    """Update the status of a batch item."""
    return await coordinator.update_item_status(
        owner_id,
        item_id,
        body.status,
        error_code=body.error_code,
        error_message=body.error_message,
        duplicate_of=body.duplicate_of_document_id,
        match_type=body.duplicate_match_type,
        document_id=body.document_id,
    )


@router.post(
    "/items/{item_id}/retry",
    response_model=BatchItemView,
    summary="Retry a failed item",
    description=(
        "Move a failed item back to pending, increment its retry count, clear its error and queue it again.\n\n"
        "**Response:**\n"
        "- 200 OK: the item, now pending.\n"
        "- 400 Bad Request: the item is not failed or has no file reference.\n"
        "- 404 Not Found: unknown item or another owner's item.\n"
        "- 503 Service Unavailable: the queue refused the job; the item is failed again."
    ),
)
async def retry_item(
    item_id: str,
    owner_id: str = Depends(get_owner_id),
    coordinator: BatchCoordinator = Depends(get_coordinator),
) -> BatchItemView:
    """Retry a failed item."""
    return await coordinator.retry_item(owner_id, item_id)


# --- Category rules ---


@router.get("/rules", response_model=list[RuleView], summary="List category rules")
async def list_rules(
    owner_id: str = Depends(get_owner_id),
    rules: RuleRepository = Depends(get_rules),
) -> list[RuleView]:
    return [RuleView.model_validate(rule, from_attributes=True) for rule in await rules.list_rules(owner_id)]


@router.post(
    "/rules",
    status_code=201,
    response_model=RuleView,
    summary="Create a category rule",
    description=(
        "Create a rule that assigns a category when a transaction field matches.\n\n"
        "- `field`: `merchantName` or `description`.\n"
        "- `match_type`: `exact` (case-insensitive), `contains` or `regex`.\n"
        "- `category_id`: a category available to the owner.\n"
        "- `business_id` (optional): one of the owner's businesses."
    ),
)
async def create_rule(
    body: RuleRequest,
    owner_id: str = Depends(get_owner_id),
    rules: RuleRepository = Depends(get_rules),
) -> RuleView:
    """Create a category rule."""
    rule = await rules.create_rule(
        owner_id, body.field, body.match_type, body.value, body.category_id, body.business_id, body.is_enabled
    )
    return RuleView.model_validate(rule, from_attributes=True)


@router.put("/rules/{rule_id}", response_model=RuleView, summary="Replace a category rule")
async def update_rule(
    rule_id: str,
    body: RuleRequest,
    owner_id: str = Depends(get_owner_id),
    rules: RuleRepository = Depends(get_rules),
) -> RuleView:
    rule = await rules.update_rule(
        owner_id, rule_id, body.field, body.match_type, body.value, body.category_id, body.business_id, body.is_enabled
    )
    return RuleView.model_validate(rule, from_attributes=True)


@router.patch("/rules/{rule_id}/enabled", response_model=RuleView, summary="Enable or disable a category rule")
async def toggle_rule(
    rule_id: str,
    body: RuleToggleRequest,
    owner_id: str = Depends(get_owner_id),
    rules: RuleRepository = Depends(get_rules),
) -> RuleView:
    rule = await rules.set_enabled(owner_id, rule_id, body.is_enabled)
    return RuleView.model_validate(rule, from_attributes=True)


@router.delete("/rules/{rule_id}", status_code=204, summary="Delete a category rule")
async def delete_rule(
    rule_id: str,
    owner_id: str = Depends(get_owner_id),
    rules: RuleRepository = Depends(get_rules),
) -> Response:
    await rules.delete_rule(owner_id, rule_id)
    return Response(status_code=204)


@router.get(
    "/categories",
    response_model=list[CategoryView],
    summary="List categories available to the owner",
    description=(
        "System categories matching the owner's usage preference (personal, business or both) plus the owner's "
        "own categories, without deleted ones.\n\n"
        "**Query parameters:**\n"
        "- `transaction_type` (optional): `income` or `expense`.\n"
        "- `include_user_categories`: include the owner's own categories (default true)."
    ),
)
async def list_categories(
    transaction_type: str | None = None,
    include_user_categories: bool = True,
    owner_id: str = Depends(get_owner_id),
    categories: CategoryRepository = Depends(get_categories),
) -> list[CategoryView]:
    """List categories available to the owner."""
    available = await categories.get_available_categories(
        owner_id, transaction_type=transaction_type, include_user_categories=include_user_categories
    )
    return [CategoryView.model_validate(category, from_attributes=True) for category in available]


@router.get(
    "/health",
    summary="Health check",
    description="Simple health check endpoint. Returns status ok.",
    response_description="Status ok.",
    responses={200: {"description": "API is healthy.", "content": {"application/json": {"example": {"status": "ok"}}}}},
)
async def health(queue: JobQueue = Depends(get_queue)) -> dict:
    """Health check endpoint."""
    if not queue.is_running:
        logger.warning("Health check: job queue is not running")
    return {"status": "ok"}
