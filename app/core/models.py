"""Pydantic models for the Statement Importer.

This module defines the value objects passed between the normalizer, the categorization engine, the duplicate
detector and the batch coordinator, plus the request and response bodies of the HTTP surface.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ImportType(str, Enum):
    """Kinds of files a batch may contain."""

    RECEIPTS = "receipts"
    BANK_STATEMENTS = "bank_statements"
    MIXED = "mixed"


class StatementKind(str, Enum):
    """Statement kinds that drive the sign convention."""

    BANK_ACCOUNT = "bank_account"
    CREDIT_CARD = "credit_card"


class BatchStatus(str, Enum):
    """Lifecycle states of an import batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ItemStatus(str, Enum):
    """Lifecycle states of a batch item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


class NormalizedTransaction(BaseModel):
    """A statement line in canonical form: expenses negative, income positive."""

    transaction_date: datetime | None = None
    posted_date: datetime | None = None
    description: str = ""
    merchant_name: str | None = None
    amount: Decimal
    debit: Decimal | None = None
    credit: Decimal | None = None
    balance: Decimal | None = None
    category: str | None = None
    reference_number: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class CategorizationResult(BaseModel):
    """Outcome of one categorization attempt."""

    category_id: str | None = None
    category_name: str | None = None
    business_id: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    method: str = "none"
    matched_rule_id: str | None = None
    suggested_category: str | None = None

    @classmethod
    def none(cls, suggested_category: str | None = None) -> "CategorizationResult":
        """The result returned when no strategy produced an acceptable category."""
        return cls(confidence=0.0, method="none", suggested_category=suggested_category)


class DuplicateMatch(BaseModel):
    """A prior document judged to be the same upload."""

    document_id: str
    match_type: str
    confidence: str


class ColumnMapping(BaseModel):
    """Where one logical field lives in a spreadsheet."""

    column_index: int = Field(ge=0)
    column_name: str | None = None


class FieldMappings(BaseModel):
    """One optional column per logical field."""

    transaction_date: ColumnMapping | None = None
    posted_date: ColumnMapping | None = None
    description: ColumnMapping | None = None
    amount: ColumnMapping | None = None
    debit: ColumnMapping | None = None
    credit: ColumnMapping | None = None
    balance: ColumnMapping | None = None
    category: ColumnMapping | None = None
    merchant_name: ColumnMapping | None = None
    reference_number: ColumnMapping | None = None

    def mapped(self) -> dict[str, ColumnMapping]:
        """The fields that have a column, by name."""
        return {name: getattr(self, name) for name in MAPPED_FIELDS if getattr(self, name) is not None}


class ConversionInstruction(BaseModel):
    """How to convert the raw values of one field."""

    field: str
    type: str
    format: str | None = None
    excel_serial: bool | None = None
    reverse_sign: bool | None = None
    remove_symbols: bool | None = None
    handle_parentheses: bool | None = None
    trim: bool | None = None
    remove_internal_codes: bool | None = None


class MappingConfig(BaseModel):
    """A full spreadsheet mapping as inferred by the completion service or remembered per layout."""

    header_row_index: int = Field(default=0, ge=0)
    field_mappings: FieldMappings = Field(default_factory=FieldMappings)
    conversions: list[ConversionInstruction] = Field(default_factory=list)
    currency: str | None = None
    confidence: float = 0.5

    def has_any_field(self) -> bool:
        """True when at least one logical field is mapped."""
        return bool(self.field_mappings.mapped())

    def conversion_for(self, field: str) -> ConversionInstruction | None:
        """The last instruction given for a field, if any."""
        found = None
        for instruction in self.conversions:
            if instruction.field == field:
                found = instruction
        return found


MAPPED_FIELDS = (
    "transaction_date",
    "posted_date",
    "description",
    "amount",
    "debit",
    "credit",
    "balance",
    "category",
    "merchant_name",
    "reference_number",
)


class AmountStats(BaseModel):
    """Dataset-wide sign statistics over the numeric columns of a spreadsheet."""

    positive_count: int = 0
    negative_count: int = 0
    positive_percent: int = 0
    sampled_rows: int = 0


class NormalizationResult(BaseModel):
    """Output of the statement normalizer."""

    transactions: list[NormalizedTransaction]
    currency: str | None = None
    confidence: float = 0.0
    method: str = "spreadsheet"


class ReceiptData(BaseModel):
    """Fields read from a receipt image."""

    merchant_name: str | None = None
    date: datetime | None = None
    total_amount: Decimal | None = None
    currency: str | None = None
    description: str | None = None


class BatchProgress(BaseModel):
    """Derived progress for one batch."""

    percentage: int
    status: str
    processed: int
    total: int
    successful: int
    failed: int
    duplicates: int
    remaining: int
    is_complete: bool
    estimated_completion: datetime | None = None


class RetryAllResult(BaseModel):
    """Outcome of a bulk retry."""

    success: bool
    retried_count: int
    errors: list[str] = Field(default_factory=list)


class JobPayload(BaseModel):
    """Everything a queue worker needs to process one item."""

    batch_id: str
    item_id: str
    owner_id: str
    file_url: str
    file_name: str
    file_format: str
    import_type: str
    statement_type: str | None = None
    file_size_bytes: int | None = None


class BatchItemView(BaseModel):
    """API view of a batch item."""

    id: str
    batch_id: str
    document_id: str | None = None
    file_name: str
    file_url: str | None = None
    file_size_bytes: int | None = None
    order: int
    status: str
    retry_count: int
    error_code: str | None = None
    error_message: str | None = None
    duplicate_of_document_id: str | None = None
    duplicate_match_type: str | None = None
    processed_at: datetime | None = None
    processing_duration_ms: int | None = None
    created_at: datetime | None = None


class BatchView(BaseModel):
    """API view of a batch."""

    id: str
    import_type: str
    statement_type: str | None = None
    source_format: str | None = None
    status: str
    total_files: int
    processed_files: int
    successful_files: int
    failed_files: int
    duplicate_files: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_completion_at: datetime | None = None
    errors: list[str] = Field(default_factory=list)
    created_at: datetime | None = None


class BatchSummary(BaseModel):
    """A batch with its items."""

    batch: BatchView
    items: list[BatchItemView]


class BatchPage(BaseModel):
    """One page of batches with the cursor for the next one."""

    batches: list[BatchView]
    next_cursor: str | None = None


class CreateBatchRequest(BaseModel):
    """Body of POST /batches."""

    import_type: ImportType
    total_files: int
    statement_type: StatementKind | None = None
    source_format: str | None = None


class AddItemRequest(BaseModel):
    """Body of POST /batches/{id}/items."""

    file_name: str
    file_url: str
    file_size_bytes: int | None = None
    order: int = 0


class UpdateItemStatusRequest(BaseModel):
    """Body of PATCH /items/{id}/status."""

    status: ItemStatus
    error_code: str | None = None
    error_message: str | None = None
    duplicate_of_document_id: str | None = None
    duplicate_match_type: str | None = None
    document_id: str | None = None


class CompleteBatchRequest(BaseModel):
    """Body of POST /batches/{id}/complete."""

    status: BatchStatus = BatchStatus.COMPLETED
    errors: list[str] = Field(default_factory=list)


class RuleRequest(BaseModel):
    """Body of POST /rules and PUT /rules/{id}."""

    field: str
    match_type: str
    value: str
    category_id: str
    business_id: str | None = None
    is_enabled: bool = True


class RuleView(BaseModel):
    """API view of a category rule."""

    id: str
    field: str
    match_type: str
    value: str
    category_id: str
    business_id: str | None = None
    is_enabled: bool


class CategoryView(BaseModel):
    """API view of an available category."""

    id: str
    name: str
    type: str
    usage_scope: str
    transaction_type: str | None = None


class RuleToggleRequest(BaseModel):
    """Body of PATCH /rules/{id}/enabled."""

    is_enabled: bool


class CreatedResponse(BaseModel):
    """Identifier of a newly created batch or item."""

    id: str
