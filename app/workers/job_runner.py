"""Background processing of one import batch item.

download -> Document with content fingerprint -> duplicate check -> normalize (statements) or extract (receipts)
-> categorize -> persist -> item completed. Any failure is recorded on the item and never reaches sibling items.
"""

import json
import time
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.agents.base import Attachment
from app.agents.receipt_agent import ReceiptExtractor
from app.agents.usage import UsageContext
from app.categorization.engine import CategoryEngine, to_input
from app.categorization.strategies import CategorizationInput
from app.core.db import BankStatement, BankStatementTransaction, Document, Receipt, session_scope
from app.core.errors import (
    DomainError,
    DuplicateFileError,
    ExtractionFailure,
    ScannedDocumentError,
    ValidationError,
    to_user_message,
)
from app.core.models import (
    CategorizationResult,
    DuplicateMatch,
    ImportType,
    ItemStatus,
    JobPayload,
    NormalizationResult,
    ReceiptData,
)
from app.core.settings import Settings
from app.core.utils import format_amount, get_logger, sha256_hex, truncate, utcnow
from app.services.batch_coordinator import BatchCoordinator
from app.services.duplicate_detector import DuplicateDetector
from app.services.file_service import FileService
from app.services.normalizer import StatementNormalizer

logger = get_logger("statement-importer.worker")

MAX_ERROR_LEN = 500
SPREADSHEET_FORMATS = {"csv", "xlsx", "xls"}
IMAGE_FORMATS = {"jpg", "png", "webp", "gif"}
MIME_TYPES = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "pdf": "application/pdf",
    "csv": "text/csv",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "xls": "application/vnd.ms-excel",
}


def document_type_for(import_type: str, file_format: str) -> str:
    """Receipts for receipt batches; in mixed batches images are receipts and everything else a statement."""
    if import_type == ImportType.RECEIPTS.value:
        return "receipt"
    if import_type == ImportType.MIXED.value and file_format in IMAGE_FORMATS:
        return "receipt"
    return "bank_statement"


class JobRunner:
    """JobRunner executes one queued item end to end."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        coordinator: BatchCoordinator,
        files: FileService,
        detector: DuplicateDetector,
        normalizer: StatementNormalizer,
        receipts: ReceiptExtractor,
        engine: CategoryEngine,
        settings: Settings,
    ) -> None:
        """Initialize JobRunner with the services the pipeline calls."""
        self.session_factory = session_factory
        self.coordinator = coordinator
        self.files = files
        self.detector = detector
        self.normalizer = normalizer
        self.receipts = receipts
        self.engine = engine
        self.settings = settings

    async def discard_unfinished_documents(self) -> int:
        """Delete documents an interrupted run left in processing; their items are processed again from scratch."""
        async with self.session_factory() as session:
            result = await session.scalars(select(Document.id).where(Document.status == "processing"))
            document_ids = list(result.all())
        for document_id in document_ids:
            await self._delete_document(document_id)
        if document_ids:
            logger.warning(f"Discarded {len(document_ids)} documents left unfinished by an earlier run")
        return len(document_ids)

    async def run_job(self, payload: JobPayload) -> None:
        """Process one item; the item ends completed, duplicate, skipped or failed."""
        owner_id = payload.owner_id
        if await self.coordinator.is_cancelled(payload.batch_id):
            logger.info(f"Batch {payload.batch_id} cancelled, skipping item {payload.item_id}")
            await self._transition(owner_id, payload.item_id, ItemStatus.SKIPPED)
            return
        try:
            await self.coordinator.update_item_status(owner_id, payload.item_id, ItemStatus.PROCESSING)
        except ValidationError as exc:
            logger.warning(f"Item {payload.item_id} not picked up: {exc.message}")
            return
        logger.info(f"Starting item {payload.item_id}: {payload.file_name} ({payload.file_format})")
        started = time.monotonic()
        document_id = None
        try:
            data = await self.files.fetch(payload.file_url)
            content_hash = sha256_hex(data)
            try:
                await self.detector.ensure_unique(owner_id, content_hash)
            except DuplicateFileError as exc:
                match = DuplicateMatch(
                    document_id=exc.duplicate_of_document_id, match_type=exc.match_type, confidence="high"
                )
                await self._mark_duplicate(payload, match, started, to_user_message(exc))
                return
            document_type = document_type_for(payload.import_type, payload.file_format)
            document_id = await self._create_document(payload, document_type, data, content_hash)
            match = await self.detector.detect(
                owner_id, content_hash, len(data), exclude_document_id=document_id
            )
            if match is not None:
                await self._delete_document(document_id)
                document_id = None
                await self._mark_duplicate(payload, match, started)
                return
            if document_type == "receipt":
                match = await self._process_receipt(payload, document_id, data)
                if match is not None:
                    await self._delete_document(document_id)
                    document_id = None
                    await self._mark_duplicate(payload, match, started)
                    return
            else:
                await self._process_statement(payload, document_id, data)
            await self.coordinator.update_item_status(
                owner_id,
                payload.item_id,
                ItemStatus.COMPLETED,
                document_id=document_id,
                processing_duration_ms=self._elapsed_ms(started),
            )
            logger.info(f"Completed item {payload.item_id} in {self._elapsed_ms(started)} ms")
        except Exception as exc:
            logger.exception(f"Error processing item {payload.item_id} ({payload.file_name})")
            if document_id is not None:
                await self._delete_document(document_id)
            code = exc.code if isinstance(exc, DomainError) else "PROCESSING_ERROR"
            await self._transition(
                owner_id,
                payload.item_id,
                ItemStatus.FAILED,
                error_code=code,
                error_message=truncate(to_user_message(exc), MAX_ERROR_LEN),
                processing_duration_ms=self._elapsed_ms(started),
            )

    # --- Pipeline steps ---

    async def _create_document(self, payload: JobPayload, document_type: str, data: bytes, content_hash: str) -> str:
        async with session_scope(self.session_factory) as session:
            document = Document(
                user_id=payload.owner_id,
                document_type=document_type,
                file_format=payload.file_format,
                file_name=payload.file_name,
                file_url=payload.file_url,
                file_size_bytes=len(data),
                content_hash=content_hash,
                mime_type=MIME_TYPES.get(payload.file_format),
                status="processing",
                import_batch_id=payload.batch_id,
            )
            session.add(document)
            await session.flush()
            return document.id

    async def _normalize(self, payload: JobPayload, document_id: str, data: bytes) -> NormalizationResult:
        if payload.file_format in SPREADSHEET_FORMATS:
            return await self.normalizer.normalize_spreadsheet(
                data, payload.file_format, payload.owner_id, payload.statement_type
            )
        if payload.file_format == "pdf":
            try:
                return await self.normalizer.normalize_pdf(
                    data, payload.owner_id, payload.statement_type, entity_id=document_id
                )
            except ScannedDocumentError:
                if not self.settings.vision_fallback_enabled:
                    raise
                logger.info(f"Scanned PDF {payload.file_name}, using vision extraction")
                return await self.normalizer.extract_scanned_pdf(
                    data, payload.owner_id, payload.statement_type, entity_id=document_id
                )
        msg = f"Unsupported statement format: {payload.file_format}"
        raise ExtractionFailure(msg, user_message="Statements must be PDF, CSV, XLSX or XLS files.")

    async def _process_statement(self, payload: JobPayload, document_id: str, data: bytes) -> None:
        result = await self._normalize(payload, document_id, data)
        inputs = [to_input(t, payload.statement_type, "bank_transaction") for t in result.transactions]
        categories = await self.engine.categorize_many(inputs, payload.owner_id)
        currency = result.currency or self.settings.default_currency
        async with session_scope(self.session_factory) as session:
            statement = BankStatement(
                document_id=document_id,
                user_id=payload.owner_id,
                statement_type=payload.statement_type,
                currency=currency,
                transaction_count=len(result.transactions),
            )
            session.add(statement)
            await session.flush()
            for order, (transaction, category) in enumerate(zip(result.transactions, categories, strict=True)):
                session.add(
                    BankStatementTransaction(
                        bank_statement_id=statement.id,
                        user_id=payload.owner_id,
                        transaction_date=transaction.transaction_date,
                        posted_date=transaction.posted_date,
                        description=transaction.description,
                        merchant_name=transaction.merchant_name,
                        reference_number=transaction.reference_number,
                        amount=format_amount(transaction.amount),
                        balance=format_amount(transaction.balance),
                        currency=currency,
                        category_id=category.category_id,
                        category_name=category.category_name,
                        business_id=category.business_id,
                        categorization_method=category.method,
                        categorization_confidence=category.confidence,
                        order=order,
                        raw_json=json.dumps(transaction.raw, default=str),
                    )
                )
            await self._finish_document(session, document_id, result.method, result.confidence)
        logger.info(f"Stored {len(result.transactions)} transactions for document {document_id} via {result.method}")

    async def _process_receipt(self, payload: JobPayload, document_id: str, data: bytes) -> DuplicateMatch | None:
        """Extract and store a receipt; returns the match instead when it duplicates an earlier one."""
        attachment = Attachment(data=data, media_type=MIME_TYPES.get(payload.file_format, "image/jpeg"))
        receipt = await self.receipts.extract(
            attachment,
            context=UsageContext(
                prompt_type="receipt", user_id=payload.owner_id, entity_id=document_id, entity_type="document"
            ),
        )
        if receipt.merchant_name and receipt.date and receipt.total_amount is not None:
            match = await self.detector.detect(
                payload.owner_id,
                None,
                len(data),
                merchant=receipt.merchant_name,
                date=receipt.date,
                amount=receipt.total_amount,
                exclude_document_id=document_id,
            )
            if match is not None:
                return match
        category = await self._categorize_receipt(payload.owner_id, document_id, receipt)
        async with session_scope(self.session_factory) as session:
            session.add(
                Receipt(
                    document_id=document_id,
                    user_id=payload.owner_id,
                    merchant_name=receipt.merchant_name,
                    date=receipt.date,
                    total_amount=format_amount(receipt.total_amount),
                    currency=receipt.currency,
                    category_id=category.category_id,
                    category_name=category.category_name,
                    business_id=category.business_id,
                )
            )
            await self._finish_document(session, document_id, "receipt_vision", None)
        return None

    async def _categorize_receipt(self, owner_id: str, document_id: str, receipt: ReceiptData) -> CategorizationResult:
        if not receipt.merchant_name and not receipt.description:
            return CategorizationResult.none()
        amount = -abs(receipt.total_amount) if receipt.total_amount is not None else Decimal(0)
        return await self.engine.categorize(
            CategorizationInput(
                merchant_name=receipt.merchant_name,
                description=receipt.description,
                amount=str(amount),
                entity_id=document_id,
                entity_type="receipt",
            ),
            owner_id,
            transaction_type="expense",
        )

    async def _finish_document(
        self, session: AsyncSession, document_id: str, method: str, confidence: float | None
    ) -> None:
        document = await session.get(Document, document_id)
        document.status = "completed"
        document.extraction_method = method
        document.extraction_confidence = confidence
        document.processed_at = utcnow()

    # --- Outcomes ---

    async def _mark_duplicate(
        self, payload: JobPayload, match: DuplicateMatch, started: float, message: str | None = None
    ) -> None:
        logger.info(
            f"Item {payload.item_id} duplicates document {match.document_id} "
            f"({match.match_type}, {match.confidence})"
        )
        await self.coordinator.update_item_status(
            payload.owner_id,
            payload.item_id,
            ItemStatus.DUPLICATE,
            error_message=message,
            duplicate_of=match.document_id,
            match_type=match.match_type,
            processing_duration_ms=self._elapsed_ms(started),
        )

    async def _transition(self, owner_id: str, item_id: str, status: ItemStatus, **fields: object) -> None:
        try:
            await self.coordinator.update_item_status(owner_id, item_id, status, **fields)
        except DomainError:
            logger.exception(f"Could not move item {item_id} to {status.value}")

    async def _delete_document(self, document_id: str) -> None:
        """Remove a document and everything hanging off it; failures are only logged."""
        try:
            async with session_scope(self.session_factory) as session:
                statement_ids = select(BankStatement.id).where(BankStatement.document_id == document_id)
                await session.execute(
                    delete(BankStatementTransaction).where(BankStatementTransaction.bank_statement_id.in_(statement_ids))
                )
                await session.execute(delete(BankStatement).where(BankStatement.document_id == document_id))
                await session.execute(delete(Receipt).where(Receipt.document_id == document_id))
                await session.execute(delete(Document).where(Document.id == document_id))
        except Exception:
            logger.exception(f"Cleanup of document {document_id} failed")

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
