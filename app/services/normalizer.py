"""StatementNormalizer: turns spreadsheets and PDF statements into ordered normalized transactions.

Spreadsheets go through a column mapping, either remembered for the owner's bank layout or inferred by the column
mapper, then field conversion and sign resolution. PDFs go through text extraction and the statement extractor;
scanned PDFs fail fast unless the caller explicitly asks for the vision path.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.agents.base import Attachment
from app.agents.column_mapper import ColumnMapper, build_category_context
from app.agents.statement_agent import ExtractedStatement, StatementExtractor
from app.agents.usage import UsageContext
from app.categorization.repositories import CategoryRepository
from app.core.db import StatementMapping, session_scope
from app.core.errors import ExtractionFailure, ScannedDocumentError
from app.core.models import MappingConfig, NormalizationResult, NormalizedTransaction, StatementKind
from app.core.settings import Settings
from app.core.utils import get_logger
from app.services import pdf_service, spreadsheet
from app.services.converters import AmountConverter, DateConverter, DescriptionConverter
from app.services.sign_convention import SignPolicy, resolve_amount

logger = get_logger("statement-importer.normalizer")

PdfReader = Callable[[bytes, int], Awaitable[pdf_service.PdfText]]


class StatementNormalizer:
    """Normalize tabular and PDF statements."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        column_mapper: ColumnMapper,
        extractor: StatementExtractor,
        categories: CategoryRepository,
        settings: Settings,
        policy: SignPolicy | None = None,
        pdf_reader: PdfReader | None = None,
    ) -> None:
        """Initialize the normalizer with its agents; `pdf_reader` defaults to pdfplumber extraction."""
        self.session_factory = session_factory
        self.column_mapper = column_mapper
        self.extractor = extractor
        self.categories = categories
        self.settings = settings
        self.policy = policy or SignPolicy.from_settings(settings)
        self.pdf_reader = pdf_reader or pdf_service.extract_text

    # --- Spreadsheets ---

    async def normalize_spreadsheet(
        self,
        data: bytes,
        file_format: str,
        owner_id: str,
        statement_kind: StatementKind | str | None = None,
    ) -> NormalizationResult:
        """Read, map, convert and sign every data row of a CSV/XLSX/XLS statement."""
        rows = await asyncio.to_thread(spreadsheet.read_rows, data, file_format)
        if not rows:
            msg = "Spreadsheet has no rows"
            raise ExtractionFailure(msg, user_message="The spreadsheet is empty.")
        stats = spreadsheet.analyze_amounts(rows)
        logger.info(
            f"Spreadsheet read: rows={len(rows)}, positive_percent={stats.positive_percent if stats else None}"
        )
        mapping = await self.find_remembered_mapping(owner_id, rows)
        method = "spreadsheet_remembered"
        positive_percent = stats.positive_percent if stats else None
        transactions: list[NormalizedTransaction] = []
        if mapping is not None:
            transactions = self._build_transactions(rows, mapping, statement_kind, positive_percent)
            if not transactions:
                logger.warning(f"Remembered mapping produced no transactions for owner {owner_id}, inferring again")
                await self.forget_mapping(owner_id, rows, mapping)
                mapping = None
        if mapping is None:
            usage_type, income, expense = await self.categories.get_categorized_lists(owner_id)
            mapping = await self.column_mapper.detect(
                rows,
                stats,
                statement_kind,
                owner_id=owner_id,
                category_context=build_category_context(usage_type, income, expense),
            )
            method = "spreadsheet_ai"
            transactions = self._build_transactions(rows, mapping, statement_kind, positive_percent)
            if transactions:
                await self.remember_mapping(owner_id, rows, mapping)
        if not transactions:
            msg = "No transactions found in spreadsheet"
            raise ExtractionFailure(msg, user_message="No transactions were found in the file.")
        return NormalizationResult(
            transactions=transactions,
            currency=(mapping.currency or self.settings.default_currency).upper(),
            confidence=mapping.confidence,
            method=method,
        )

    def _build_transactions(
        self,
        rows: list[list[Any]],
        mapping: MappingConfig,
        statement_kind: StatementKind | str | None,
        positive_percent: int | None,
    ) -> list[NormalizedTransaction]:
        transactions = []
        skipped = 0
        for record in spreadsheet.parse_with_mapping(rows, mapping):
            transaction = self._to_transaction(record, statement_kind, positive_percent)
            if transaction is None:
                skipped += 1
                continue
            transactions.append(transaction)
        if skipped:
            logger.info(f"Skipped {skipped} rows without an amount")
        return transactions

    def _to_transaction(
        self,
        record: dict[str, Any],
        statement_kind: StatementKind | str | None,
        positive_percent: int | None,
    ) -> NormalizedTransaction | None:
        description = record.get("description") or ""
        amount = resolve_amount(
            statement_kind,
            amount=record.get("amount"),
            debit=record.get("debit"),
            credit=record.get("credit"),
            description=" ".join(filter(None, [description, record.get("merchant_name")])),
            reverse_sign=record.get("reverse_sign"),
            positive_percent=positive_percent,
            policy=self.policy,
        )
        if amount is None:
            return None
        return NormalizedTransaction(
            transaction_date=record.get("transaction_date"),
            posted_date=record.get("posted_date"),
            description=description,
            merchant_name=record.get("merchant_name"),
            amount=amount,
            debit=record.get("debit"),
            credit=record.get("credit"),
            balance=record.get("balance"),
            category=record.get("category"),
            reference_number=record.get("reference_number"),
            raw=record.get("raw", {}),
        )

    async def find_remembered_mapping(self, owner_id: str, rows: list[list[Any]]) -> MappingConfig | None:
        """Look for a stored mapping whose header signature appears at its header row."""
        candidates = spreadsheet.candidate_signatures(rows, self.settings.preview_rows)
        if not candidates:
            return None
        by_signature = {signature: idx for idx, signature in candidates}
        async with self.session_factory() as session:
            result = await session.scalars(
                select(StatementMapping).where(
                    StatementMapping.user_id == owner_id,
                    StatementMapping.header_signature.in_(list(by_signature)),
                )
            )
            stored = list(result.all())
        for row in stored:
            mapping = MappingConfig.model_validate(json.loads(row.mapping_json))
            if by_signature.get(row.header_signature) == mapping.header_row_index:
                logger.info(f"Using remembered mapping {row.id} for owner {owner_id}")
                return mapping
        return None

    async def remember_mapping(self, owner_id: str, rows: list[list[Any]], mapping: MappingConfig) -> None:
        """Store an inferred mapping keyed by its header row signature."""
        if mapping.header_row_index >= len(rows):
            return
        signature = spreadsheet.header_signature(rows[mapping.header_row_index])
        if signature is None:
            return
        try:
            async with session_scope(self.session_factory) as session:
                session.add(
                    StatementMapping(
                        user_id=owner_id,
                        header_signature=signature,
                        mapping_json=mapping.model_dump_json(),
                    )
                )
        except IntegrityError:
            logger.info(f"Mapping for this layout already remembered for owner {owner_id}")

    async def forget_mapping(self, owner_id: str, rows: list[list[Any]], mapping: MappingConfig) -> None:
        """Drop the stored mapping for this layout so the next import infers it again."""
        if mapping.header_row_index >= len(rows):
            return
        signature = spreadsheet.header_signature(rows[mapping.header_row_index])
        if signature is None:
            return
        async with session_scope(self.session_factory) as session:
            await session.execute(
                delete(StatementMapping).where(
                    StatementMapping.user_id == owner_id,
                    StatementMapping.header_signature == signature,
                )
            )

    # --- PDFs ---

    async def normalize_pdf(
        self,
        data: bytes,
        owner_id: str,
        statement_kind: StatementKind | str | None = None,
        entity_id: str | None = None,
    ) -> NormalizationResult:
        """Extract PDF text and read transactions from it; scanned PDFs raise ScannedDocumentError."""
        pdf = await self.pdf_reader(data, self.settings.pdf_low_text_threshold)
        if pdf.is_scanned:
            msg = f"PDF has {round(pdf.avg_chars_per_page)} chars per page over {pdf.page_count} pages"
            raise ScannedDocumentError(
                msg, user_message="This PDF looks scanned. Upload a text-based statement or a spreadsheet."
            )
        quality = pdf_service.assess_quality(pdf)
        logger.info(f"PDF text quality {quality} over {pdf.page_count} pages")
        statement = await self.extractor.extract_from_text(
            pdf.text,
            statement_kind,
            context=UsageContext(prompt_type="bank_statement", user_id=owner_id, entity_id=entity_id,
                                 entity_type="document"),
        )
        return self._from_extraction(statement, statement_kind, "pdf_text", quality)

    async def extract_scanned_pdf(
        self,
        data: bytes,
        owner_id: str,
        statement_kind: StatementKind | str | None = None,
        entity_id: str | None = None,
    ) -> NormalizationResult:
        """Vision extraction for scanned PDFs. Only called when the vision fallback is enabled."""
        statement = await self.extractor.extract_from_document(
            Attachment(data=data, media_type="application/pdf"),
            statement_kind,
            context=UsageContext(prompt_type="bank_statement_vision", user_id=owner_id, entity_id=entity_id,
                                 entity_type="document"),
        )
        return self._from_extraction(statement, statement_kind, "pdf_vision", None)

    def _from_extraction(
        self,
        statement: ExtractedStatement,
        statement_kind: StatementKind | str | None,
        method: str,
        quality: float | None,
    ) -> NormalizationResult:
        transactions = []
        for line in statement.transactions:
            raw_amount = AmountConverter.convert(line.amount)
            description = DescriptionConverter.convert(line.description)
            # amounts from the extractor are already signed
            amount = resolve_amount(
                statement_kind,
                amount=raw_amount,
                description=" ".join(filter(None, [description, line.merchant])),
                reverse_sign=False,
                policy=self.policy,
            )
            if amount is None:
                continue
            transactions.append(
                NormalizedTransaction(
                    transaction_date=DateConverter.convert(line.date),
                    posted_date=DateConverter.convert(line.post_date),
                    description=description,
                    merchant_name=DescriptionConverter.convert(line.merchant) or None,
                    amount=amount,
                    raw={"original_description": line.description, "original_amount": str(line.amount)},
                )
            )
        if not transactions:
            msg = "No transactions extracted from PDF"
            raise ExtractionFailure(msg, user_message="No transactions were found in the statement.")
        confidence = statement.confidence if quality is None else min(statement.confidence, quality)
        return NormalizationResult(
            transactions=transactions,
            currency=(statement.currency or self.settings.default_currency).upper(),
            confidence=confidence,
            method=method,
        )

