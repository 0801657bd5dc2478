"""StatementExtractor: reads transactions out of PDF statements with the completion chain."""

from pydantic import BaseModel, Field

from app.agents.base import Attachment
from app.agents.chain import CompletionChain
from app.agents.prompts import (
    BANK_ACCOUNT_TYPE_INSTRUCTIONS,
    CREDIT_CARD_TYPE_INSTRUCTIONS,
    STATEMENT_EXTRACTION_PROMPT,
    STATEMENT_TEXT_SECTION,
    UNKNOWN_TYPE_INSTRUCTIONS,
    VISION_EXTRACTION_SUFFIX,
)
from app.agents.usage import UsageContext
from app.core.errors import ExtractionFailure
from app.core.models import StatementKind
from app.core.settings import Settings
from app.core.utils import get_logger

logger = get_logger("statement-importer.statement-agent")


class ExtractedTransaction(BaseModel):
    """One statement line as returned by the model."""

    date: str | None = None
    post_date: str | None = None
    description: str = ""
    merchant: str | None = None
    amount: float


class ExtractedStatement(BaseModel):
    """The extraction reply schema."""

    transactions: list[ExtractedTransaction] = Field(default_factory=list)
    currency: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


def type_instructions(statement_kind: StatementKind | str | None) -> str:
    if statement_kind == StatementKind.CREDIT_CARD:
        return CREDIT_CARD_TYPE_INSTRUCTIONS
    if statement_kind == StatementKind.BANK_ACCOUNT:
        return BANK_ACCOUNT_TYPE_INSTRUCTIONS
    return UNKNOWN_TYPE_INSTRUCTIONS


class StatementExtractor:
    """Agent that turns statement text or page images into extracted transactions."""

    def __init__(self, chain: CompletionChain, settings: Settings) -> None:
        """Initialize the StatementExtractor with a completion chain and settings."""
        self.chain = chain
        self.settings = settings

    def build_prompt(self, text: str | None, statement_kind: StatementKind | str | None = None) -> str:
        """Text prompt when text is given, vision prompt otherwise. Text is cut to the character budget."""
        statement_text = STATEMENT_TEXT_SECTION.format(text=text[: self.settings.pdf_max_chars]) if text else ""
        prompt = STATEMENT_EXTRACTION_PROMPT.format(
            document_label="bank statement text" if text else "bank statement document",
            type_instructions=type_instructions(statement_kind),
            statement_text=statement_text,
        )
        if text is None:
            prompt += VISION_EXTRACTION_SUFFIX
        return prompt

    async def extract_from_text(
        self,
        text: str,
        statement_kind: StatementKind | str | None = None,
        context: UsageContext | None = None,
    ) -> ExtractedStatement:
        """Extract transactions from PDF text."""
        if len(text) > self.settings.pdf_max_chars:
            logger.info(f"Statement text truncated from {len(text)} to {self.settings.pdf_max_chars} chars")
        return await self._extract(self.build_prompt(text, statement_kind), None, context)

    async def extract_from_document(
        self,
        attachment: Attachment,
        statement_kind: StatementKind | str | None = None,
        context: UsageContext | None = None,
    ) -> ExtractedStatement:
        """Extract transactions by sending the document itself to a vision-capable provider."""
        return await self._extract(self.build_prompt(None, statement_kind), attachment, context)

    async def _extract(
        self, prompt: str, attachment: Attachment | None, context: UsageContext | None
    ) -> ExtractedStatement:
        result = await self.chain.complete(
            prompt,
            ExtractedStatement,
            attachment=attachment,
            temperature=self.settings.structured_temperature,
            max_tokens=self.settings.extraction_max_tokens,
            context=context,
        )
        if not result.success or result.data is None:
            msg = f"Statement extraction failed: {result.error}"
            logger.error(msg)
            raise ExtractionFailure(msg, user_message="Could not read transactions from the statement.")
        statement = ExtractedStatement.model_validate(result.data)
        logger.info(
            f"Extracted {len(statement.transactions)} transactions via {result.provider} "
            f"(confidence={statement.confidence})"
        )
        return statement
