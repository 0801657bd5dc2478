"""ReceiptExtractor: reads merchant, date and total from a receipt image."""

from pydantic import BaseModel

from app.agents.base import Attachment
from app.agents.chain import CompletionChain
from app.agents.prompts import RECEIPT_EXTRACTION_PROMPT
from app.agents.usage import UsageContext
from app.core.errors import ExtractionFailure
from app.core.models import ReceiptData
from app.core.settings import Settings
from app.core.utils import get_logger
from app.services.converters import AmountConverter, DateConverter, DescriptionConverter

logger = get_logger("statement-importer.receipt-agent")


class ExtractedReceipt(BaseModel):
    """The receipt reply schema."""

    merchant_name: str | None = None
    date: str | None = None
    total_amount: float | str | None = None
    currency: str | None = None
    description: str | None = None


class ReceiptExtractor:
    """Agent that sends a receipt image to a vision-capable provider."""

    def __init__(self, chain: CompletionChain, settings: Settings) -> None:
        """Initialize the ReceiptExtractor with a completion chain and settings."""
        self.chain = chain
        self.settings = settings

    async def extract(
        self,
        attachment: Attachment,
        currency: str | None = None,
        context: UsageContext | None = None,
    ) -> ReceiptData:
        """Extract receipt fields, converting them with the same converters used for statements."""
        prompt = RECEIPT_EXTRACTION_PROMPT.format(currency=currency or self.settings.default_currency)
        result = await self.chain.complete(
            prompt,
            ExtractedReceipt,
            attachment=attachment,
            temperature=self.settings.structured_temperature,
            max_tokens=self.settings.default_max_tokens,
            context=context,
        )
        if not result.success or result.data is None:
            msg = f"Receipt extraction failed: {result.error}"
            logger.error(msg)
            raise ExtractionFailure(msg, user_message="Could not read the receipt.")
        raw = ExtractedReceipt.model_validate(result.data)
        merchant = DescriptionConverter.convert(raw.merchant_name) or None
        receipt = ReceiptData(
            merchant_name=merchant,
            date=DateConverter.convert(raw.date),
            total_amount=AmountConverter.convert(raw.total_amount),
            currency=(raw.currency or currency or self.settings.default_currency).upper(),
            description=raw.description,
        )
        logger.info(f"Receipt extracted via {result.provider}: merchant={receipt.merchant_name}, total={receipt.total_amount}")
        return receipt
