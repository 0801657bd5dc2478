"""ColumnMapper: infers how a spreadsheet's columns map onto transaction fields.

The mapper sends a preview of the first rows plus dataset-wide amount statistics to the completion chain, and
returns a validated `MappingConfig`. Statement-kind specific sign instructions steer the `reverse_sign` flag.
"""

from typing import Any

from app.agents.chain import CompletionChain
from app.agents.prompts import (
    BANK_ACCOUNT_SIGN_INSTRUCTIONS,
    CATEGORY_CONTEXT,
    COLUMN_MAPPING_PROMPT,
    CREDIT_CARD_SIGN_INSTRUCTIONS,
    UNKNOWN_SIGN_INSTRUCTIONS,
)
from app.agents.usage import UsageContext
from app.core.errors import ExtractionFailure
from app.core.models import AmountStats, MappingConfig, StatementKind
from app.core.settings import Settings
from app.core.utils import get_logger, truncate
from app.services.sign_convention import SignPolicy
from app.services.spreadsheet import format_preview

logger = get_logger("statement-importer.column-mapper")

DEFAULT_MAPPING_CONFIDENCE = 0.5
PREVIEW_LOG_LEN = 500


class MappingResponse(MappingConfig):
    """The mapping as returned by the model, where confidence may be missing."""

    confidence: float | None = None


def sign_instructions(
    statement_kind: StatementKind | str | None,
    stats: AmountStats | None,
    total_rows: int,
    policy: SignPolicy,
) -> str:
    """Sign guidance for the prompt, by statement kind or by the dataset statistic."""
    if statement_kind == StatementKind.CREDIT_CARD:
        return CREDIT_CARD_SIGN_INSTRUCTIONS
    if statement_kind == StatementKind.BANK_ACCOUNT:
        return BANK_ACCOUNT_SIGN_INSTRUCTIONS
    return UNKNOWN_SIGN_INSTRUCTIONS.format(
        total_rows=total_rows,
        positive_percent=stats.positive_percent if stats else 0,
        reverse_above=round(policy.reverse_above * 100),
        standard_below=round(policy.standard_below * 100),
    )


def build_category_context(usage_type: str, income: list[str], expense: list[str]) -> str:
    """Owner category context for the mapping prompt."""
    label = "Business & Personal" if usage_type == "both" else usage_type.capitalize()
    return CATEGORY_CONTEXT.format(
        usage_type=label,
        income_categories=", ".join(income) or "none",
        expense_categories=", ".join(expense) or "none",
    )


class ColumnMapper:
    """Agent that asks the completion chain for a spreadsheet column mapping."""

    def __init__(self, chain: CompletionChain, settings: Settings, policy: SignPolicy | None = None) -> None:
        """Initialize the ColumnMapper with a completion chain and settings."""
        self.chain = chain
        self.settings = settings
        self.policy = policy or SignPolicy.from_settings(settings)

    def build_prompt(
        self,
        rows: list[list[Any]],
        stats: AmountStats | None,
        statement_kind: StatementKind | str | None = None,
        category_context: str = "",
    ) -> str:
        """Assemble the mapping prompt from the preview rows and statistics."""
        preview = format_preview(rows, self.settings.preview_rows)
        return COLUMN_MAPPING_PROMPT.format(
            total_rows=len(rows),
            preview=preview,
            sign_instructions=sign_instructions(statement_kind, stats, len(rows), self.policy),
            category_context=category_context,
        )

    async def detect(
        self,
        rows: list[list[Any]],
        stats: AmountStats | None,
        statement_kind: StatementKind | str | None = None,
        owner_id: str | None = None,
        category_context: str = "",
    ) -> MappingConfig:
        """Infer a mapping, raising ExtractionFailure when none is usable."""
        if not rows:
            msg = "Spreadsheet has no rows"
            raise ExtractionFailure(msg, user_message="The spreadsheet is empty.")
        prompt = self.build_prompt(rows, stats, statement_kind, category_context)
        logger.info(
            f"Calling completion chain for column mapping: rows={len(rows)}, kind={statement_kind}, "
            f"preview={truncate(prompt, PREVIEW_LOG_LEN)!r}"
        )
        result = await self.chain.complete(
            prompt,
            MappingResponse,
            temperature=self.settings.structured_temperature,
            max_tokens=self.settings.default_max_tokens,
            context=UsageContext(prompt_type="mapping", user_id=owner_id, entity_type="batch"),
        )
        if not result.success or result.data is None:
            logger.error(f"Column mapping failed: {result.error}")
            msg = f"Column mapping failed: {result.error}"
            raise ExtractionFailure(msg, user_message="Could not work out the spreadsheet layout.")
        response = MappingResponse.model_validate(result.data)
        if not response.has_any_field():
            logger.error(f"Completion provider {result.provider} returned empty field mappings")
            msg = "Column mapping returned no field mappings"
            raise ExtractionFailure(msg, user_message="Could not work out the spreadsheet layout.")
        confidence = DEFAULT_MAPPING_CONFIDENCE if response.confidence is None else response.confidence
        mapping = MappingConfig(**response.model_dump(exclude={"confidence"}), confidence=confidence)
        logger.info(
            f"Column mapping succeeded via {result.provider}: fields={len(mapping.field_mappings.mapped())}, "
            f"confidence={mapping.confidence}, conversions={len(mapping.conversions)}"
        )
        return mapping
