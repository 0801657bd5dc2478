"""CategoryAgent: asks the completion chain to pick a category for one transaction."""

from decimal import Decimal

from pydantic import BaseModel, Field

from app.agents.chain import CompletionChain
from app.agents.prompts import CATEGORIZATION_PROMPT
from app.agents.usage import UsageContext
from app.core.settings import Settings
from app.core.utils import get_logger

logger = get_logger("statement-importer.category-agent")


class CategorySuggestion(BaseModel):
    """The categorization reply schema."""

    category_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    is_new_category: bool = False


class OwnerContext(BaseModel):
    """Owner preferences passed to the model."""

    country: str | None = None
    usage_type: str | None = None
    businesses: list[str] = Field(default_factory=list)


def build_user_context(owner: OwnerContext | None) -> str:
    if owner is None:
        return ""
    parts = []
    if owner.country:
        parts.append(f"User location: {owner.country}")
    if owner.usage_type:
        parts.append(f"Usage type: {owner.usage_type}")
    if owner.businesses:
        parts.append(f"User's businesses: {', '.join(owner.businesses)}")
    return "\n" + "\n".join(parts) + "\n" if parts else ""


class CategoryAgent:
    """Agent responsible for AI category suggestions."""

    def __init__(self, chain: CompletionChain, settings: Settings) -> None:
        """Initialize the CategoryAgent with a completion chain and settings."""
        self.chain = chain
        self.settings = settings

    def build_prompt(
        self,
        merchant: str | None,
        description: str | None,
        amount: Decimal | str | None,
        categories: list[str],
        owner: OwnerContext | None = None,
    ) -> str:
        return CATEGORIZATION_PROMPT.format(
            merchant=merchant or "Unknown",
            description=description or "N/A",
            amount=amount if amount is not None else "N/A",
            categories=", ".join(categories),
            user_context=build_user_context(owner),
        )

    async def suggest(
        self,
        merchant: str | None,
        description: str | None,
        amount: Decimal | str | None,
        categories: list[str],
        owner: OwnerContext | None = None,
        context: UsageContext | None = None,
    ) -> CategorySuggestion | None:
        """Return the model's suggestion, or None when every provider failed."""
        prompt = self.build_prompt(merchant, description, amount, categories, owner)
        result = await self.chain.complete(
            prompt,
            CategorySuggestion,
            temperature=self.settings.structured_temperature,
            max_tokens=self.settings.default_max_tokens,
            context=context,
        )
        if not result.success or result.data is None:
            logger.warning(f"AI categorization failed for '{merchant or description}': {result.error}")
            return None
        return CategorySuggestion.model_validate(result.data)
