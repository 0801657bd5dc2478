"""Runs categorization strategies in priority order and accepts the first confident result."""

from app.categorization.strategies import CategorizationContext, CategorizationInput, CategorizationStrategy
from app.core.models import CategorizationResult
from app.core.utils import get_logger

logger = get_logger("statement-importer.strategy-manager")


class StrategyManager:
    """Ordered strategy dispatch; lower priority numbers run first."""

    def __init__(self, strategies: list[CategorizationStrategy]) -> None:
        self.strategies = sorted(strategies, key=lambda strategy: strategy.priority)

    async def categorize(self, item: CategorizationInput, context: CategorizationContext) -> CategorizationResult:
        """Return the first result with a category and enough confidence, else the none result.

        A new category name suggested along the way is carried on the none result.
        """
        suggested = None
        for strategy in self.strategies:
            try:
                result = await strategy.categorize(item, context)
            except Exception:
                logger.exception(f"Strategy {strategy.name} failed for '{item.merchant_name}', trying next")
                continue
            if result.category_id and result.confidence >= context.min_confidence:
                logger.info(
                    f"Category found by {strategy.name}: '{item.merchant_name or item.description}' -> "
                    f"{result.category_name} ({result.confidence})"
                )
                return result
            if result.category_id:
                logger.info(
                    f"Low confidence from {strategy.name} ({result.confidence} < {context.min_confidence}), "
                    "trying next strategy"
                )
            elif result.suggested_category and suggested is None:
                logger.info(f"{strategy.name} suggested a new category '{result.suggested_category}'")
                suggested = result.suggested_category
        logger.info(f"No category found for '{item.merchant_name or item.description}'")
        return CategorizationResult.none(suggested_category=suggested)

    def strategy_names(self) -> list[str]:
        return [strategy.name for strategy in self.strategies]

    def add_strategy(self, strategy: CategorizationStrategy) -> None:
        self.strategies.append(strategy)
        self.strategies.sort(key=lambda s: s.priority)

    def remove_strategy(self, name: str) -> None:
        self.strategies = [strategy for strategy in self.strategies if strategy.name != name]
