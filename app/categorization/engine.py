"""CategoryEngine: wires the strategies together and categorizes transactions with bounded concurrency."""

import asyncio

from app.agents.category_agent import CategoryAgent
from app.categorization.manager import StrategyManager
from app.categorization.repositories import CategoryRepository, RuleRepository, TransactionRepository
from app.categorization.strategies import (
    AiStrategy,
    CandidateCategory,
    CategorizationContext,
    CategorizationInput,
    CategorizationStrategy,
    HistoryStrategy,
    RuleStrategy,
)
from app.core.models import CategorizationResult, NormalizedTransaction
from app.core.settings import Settings
from app.core.utils import get_logger

logger = get_logger("statement-importer.engine")


def to_input(
    transaction: NormalizedTransaction,
    statement_type: str | None = None,
    entity_type: str = "bank_transaction",
) -> CategorizationInput:
    """Reduce a normalized transaction to what the strategies need."""
    return CategorizationInput(
        merchant_name=transaction.merchant_name,
        description=transaction.description,
        amount=str(transaction.amount),
        statement_type=statement_type,
        entity_type=entity_type,
    )


class CategoryEngine:
    """Multi-strategy categorization: rule (1), history (2), AI (100)."""

    def __init__(
        self,
        categories: CategoryRepository,
        transactions: TransactionRepository,
        rules: RuleRepository,
        settings: Settings,
        agent: CategoryAgent | None = None,
    ) -> None:
        """Initialize the engine with its repositories and an optional AI agent."""
        self.categories = categories
        self.transactions = transactions
        self.rules = rules
        self.settings = settings
        self.agent = agent

    def build_manager(self, include_ai: bool = True) -> StrategyManager:
        strategies: list[CategorizationStrategy] = [
            RuleStrategy(self.rules),
            HistoryStrategy(self.transactions, self.settings.history_confidence),
        ]
        if include_ai and self.agent is not None:
            strategies.append(AiStrategy(self.agent))
        return StrategyManager(strategies)

    async def build_context(
        self,
        owner_id: str,
        include_ai: bool = True,
        min_confidence: float | None = None,
        transaction_type: str | None = None,
    ) -> CategorizationContext:
        """Load the candidate categories and owner preferences once per call or batch."""
        context = CategorizationContext(
            owner_id=owner_id,
            min_confidence=self.settings.min_confidence if min_confidence is None else min_confidence,
            transaction_type=transaction_type,
        )
        if include_ai and self.agent is not None:
            available = await self.categories.get_available_categories(owner_id, transaction_type=transaction_type)
            context.available_categories = [
                CandidateCategory(id=c.id, name=c.name, transaction_type=c.transaction_type) for c in available
            ]
            context.owner = await self.categories.get_owner_context(owner_id)
        return context

    async def categorize(
        self,
        item: CategorizationInput,
        owner_id: str,
        include_ai: bool = True,
        min_confidence: float | None = None,
        transaction_type: str | None = None,
    ) -> CategorizationResult:
        """Categorize one transaction."""
        manager = self.build_manager(include_ai)
        context = await self.build_context(owner_id, include_ai, min_confidence, transaction_type)
        return await manager.categorize(item, context)

    async def categorize_many(
        self,
        items: list[CategorizationInput],
        owner_id: str,
        include_ai: bool = True,
        min_confidence: float | None = None,
        transaction_type: str | None = None,
    ) -> list[CategorizationResult]:
        """Categorize many transactions, at most `categorization_concurrency` at a time, keeping input order."""
        if not items:
            return []
        manager = self.build_manager(include_ai)
        context = await self.build_context(owner_id, include_ai, min_confidence, transaction_type)
        semaphore = asyncio.Semaphore(max(1, self.settings.categorization_concurrency))

        async def run(item: CategorizationInput) -> CategorizationResult:
            async with semaphore:
                return await manager.categorize(item, context)

        results = await asyncio.gather(*(run(item) for item in items))
        found = sum(1 for result in results if result.category_id)
        logger.info(f"Categorized {found}/{len(items)} transactions for owner {owner_id}")
        return list(results)
