"""Categorization strategies: explicit rules, owner history and AI.

Each strategy has a name and a priority (lower runs first) and returns a `CategorizationResult`. A strategy that
finds nothing returns the none result rather than raising.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

from app.agents.category_agent import CategoryAgent, OwnerContext
from app.agents.usage import UsageContext
from app.categorization.repositories import RuleRepository, TransactionRepository
from app.core.models import CategorizationResult
from app.core.utils import get_logger

logger = get_logger("statement-importer.strategies")


@dataclass
class CategorizationInput:
    """A transaction reduced to what strategies look at."""

    merchant_name: str | None = None
    description: str | None = None
    amount: Decimal | str | None = None
    statement_type: str | None = None
    entity_id: str | None = None
    entity_type: str | None = None


@dataclass
class CandidateCategory:
    id: str
    name: str
    transaction_type: str | None = None


@dataclass
class CategorizationContext:
    """Owner scope and the data strategies share for one call."""

    owner_id: str
    min_confidence: float = 0.7
    available_categories: list[CandidateCategory] = field(default_factory=list)
    owner: OwnerContext | None = None
    transaction_type: str | None = None


class CategorizationStrategy(ABC):
    """Base class for all strategies."""

    name: str = "base"
    priority: int = 50

    @abstractmethod
    async def categorize(self, item: CategorizationInput, context: CategorizationContext) -> CategorizationResult:
        """Attempt to categorize one transaction."""


def matches_rule(value: str, pattern: str, match_type: str) -> bool:
    """Test a rule pattern; comparisons are trimmed and case-insensitive, bad regexes never match."""
    normalized_value = value.strip().lower()
    normalized_pattern = pattern.strip().lower()
    if match_type == "exact":
        return normalized_value == normalized_pattern
    if match_type == "contains":
        return normalized_pattern in normalized_value
    if match_type == "regex":
        try:
            return re.search(pattern, value, re.IGNORECASE) is not None
        except re.error:
            logger.warning(f"Invalid regex pattern in rule: {pattern!r}")
            return False
    return False


class RuleStrategy(CategorizationStrategy):
    """Owner-defined rules always win."""

    name = "rule"
    priority = 1

    def __init__(self, rules: RuleRepository) -> None:
        self.rules = rules

    async def categorize(self, item: CategorizationInput, context: CategorizationContext) -> CategorizationResult:
        for rule, category in await self.rules.list_enabled_with_categories(context.owner_id):
            value = item.merchant_name if rule.field == "merchantName" else item.description
            if not value:
                continue
            if matches_rule(value, rule.value, rule.match_type):
                logger.info(f"Rule {rule.id} matched '{value}' -> {category.name}")
                return CategorizationResult(
                    category_id=category.id,
                    category_name=category.name,
                    business_id=rule.business_id,
                    confidence=1.0,
                    method="rule",
                    matched_rule_id=rule.id,
                )
        return CategorizationResult.none()


class HistoryStrategy(CategorizationStrategy):
    """Reuse the category the owner last gave the same merchant."""

    name = "history"
    priority = 2

    def __init__(self, transactions: TransactionRepository, confidence: float = 0.85) -> None:
        self.transactions = transactions
        self.confidence = confidence

    async def categorize(self, item: CategorizationInput, context: CategorizationContext) -> CategorizationResult:
        if not item.merchant_name:
            return CategorizationResult.none()
        history = await self.transactions.find_history_by_merchant(item.merchant_name, context.owner_id)
        if history is None:
            return CategorizationResult.none()
        logger.info(f"History match for '{item.merchant_name}' -> {history.category_name} ({history.entity_type})")
        return CategorizationResult(
            category_id=history.category_id,
            category_name=history.category_name,
            business_id=history.business_id,
            confidence=self.confidence,
            method="history",
        )


class AiStrategy(CategorizationStrategy):
    """Completion-service fallback when rules and history have nothing."""

    name = "ai"
    priority = 100

    def __init__(self, agent: CategoryAgent) -> None:
        self.agent = agent

    async def categorize(self, item: CategorizationInput, context: CategorizationContext) -> CategorizationResult:
        if not context.available_categories:
            logger.warning("AI categorization skipped: no available categories")
            return CategorizationResult.none()
        try:
            suggestion = await self.agent.suggest(
                item.merchant_name,
                item.description,
                item.amount,
                [category.name for category in context.available_categories],
                owner=context.owner,
                context=UsageContext(
                    prompt_type="categorization",
                    user_id=context.owner_id,
                    entity_id=item.entity_id,
                    entity_type=item.entity_type,
                ),
            )
        except Exception:
            logger.exception(f"AI categorization error for '{item.merchant_name}'")
            return CategorizationResult.none()
        if suggestion is None:
            return CategorizationResult.none()
        if suggestion.is_new_category:
            return CategorizationResult(
                category_name=suggestion.category_name,
                confidence=suggestion.confidence,
                method="ai",
                suggested_category=suggestion.category_name,
            )
        wanted = suggestion.category_name.strip().lower()
        matched = next((c for c in context.available_categories if c.name.strip().lower() == wanted), None)
        return CategorizationResult(
            category_id=matched.id if matched else None,
            category_name=matched.name if matched else suggestion.category_name,
            confidence=suggestion.confidence,
            method="ai",
        )
