"""Data access for categories, categorization history and category rules.

Every repository opens a short-lived session per operation from the shared session factory, so concurrent item
tasks never share a session. Every query is scoped to the owner.
"""

import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.agents.category_agent import OwnerContext
from app.core.db import BankStatementTransaction, Business, Category, CategoryRule, Receipt, UserSettings, session_scope
from app.core.errors import UnauthorizedError, ValidationError
from app.core.utils import as_utc, get_logger, utcnow

logger = get_logger("statement-importer.repositories")

DEFAULT_USAGE_TYPE = "personal"
RULE_FIELDS = ("merchantName", "description")
RULE_MATCH_TYPES = ("exact", "contains", "regex")
RULE_NOT_FOUND = "Rule not found or unauthorized"


class CategoryRepository:
    """Category availability per owner preference."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize with the shared session factory."""
        self.session_factory = session_factory

    async def get_user_preference(self, owner_id: str) -> str:
        """Owner usage type: personal, business or both. Defaults to personal."""
        async with self.session_factory() as session:
            usage_type = await session.scalar(
                select(UserSettings.usage_type).where(UserSettings.user_id == owner_id)
            )
        return usage_type or DEFAULT_USAGE_TYPE

    async def get_available_categories(
        self,
        owner_id: str,
        transaction_type: str | None = None,
        include_user_categories: bool = True,
    ) -> list[Category]:
        """System categories in the owner's scope plus the owner's own, minus soft-deleted ones."""
        preference = await self.get_user_preference(owner_id)
        system_clause = Category.type == "system"
        if preference != "both":
            system_clause = and_(system_clause, Category.usage_scope.in_((preference, "both")))
        clauses = [system_clause]
        if include_user_categories:
            clauses.append(and_(Category.type == "user", Category.user_id == owner_id))
        query = select(Category).where(or_(*clauses), Category.deleted_at.is_(None))
        if transaction_type:
            query = query.where(Category.transaction_type == transaction_type)
        async with self.session_factory() as session:
            result = await session.scalars(query.order_by(Category.name))
            return list(result.all())

    async def get_category_by_id(self, category_id: str) -> Category | None:
        async with self.session_factory() as session:
            return await session.scalar(
                select(Category).where(Category.id == category_id, Category.deleted_at.is_(None))
            )

    async def is_category_available(self, owner_id: str, category_id: str) -> bool:
        """True when the category is among the owner's available categories."""
        available = await self.get_available_categories(owner_id)
        return any(category.id == category_id for category in available)

    async def get_owner_context(self, owner_id: str) -> OwnerContext:
        """Country, usage type and business names for AI prompts."""
        async with self.session_factory() as session:
            prefs = await session.scalar(select(UserSettings).where(UserSettings.user_id == owner_id))
            names = await session.scalars(select(Business.name).where(Business.user_id == owner_id))
            businesses = list(names.all())
        return OwnerContext(
            country=prefs.country if prefs else None,
            usage_type=prefs.usage_type if prefs else None,
            businesses=businesses,
        )

    async def get_categorized_lists(self, owner_id: str) -> tuple[str, list[str], list[str]]:
        """Usage type plus income and expense category names, for the column mapping prompt."""
        preference = await self.get_user_preference(owner_id)
        categories = await self.get_available_categories(owner_id)
        income = [category.name for category in categories if category.transaction_type == "income"]
        expense = [category.name for category in categories if category.transaction_type != "income"]
        return preference, income, expense


@dataclass
class HistoryMatch:
    """The most recent categorized record for a merchant."""

    category_id: str
    category_name: str
    business_id: str | None
    merchant_name: str
    created_at: datetime
    entity_type: str


class TransactionRepository:
    """Categorization history across receipts and statement transactions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize with the shared session factory."""
        self.session_factory = session_factory

    async def find_history_by_merchant(self, merchant_name: str, owner_id: str) -> HistoryMatch | None:
        """Most recent categorized receipt or statement transaction of the owner for this merchant."""
        needle = merchant_name.strip().lower()
        if not needle:
            return None
        candidates = []
        async with self.session_factory() as session:
            receipt_row = (
                await session.execute(
                    select(Receipt, Category)
                    .join(Category, Category.id == Receipt.category_id)
                    .where(
                        Receipt.user_id == owner_id,
                        func.lower(func.trim(Receipt.merchant_name)) == needle,
                        Category.deleted_at.is_(None),
                    )
                    .order_by(Receipt.created_at.desc())
                    .limit(1)
                )
            ).first()
            if receipt_row:
                receipt, category = receipt_row
                candidates.append(
                    HistoryMatch(
                        category_id=category.id,
                        category_name=category.name,
                        business_id=receipt.business_id,
                        merchant_name=receipt.merchant_name,
                        created_at=as_utc(receipt.created_at),
                        entity_type="receipt",
                    )
                )
            txn_row = (
                await session.execute(
                    select(BankStatementTransaction, Category)
                    .join(Category, Category.id == BankStatementTransaction.category_id)
                    .where(
                        BankStatementTransaction.user_id == owner_id,
                        func.lower(func.trim(BankStatementTransaction.merchant_name)) == needle,
                        Category.deleted_at.is_(None),
                    )
                    .order_by(BankStatementTransaction.created_at.desc())
                    .limit(1)
                )
            ).first()
            if txn_row:
                txn, category = txn_row
                candidates.append(
                    HistoryMatch(
                        category_id=category.id,
                        category_name=category.name,
                        business_id=txn.business_id,
                        merchant_name=txn.merchant_name,
                        created_at=as_utc(txn.created_at),
                        entity_type="bank_transaction",
                    )
                )
        if not candidates:
            return None
        return max(candidates, key=lambda match: match.created_at)


class RuleRepository:
    """CRUD for owner-authored category rules."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        category_repository: CategoryRepository,
    ) -> None:
        """Initialize with the shared session factory and the category repository used for validation."""
        self.session_factory = session_factory
        self.categories = category_repository

    async def list_rules(self, owner_id: str, enabled_only: bool = False) -> list[CategoryRule]:
        query = select(CategoryRule).where(CategoryRule.user_id == owner_id)
        if enabled_only:
            query = query.where(CategoryRule.is_enabled.is_(True))
        async with self.session_factory() as session:
            result = await session.scalars(query.order_by(CategoryRule.created_at))
            return list(result.all())

    async def list_enabled_with_categories(self, owner_id: str) -> list[tuple[CategoryRule, Category]]:
        """Enabled rules joined with their live categories, oldest first."""
        query = (
            select(CategoryRule, Category)
            .join(Category, Category.id == CategoryRule.category_id)
            .where(
                CategoryRule.user_id == owner_id,
                CategoryRule.is_enabled.is_(True),
                Category.deleted_at.is_(None),
            )
            .order_by(CategoryRule.created_at)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [(rule, category) for rule, category in result.all()]

    async def _validate(
        self,
        owner_id: str,
        field: str,
        match_type: str,
        value: str,
        category_id: str,
        business_id: str | None,
    ) -> None:
        if field not in RULE_FIELDS:
            msg = f"Invalid rule field: {field}"
            raise ValidationError(msg)
        if match_type not in RULE_MATCH_TYPES:
            msg = f"Invalid match type: {match_type}"
            raise ValidationError(msg)
        if not value or not value.strip():
            msg = "Rule value must not be empty"
            raise ValidationError(msg)
        if match_type == "regex":
            try:
                re.compile(value)
            except re.error as exc:
                msg = f"Invalid regex pattern: {exc}"
                raise ValidationError(msg) from exc
        if not await self.categories.is_category_available(owner_id, category_id):
            msg = "Category not found or unavailable"
            raise ValidationError(msg)
        if business_id is not None:
            async with self.session_factory() as session:
                owned = await session.scalar(
                    select(Business.id).where(Business.id == business_id, Business.user_id == owner_id)
                )
            if owned is None:
                msg = "Business not found or unauthorized"
                raise ValidationError(msg)

    async def create_rule(
        self,
        owner_id: str,
        field: str,
        match_type: str,
        value: str,
        category_id: str,
        business_id: str | None = None,
        is_enabled: bool = True,
    ) -> CategoryRule:
        """Validate and persist a new rule."""
        await self._validate(owner_id, field, match_type, value, category_id, business_id)
        rule = CategoryRule(
            user_id=owner_id,
            field=field,
            match_type=match_type,
            value=value.strip(),
            category_id=category_id,
            business_id=business_id,
            is_enabled=is_enabled,
        )
        async with session_scope(self.session_factory) as session:
            session.add(rule)
        logger.info(f"Created rule {rule.id} for owner {owner_id}: {field} {match_type} '{rule.value}'")
        return rule

    async def _get_owned(self, session: AsyncSession, owner_id: str, rule_id: str) -> CategoryRule:
        rule = await session.get(CategoryRule, rule_id)
        if rule is None or rule.user_id != owner_id:
            raise UnauthorizedError(RULE_NOT_FOUND)
        return rule

    async def update_rule(
        self,
        owner_id: str,
        rule_id: str,
        field: str,
        match_type: str,
        value: str,
        category_id: str,
        business_id: str | None = None,
        is_enabled: bool = True,
    ) -> CategoryRule:
        """Replace every editable attribute of a rule after validation."""
        async with self.session_factory() as session:
            await self._get_owned(session, owner_id, rule_id)
        await self._validate(owner_id, field, match_type, value, category_id, business_id)
        async with session_scope(self.session_factory) as session:
            rule = await self._get_owned(session, owner_id, rule_id)
            rule.field = field
            rule.match_type = match_type
            rule.value = value.strip()
            rule.category_id = category_id
            rule.business_id = business_id
            rule.is_enabled = is_enabled
            rule.updated_at = utcnow()
        return rule

    async def set_enabled(self, owner_id: str, rule_id: str, enabled: bool) -> CategoryRule:
        async with session_scope(self.session_factory) as session:
            rule = await self._get_owned(session, owner_id, rule_id)
            rule.is_enabled = enabled
            rule.updated_at = utcnow()
        return rule

    async def delete_rule(self, owner_id: str, rule_id: str) -> None:
        async with session_scope(self.session_factory) as session:
            rule = await self._get_owned(session, owner_id, rule_id)
            await session.delete(rule)
        logger.info(f"Deleted rule {rule_id} for owner {owner_id}")
