"""Tests for category availability and category rule management."""

import pytest
from conftest import OTHER_OWNER, OWNER

from app.categorization.repositories import CategoryRepository, RuleRepository
from app.core.errors import UnauthorizedError, ValidationError


async def test_available_categories_follow_preference(session_factory, categories) -> None:
    repository = CategoryRepository(session_factory)
    names = [category.name for category in await repository.get_available_categories(OWNER)]
    if names != ["Coffee", "Dining", "Groceries", "Salary"]:
        msg = f"Unexpected categories {names}"
        raise AssertionError(msg)

    system_only = await repository.get_available_categories(OWNER, include_user_categories=False)
    if "Coffee" in [category.name for category in system_only]:
        msg = "User categories should be excluded on request"
        raise AssertionError(msg)

    income = await repository.get_available_categories(OWNER, transaction_type="income")
    if [category.name for category in income] != ["Salary"]:
        msg = f"Unexpected income categories {[category.name for category in income]}"
        raise AssertionError(msg)


async def test_unknown_owner_defaults_to_personal(session_factory, categories) -> None:
    repository = CategoryRepository(session_factory)
    if await repository.get_user_preference("nobody") != "personal":
        msg = "Owners without settings default to personal"
        raise AssertionError(msg)
    names = [category.name for category in await repository.get_available_categories("nobody")]
    if "Office Supplies" in names or "Coffee" in names:
        msg = f"Unexpected categories for a new owner {names}"
        raise AssertionError(msg)


async def test_owner_context(session_factory, categories) -> None:
    context = await CategoryRepository(session_factory).get_owner_context(OWNER)
    if (context.country, context.usage_type, context.businesses) != ("US", "personal", ["Side Hustle"]):
        msg = f"Unexpected owner context {context}"
        raise AssertionError(msg)


async def test_rule_validation(session_factory, categories) -> None:
    rules = RuleRepository(session_factory, CategoryRepository(session_factory))
    invalid = [
        ("amount", "exact", "x", categories["Coffee"], None),
        ("merchantName", "fuzzy", "x", categories["Coffee"], None),
        ("merchantName", "exact", "   ", categories["Coffee"], None),
        ("merchantName", "regex", "([", categories["Coffee"], None),
        ("merchantName", "exact", "x", categories["Other Owner"], None),
        ("merchantName", "exact", "x", categories["Old"], None),
        ("merchantName", "exact", "x", categories["Office Supplies"], None),
        ("merchantName", "exact", "x", categories["Coffee"], "not-mine"),
    ]
    for field, match_type, value, category_id, business_id in invalid:
        with pytest.raises(ValidationError):
            await rules.create_rule(OWNER, field, match_type, value, category_id, business_id)
    if await rules.list_rules(OWNER):
        msg = "Rejected rules must not be stored"
        raise AssertionError(msg)


async def test_rule_lifecycle_and_ownership(session_factory, categories) -> None:
    rules = RuleRepository(session_factory, CategoryRepository(session_factory))
    rule = await rules.create_rule(OWNER, "description", "contains", "  uber ", categories["Dining"])
    if rule.value != "uber" or not rule.is_enabled:
        msg = f"Unexpected new rule {rule.value!r}, {rule.is_enabled}"
        raise AssertionError(msg)

    with pytest.raises(UnauthorizedError):
        await rules.set_enabled(OTHER_OWNER, rule.id, False)
    with pytest.raises(UnauthorizedError):
        await rules.delete_rule(OTHER_OWNER, rule.id)

    updated = await rules.update_rule(
        OWNER, rule.id, "merchantName", "exact", "Uber", categories["Coffee"], "biz-1", is_enabled=False
    )
    if (updated.field, updated.match_type, updated.business_id, updated.is_enabled) != (
        "merchantName",
        "exact",
        "biz-1",
        False,
    ):
        msg = f"Unexpected updated rule {updated.field}, {updated.match_type}, {updated.business_id}"
        raise AssertionError(msg)
    if await rules.list_rules(OWNER, enabled_only=True):
        msg = "Disabled rules must not be listed as enabled"
        raise AssertionError(msg)

    await rules.delete_rule(OWNER, rule.id)
    if await rules.list_rules(OWNER):
        msg = "Expected the rule to be deleted"
        raise AssertionError(msg)
