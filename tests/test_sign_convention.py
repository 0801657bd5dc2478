"""Unit tests for the sign convention resolver."""

from decimal import Decimal

from app.core.models import StatementKind
from app.services.sign_convention import SignPolicy, is_payment, is_refund, resolve_amount


def _check(got: Decimal | None, expected: str | None, case: str) -> None:
    wanted = None if expected is None else Decimal(expected)
    if got != wanted:
        msg = f"{case}: expected {wanted}, got {got}"
        raise AssertionError(msg)


def test_bank_account_debit_is_negative() -> None:
    _check(resolve_amount(StatementKind.BANK_ACCOUNT, debit=Decimal("42.10")), "-42.10", "bank debit")
    _check(resolve_amount("bank_account", debit=Decimal("-42.10")), "-42.10", "signed bank debit")


def test_credits_by_statement_kind() -> None:
    _check(resolve_amount("bank_account", credit=Decimal("1000")), "1000", "bank credit")
    _check(resolve_amount("credit_card", credit=Decimal("50"), description="ONLINE PAYMENT"), "-50", "card payment")
    _check(resolve_amount("credit_card", credit=Decimal("19.99"), description="AMAZON REFUND"), "19.99", "card refund")


def test_card_payment_forced_negative_after_reversal() -> None:
    """Credit card, 'PAYMENT THANK YOU', +500.00 with reversal -> -500.00."""
    got = resolve_amount(
        StatementKind.CREDIT_CARD, amount=Decimal("500.00"), description="PAYMENT THANK YOU", reverse_sign=True
    )
    _check(got, "-500.00", "card payment reversed")
    got = resolve_amount(
        StatementKind.CREDIT_CARD, amount=Decimal("500.00"), description="PAYMENT THANK YOU", reverse_sign=False
    )
    _check(got, "-500.00", "card payment kept")


def test_single_amount_by_kind() -> None:
    _check(resolve_amount("credit_card", amount=Decimal("12.50"), description="COFFEE"), "-12.50", "card purchase")
    _check(resolve_amount("bank_account", amount=Decimal("-12.50")), "-12.50", "bank withdrawal")
    _check(resolve_amount("bank_account", amount=None), None, "no amount")


def test_unknown_kind_uses_statistic() -> None:
    _check(resolve_amount(None, amount=Decimal("10"), positive_percent=90), "-10", "mostly positive")
    _check(resolve_amount(None, amount=Decimal("10"), positive_percent=10), "10", "mostly negative")
    _check(resolve_amount(None, amount=Decimal("10"), positive_percent=50), "10", "mixed")
    strict = SignPolicy(reverse_above=0.95, standard_below=0.05)
    _check(resolve_amount(None, amount=Decimal("10"), positive_percent=90, policy=strict), "10", "custom policy")


def test_vocabulary() -> None:
    if not is_payment("AUTOPAY THANK YOU") or is_payment("GROCERY STORE"):
        msg = "Payment vocabulary misdetected"
        raise AssertionError(msg)
    if not is_refund("Refund - order 123") or is_refund(None):
        msg = "Refund vocabulary misdetected"
        raise AssertionError(msg)
