"""Sign convention resolver: expenses are negative, income is positive, whatever the statement kind."""

import re
from dataclasses import dataclass
from decimal import Decimal

from app.core.models import StatementKind
from app.core.settings import Settings

PAYMENT_PATTERN = re.compile(
    r"\b(payment|thank you|autopay|auto pay|auto-pay|pago|pagamento)\b",
    re.IGNORECASE,
)
REFUND_PATTERN = re.compile(
    r"\b(refund|refunded|return|returned|reversal|chargeback|cashback|cash back|credit adjustment|reembolso|estorno)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class SignPolicy:
    """Share-of-positive thresholds used when the statement kind is unknown."""

    reverse_above: float = 0.8
    standard_below: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "SignPolicy":
        """Build the policy from application settings."""
        return cls(reverse_above=settings.sign_reverse_above, standard_below=settings.sign_standard_below)

    def should_reverse(self, positive_percent: float | None) -> bool:
        """Mostly-positive statements are reversed; mostly-negative or mixed ones are kept."""
        if positive_percent is None:
            return False
        share = positive_percent / 100
        if share > self.reverse_above:
            return True
        if share < self.standard_below:
            return False
        return False


def is_payment(description: str | None) -> bool:
    """True when the description reads like a card payment."""
    return bool(description and PAYMENT_PATTERN.search(description))


def is_refund(description: str | None) -> bool:
    """True when the description reads like a refund or reversal."""
    return bool(description and REFUND_PATTERN.search(description))


def _kind(statement_kind: StatementKind | str | None) -> StatementKind | None:
    if statement_kind is None:
        return None
    try:
        return StatementKind(statement_kind)
    except ValueError:
        return None


def resolve_amount(
    statement_kind: StatementKind | str | None,
    *,
    amount: Decimal | None = None,
    debit: Decimal | None = None,
    credit: Decimal | None = None,
    description: str | None = None,
    reverse_sign: bool | None = None,
    positive_percent: float | None = None,
    policy: SignPolicy | None = None,
) -> Decimal | None:
    """Return the canonically signed amount, or None when the row carries no amount at all.

    Debit and credit columns are read by meaning and never by their sign. A single amount column is reversed
    when the mapping says so, otherwise by statement kind, otherwise by the dataset statistic.
    """
    policy = policy or SignPolicy()
    kind = _kind(statement_kind)

    if debit is not None and debit != 0:
        return -abs(debit)
    if credit is not None and credit != 0:
        if kind is StatementKind.CREDIT_CARD and not is_refund(description):
            return -abs(credit)
        return abs(credit)
    if debit is not None:
        return -abs(debit)
    if credit is not None:
        return abs(credit)

    if amount is None:
        return None
    if reverse_sign is None:
        if kind is StatementKind.CREDIT_CARD:
            reverse_sign = True
        elif kind is StatementKind.BANK_ACCOUNT:
            reverse_sign = False
        else:
            reverse_sign = policy.should_reverse(positive_percent)
    value = -amount if reverse_sign else amount
    if kind is StatementKind.CREDIT_CARD and value > 0 and is_payment(description):
        value = -value
    return value
