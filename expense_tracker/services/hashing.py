"""Content-addressed identities for transactions and installment groups.

All digests are SHA-256 over pipe-joined canonical fields. They identify
records, they do not protect them: there is no salt or secret.
"""

import hashlib
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from expense_tracker.models.transaction import PaymentType

_CENTS = Decimal("0.01")


def format_amount(amount: Decimal | int | float | str) -> str:
    """Render an amount with exactly two decimals, rounding half up."""
    return str(Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP))


def _digest(components: list[str]) -> str:
    hash_input = "|".join(components).encode("utf-8")
    return hashlib.sha256(hash_input).hexdigest()


def transaction_hash(
    normalized_business_name: str,
    deal_date: date,
    charged_amount_ils: Decimal,
    card_last4: str,
    payment_type: PaymentType,
    is_refund: bool,
    installment_index: int = 0,
) -> str:
    """Identity of a one-time charge.

    Hash = SHA256(name|deal_date|amount|last4|installment_index|payment_type|is_refund)

    ``is_refund`` keeps a refund from colliding with the charge it reverses.
    """
    components = [
        normalized_business_name,
        deal_date.isoformat(),
        format_amount(charged_amount_ils),
        card_last4,
        str(installment_index),
        payment_type.value,
        "true" if is_refund else "false",
    ]
    return _digest(components)


def installment_group_id(
    normalized_business_name: str,
    total_payment_sum: Decimal,
    installment_total: int,
    deal_date: date,
) -> str:
    """Identity shared by every payment of one installment purchase.

    Hash = SHA256(name|total_sum|installment_total|deal_date)

    The card is left out so a plan survives a card reissue mid-sequence.
    """
    components = [
        normalized_business_name,
        format_amount(total_payment_sum),
        str(installment_total),
        deal_date.isoformat(),
    ]
    return _digest(components)


def installment_transaction_hash(group_id: str, installment_index: int) -> str:
    """Identity of payment ``installment_index`` within a group."""
    return _digest([group_id, str(installment_index)])


def subscription_occurrence_hash(
    subscription_id: UUID,
    occurrence_date: date,
    business_id: UUID,
    card_id: UUID,
) -> str:
    """Identity of a generated subscription occurrence."""
    components = [
        "subscription",
        str(subscription_id),
        occurrence_date.isoformat(),
        str(business_id),
        str(card_id),
    ]
    return _digest(components)
