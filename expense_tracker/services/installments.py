"""Installment plan helpers: purchase dates, payment schedules and group lookups."""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from expense_tracker.models import Transaction
from expense_tracker.services.schedule import add_months


@dataclass(frozen=True)
class PlannedPayment:
    """One payment of an installment plan before it is written."""

    index: int
    charge_date: date


def resolve_purchase_date(
    deal_date: date | None,
    bank_charge_date: date | None,
    installment_index: int,
) -> date | None:
    """Date of the original purchase (payment 1).

    Issuers usually repeat the purchase date on every payment row. When a row
    lacks it, payment N was charged N-1 months after the purchase.
    """
    if deal_date is not None:
        return deal_date
    if bank_charge_date is None:
        return None
    return add_months(bank_charge_date, -(installment_index - 1))


def payment_charge_date(purchase_date: date, installment_index: int) -> date:
    return add_months(purchase_date, installment_index - 1)


def total_payment_sum(original_amount: Decimal | None, charged_amount: Decimal, installment_total: int) -> Decimal:
    """Full purchase amount, falling back to payment x count when the statement omits it."""
    if original_amount is not None:
        return original_amount
    return charged_amount * installment_total


def plan_payments(
    purchase_date: date,
    installment_index: int,
    installment_total: int,
    *,
    backfill: bool,
    project: bool,
) -> tuple[list[PlannedPayment], list[PlannedPayment]]:
    """Payments to synthesize around a newly seen payment.

    Returns (past payments 1..index-1, future payments index+1..total).
    """
    past = []
    if backfill:
        past = [PlannedPayment(i, payment_charge_date(purchase_date, i)) for i in range(1, installment_index)]
    future = []
    if project:
        future = [
            PlannedPayment(i, payment_charge_date(purchase_date, i))
            for i in range(installment_index + 1, installment_total + 1)
        ]
    return past, future


async def get_group_transactions(db: AsyncSession, group_id: str) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.installment_group_id == group_id)
        .order_by(Transaction.installment_index)
    )
    return list(result.scalars().all())


async def group_exists(db: AsyncSession, group_id: str) -> bool:
    result = await db.execute(
        select(Transaction.id).where(Transaction.installment_group_id == group_id).limit(1)
    )
    return result.scalar_one_or_none() is not None
