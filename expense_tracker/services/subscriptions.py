"""Subscription projection: generating and cancelling recurring charge rows."""

from datetime import UTC, date, datetime
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from expense_tracker.config import settings
from expense_tracker.logger import get_logger
from expense_tracker.models import (
    Business,
    Card,
    PaymentType,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from expense_tracker.schemas.subscriptions import (
    SubscriptionCancelResult,
    SubscriptionCreate,
    SubscriptionCreateResult,
    SubscriptionResponse,
)
from expense_tracker.services.business_catalog import get_or_create_business
from expense_tracker.services.hashing import subscription_occurrence_hash
from expense_tracker.services.schedule import add_months, monthly_schedule

logger = get_logger(__name__)


class SubscriptionError(Exception):
    """Base exception for subscription errors."""

    pass


class SubscriptionNotFoundError(SubscriptionError):
    pass


class InvalidSubscriptionError(SubscriptionError):
    pass


def projection_end(start_date: date, end_date: date | None) -> date:
    """Last date to generate occurrences for; open-ended plans run for the configured horizon."""
    if end_date is not None:
        return end_date
    return add_months(start_date, settings.subscription_horizon_years * 12)


def _skip_dates(occurrences: list[date], linked_dates: list[date], window_days: int) -> set[date]:
    """Occurrences already covered by a linked real transaction.

    Each linked transaction covers at most one occurrence: the nearest one
    within ``window_days`` of its deal date.
    """
    covered: set[date] = set()
    for linked in sorted(linked_dates):
        nearest = min(
            (occ for occ in occurrences if occ not in covered and abs((occ - linked).days) <= window_days),
            key=lambda occ: abs((occ - linked).days),
            default=None,
        )
        if nearest is not None:
            covered.add(nearest)
    return covered


async def _resolve_subscription_business(db: AsyncSession, params: SubscriptionCreate) -> Business:
    if params.business_id is None:
        business = await get_or_create_business(db, params.business_name or "")
    else:
        business = await db.get(Business, params.business_id)
        if business is None:
            raise InvalidSubscriptionError(f"Business {params.business_id} not found")

    if business.merged_to_id is not None:
        target = await db.get(Business, business.merged_to_id)
        if target is None:
            raise InvalidSubscriptionError(f"Business {business.id} points to a missing merge target")
        return target
    return business


async def create_subscription(
    db: AsyncSession,
    params: SubscriptionCreate,
    *,
    created_from_suggestion: bool = False,
    today: date | None = None,
) -> SubscriptionCreateResult:
    """Create a subscription and its stream of occurrence rows.

    Occurrences before ``today`` are written as completed history, the rest as
    projected. Transactions listed in ``backfill_transaction_ids`` are linked
    to the subscription and suppress the occurrence they stand for.
    """
    today = today or date.today()

    card = await db.get(Card, params.card_id)
    if card is None:
        raise InvalidSubscriptionError(f"Card {params.card_id} not found")
    business = await _resolve_subscription_business(db, params)

    backfill: list[Transaction] = []
    if params.backfill_transaction_ids:
        result = await db.execute(
            select(Transaction).where(Transaction.id.in_(params.backfill_transaction_ids))
        )
        backfill = list(result.scalars().all())
        missing = set(params.backfill_transaction_ids) - {txn.id for txn in backfill}
        if missing:
            raise InvalidSubscriptionError(f"Transactions not found: {', '.join(sorted(str(m) for m in missing))}")
        linked_elsewhere = [str(txn.id) for txn in backfill if txn.subscription_id is not None]
        if linked_elsewhere:
            raise InvalidSubscriptionError(f"Transactions already linked to a subscription: {', '.join(linked_elsewhere)}")

    async with db.begin_nested():
        subscription = Subscription(
            business_id=business.id,
            card_id=card.id,
            name=params.name,
            amount=params.amount,
            frequency=params.frequency,
            start_date=params.start_date,
            end_date=params.end_date,
            status=SubscriptionStatus.ACTIVE,
            created_from_suggestion=created_from_suggestion,
            notes=params.notes,
        )
        db.add(subscription)
        await db.flush()

        for txn in backfill:
            txn.subscription_id = subscription.id
            txn.transaction_type = TransactionType.SUBSCRIPTION

        occurrences = monthly_schedule(
            params.start_date,
            projection_end(params.start_date, params.end_date),
            params.frequency.months,
        )
        skipped = _skip_dates(
            occurrences,
            [txn.deal_date for txn in backfill],
            settings.subscription_match_window_days,
        )

        projected_count = 0
        backfilled_count = 0
        for occurrence in occurrences:
            if occurrence in skipped:
                continue
            in_past = occurrence < today
            db.add(
                Transaction(
                    transaction_hash=subscription_occurrence_hash(subscription.id, occurrence, business.id, card.id),
                    transaction_type=TransactionType.SUBSCRIPTION,
                    business_id=business.id,
                    original_business_id=business.id,
                    card_id=card.id,
                    deal_date=occurrence,
                    bank_charge_date=occurrence,
                    charged_amount_ils=params.amount,
                    original_amount=params.amount,
                    original_currency="ILS",
                    payment_type=PaymentType.ONE_TIME,
                    subscription_id=subscription.id,
                    status=TransactionStatus.COMPLETED if in_past else TransactionStatus.PROJECTED,
                    projected_charge_date=None if in_past else occurrence,
                    actual_charge_date=occurrence if in_past else None,
                    is_refund=False,
                )
            )
            if in_past:
                backfilled_count += 1
            else:
                projected_count += 1
        await db.flush()
        await db.refresh(subscription)

    logger.info(
        "Subscription created",
        subscription_id=str(subscription.id),
        business_id=str(business.id),
        frequency=params.frequency.value,
        projected=projected_count,
        backfilled=backfilled_count,
        linked=len(backfill),
    )
    return SubscriptionCreateResult(
        subscription=SubscriptionResponse.model_validate(subscription),
        projected_count=projected_count,
        backfilled_count=backfilled_count,
        linked_count=len(backfill),
    )


async def cancel_subscription(
    db: AsyncSession,
    subscription_id: UUID,
    effective_date: date | None = None,
    *,
    today: date | None = None,
) -> SubscriptionCancelResult:
    """Cancel a subscription; generated occurrences from the end date on are cancelled.

    That covers projected rows and, for a backdated cancellation, the
    completed history the projection wrote after the end date. Occurrences
    confirmed by a real statement row stay as history.
    """
    subscription = await db.get(Subscription, subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    if subscription.status == SubscriptionStatus.CANCELLED:
        raise InvalidSubscriptionError("Subscription is already cancelled")

    end_date = effective_date or today or date.today()
    if end_date < subscription.start_date:
        raise InvalidSubscriptionError("Cancellation date is before the subscription start date")

    async with db.begin_nested():
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancelled_at = datetime.now(UTC)
        subscription.end_date = end_date

        result = await db.execute(
            select(Transaction).where(
                Transaction.subscription_id == subscription_id,
                or_(
                    and_(
                        Transaction.status == TransactionStatus.PROJECTED,
                        Transaction.projected_charge_date >= end_date,
                    ),
                    and_(
                        Transaction.status == TransactionStatus.COMPLETED,
                        Transaction.source_file.is_(None),
                        Transaction.deal_date >= end_date,
                    ),
                ),
            )
        )
        cancelled = list(result.scalars().all())
        for txn in cancelled:
            txn.status = TransactionStatus.CANCELLED
        await db.flush()
        await db.refresh(subscription)

    logger.info(
        "Subscription cancelled",
        subscription_id=str(subscription_id),
        end_date=end_date.isoformat(),
        cancelled_transactions=len(cancelled),
    )
    return SubscriptionCancelResult(
        subscription=SubscriptionResponse.model_validate(subscription),
        cancelled_transactions=len(cancelled),
    )
