"""Detection of recurring charges that look like unregistered subscriptions."""

from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from expense_tracker.config import settings
from expense_tracker.logger import async_log_timing, get_logger
from expense_tracker.models import (
    Business,
    PaymentType,
    SubscriptionFrequency,
    SubscriptionSuggestion,
    SuggestionStatus,
    Transaction,
    TransactionStatus,
)
from expense_tracker.schemas.subscriptions import (
    DetectSubscriptionsResult,
    SubscriptionCreate,
    SubscriptionCreateResult,
)
from expense_tracker.services.subscriptions import SubscriptionError, create_subscription

logger = get_logger(__name__)

MIN_OCCURRENCES = 3
MIN_DAYS_SPANNED = 60
MONTHLY_INTERVAL_DAYS = 30
MONTHLY_TOLERANCE_DAYS = 5
ANNUAL_INTERVAL_DAYS = 365
ANNUAL_TOLERANCE_DAYS = 10

SUBSCRIPTION_KEYWORDS = (
    "מנוי",
    "הוראת קבע",
    "חודשי",
    "שנתי",
    "subscription",
    "monthly",
    "membership",
    "netflix",
    "spotify",
    "apple",
    "google",
    "amazon prime",
    "youtube",
    "disney",
    "hbo",
    "gym",
    "insurance",
    "hosting",
    "cloud",
    "saas",
)


class SubscriptionSuggestionNotFoundError(SubscriptionError):
    pass


@dataclass(frozen=True)
class RecurrencePattern:
    frequency: SubscriptionFrequency
    regular: bool
    average_interval: float


def classify_intervals(dates: list[date]) -> RecurrencePattern:
    """Infer the billing cadence of sorted charge dates.

    ``regular`` is True only when every gap fits the monthly or annual
    tolerance; otherwise the cadence is a best guess from the average gap.
    """
    intervals = [(later - earlier).days for earlier, later in zip(dates, dates[1:])]
    average = sum(intervals) / len(intervals) if intervals else 0.0

    def fits(target: int, tolerance: int) -> bool:
        return abs(average - target) <= tolerance and all(abs(i - target) <= tolerance for i in intervals)

    if intervals and fits(MONTHLY_INTERVAL_DAYS, MONTHLY_TOLERANCE_DAYS):
        return RecurrencePattern(SubscriptionFrequency.MONTHLY, True, average)
    if intervals and fits(ANNUAL_INTERVAL_DAYS, ANNUAL_TOLERANCE_DAYS):
        return RecurrencePattern(SubscriptionFrequency.ANNUAL, True, average)
    frequency = SubscriptionFrequency.MONTHLY if average <= 45 else SubscriptionFrequency.ANNUAL
    return RecurrencePattern(frequency, False, average)


def has_subscription_keyword(name: str) -> bool:
    lowered = name.lower()
    return any(keyword in lowered for keyword in SUBSCRIPTION_KEYWORDS)


async def _candidate_transactions(db: AsyncSession) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(
            Transaction.status == TransactionStatus.COMPLETED,
            Transaction.subscription_id.is_(None),
            Transaction.payment_type == PaymentType.ONE_TIME,
            Transaction.is_refund.is_(False),
        )
        .order_by(Transaction.deal_date)
    )
    return list(result.scalars().all())


async def _is_blocked(
    db: AsyncSession,
    business_id: UUID,
    card_id: UUID,
    amount: Decimal,
    now: datetime,
) -> bool:
    """A pending suggestion exists, or a rejection is still frozen, for this pattern."""
    result = await db.execute(
        select(SubscriptionSuggestion.detected_amount).where(
            SubscriptionSuggestion.business_id == business_id,
            SubscriptionSuggestion.card_id == card_id,
            or_(
                SubscriptionSuggestion.status == SuggestionStatus.PENDING,
                (SubscriptionSuggestion.status == SuggestionStatus.REJECTED)
                & (SubscriptionSuggestion.rejected_until > now),
            ),
        )
    )
    return any(detected == amount for detected in result.scalars().all())


async def detect_subscriptions(db: AsyncSession) -> DetectSubscriptionsResult:
    """Suggest subscriptions for charges repeating at a steady amount and cadence."""
    now = datetime.now(UTC)
    async with async_log_timing("detect_subscriptions", logger=logger) as timing:
        groups: dict[tuple[UUID, UUID, Decimal], list[Transaction]] = defaultdict(list)
        for txn in await _candidate_transactions(db):
            groups[(txn.business_id, txn.card_id, txn.charged_amount_ils)].append(txn)

        patterns = {
            key: txns
            for key, txns in groups.items()
            if len(txns) >= MIN_OCCURRENCES
            and (txns[-1].deal_date - txns[0].deal_date).days >= MIN_DAYS_SPANNED
        }

        created = 0
        for (business_id, card_id, amount), txns in patterns.items():
            business = await db.get(Business, business_id)
            dates = [txn.deal_date for txn in txns]
            pattern = classify_intervals(dates)
            keyword = business is not None and has_subscription_keyword(business.display_name)
            if not (pattern.regular or keyword):
                continue
            if await _is_blocked(db, business_id, card_id, amount, now):
                continue

            reason = (
                f"Regular {pattern.frequency.value} interval ({pattern.average_interval:.0f} days avg)"
                if pattern.regular
                else "Subscription keyword detected"
            )
            db.add(
                SubscriptionSuggestion(
                    business_id=business_id,
                    card_id=card_id,
                    detected_amount=amount,
                    frequency=pattern.frequency,
                    first_occurrence=dates[0],
                    last_occurrence=dates[-1],
                    occurrence_count=len(dates),
                    detection_reason=reason,
                    status=SuggestionStatus.PENDING,
                )
            )
            created += 1
        await db.flush()
        timing["patterns_analyzed"] = len(patterns)
        timing["suggestions_created"] = created

    return DetectSubscriptionsResult(suggestions_created=created, patterns_analyzed=len(patterns))


async def list_pending_subscription_suggestions(db: AsyncSession) -> list[SubscriptionSuggestion]:
    result = await db.execute(
        select(SubscriptionSuggestion)
        .where(SubscriptionSuggestion.status == SuggestionStatus.PENDING)
        .order_by(SubscriptionSuggestion.created_at.desc())
    )
    return list(result.scalars().all())


async def _get_pending(db: AsyncSession, suggestion_id: UUID) -> SubscriptionSuggestion:
    suggestion = await db.get(SubscriptionSuggestion, suggestion_id)
    if suggestion is None:
        raise SubscriptionSuggestionNotFoundError(f"Subscription suggestion {suggestion_id} not found")
    if suggestion.status != SuggestionStatus.PENDING:
        raise SubscriptionError(f"Subscription suggestion is already {suggestion.status.value}")
    return suggestion


async def approve_subscription_suggestion(
    db: AsyncSession,
    suggestion_id: UUID,
    *,
    name: str | None = None,
    end_date: date | None = None,
    today: date | None = None,
) -> SubscriptionCreateResult:
    """Create a subscription from a suggestion, linking the charges it was detected from."""
    suggestion = await _get_pending(db, suggestion_id)

    result = await db.execute(
        select(Transaction).where(
            Transaction.business_id == suggestion.business_id,
            Transaction.card_id == suggestion.card_id,
            Transaction.status == TransactionStatus.COMPLETED,
            Transaction.subscription_id.is_(None),
            Transaction.payment_type == PaymentType.ONE_TIME,
            Transaction.is_refund.is_(False),
        )
    )
    linked = [txn for txn in result.scalars().all() if txn.charged_amount_ils == suggestion.detected_amount]

    async with db.begin_nested():
        created = await create_subscription(
            db,
            SubscriptionCreate(
                name=name,
                business_id=suggestion.business_id,
                card_id=suggestion.card_id,
                amount=suggestion.detected_amount,
                frequency=suggestion.frequency,
                start_date=suggestion.first_occurrence,
                end_date=end_date,
                backfill_transaction_ids=[txn.id for txn in linked],
            ),
            created_from_suggestion=True,
            today=today,
        )
        suggestion.status = SuggestionStatus.APPROVED
        suggestion.resolved_at = datetime.now(UTC)
        await db.flush()

    logger.info(
        "Subscription suggestion approved",
        suggestion_id=str(suggestion_id),
        subscription_id=str(created.subscription.id),
    )
    return created


async def reject_subscription_suggestion(db: AsyncSession, suggestion_id: UUID) -> SubscriptionSuggestion:
    suggestion = await _get_pending(db, suggestion_id)
    now = datetime.now(UTC)
    suggestion.status = SuggestionStatus.REJECTED
    suggestion.resolved_at = now
    suggestion.rejected_until = now + timedelta(days=settings.suggestion_freeze_days)
    await db.flush()
    logger.info("Subscription suggestion rejected", suggestion_id=str(suggestion_id))
    return suggestion
