"""Business merge engine: duplicate detection, merge, unmerge and deletion."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from expense_tracker.config import settings
from expense_tracker.logger import async_log_timing, get_logger
from expense_tracker.models import (
    Business,
    BusinessMergeSuggestion,
    Subscription,
    SubscriptionSuggestion,
    SuggestionStatus,
    Transaction,
)
from expense_tracker.schemas.businesses import (
    BusinessDeleteInfo,
    BusinessDeleteMode,
    BusinessDeleteResult,
    DetectMergesResult,
    MergeResult,
    UnmergeResult,
)
from expense_tracker.services.similarity import similarity

logger = get_logger(__name__)


class BusinessMergeError(Exception):
    """Base exception for business merge errors."""

    pass


class BusinessNotFoundError(BusinessMergeError):
    pass


class SuggestionNotFoundError(BusinessMergeError):
    pass


class InvalidMergeRequestError(BusinessMergeError):
    """The requested merge would break the single-level merge graph or is malformed."""

    pass


class DeleteModeRequiredError(BusinessMergeError):
    """Other businesses are merged into this one; the caller must choose what happens to them."""

    def __init__(self, info: BusinessDeleteInfo) -> None:
        super().__init__(
            f"{len(info.merged_business_ids)} business(es) are merged into {info.display_name}; "
            "choose parent_only or cascade"
        )
        self.info = info


def _pair_key(a: UUID, b: UUID) -> frozenset[UUID]:
    return frozenset((a, b))


async def _blocked_pairs(db: AsyncSession, now: datetime) -> set[frozenset[UUID]]:
    """Pairs with a pending suggestion or a rejection whose freeze has not expired."""
    result = await db.execute(
        select(BusinessMergeSuggestion.business_id_1, BusinessMergeSuggestion.business_id_2).where(
            or_(
                BusinessMergeSuggestion.status == SuggestionStatus.PENDING,
                (BusinessMergeSuggestion.status == SuggestionStatus.REJECTED)
                & (BusinessMergeSuggestion.rejected_until > now),
            )
        )
    )
    return {_pair_key(id_1, id_2) for id_1, id_2 in result.all()}


async def detect_merges(db: AsyncSession, threshold: float | None = None) -> DetectMergesResult:
    """Compare every pair of active businesses and suggest likely duplicates."""
    threshold = settings.merge_similarity_threshold if threshold is None else threshold
    now = datetime.now(UTC)

    async with async_log_timing("detect_merges", logger=logger, threshold=threshold) as timing:
        result = await db.execute(
            select(Business).where(Business.merged_to_id.is_(None)).order_by(Business.normalized_name)
        )
        businesses = list(result.scalars().all())
        blocked = await _blocked_pairs(db, now)

        created = 0
        for i, first in enumerate(businesses):
            for second in businesses[i + 1 :]:
                score = similarity(first.normalized_name, second.normalized_name)
                if score < threshold:
                    continue
                key = _pair_key(first.id, second.id)
                if key in blocked:
                    continue
                db.add(
                    BusinessMergeSuggestion(
                        business_id_1=first.id,
                        business_id_2=second.id,
                        similarity_score=Decimal(str(round(score, 4))),
                        reason=f"fuzzy_match: {first.display_name!r} ~ {second.display_name!r} ({score:.0%})",
                        status=SuggestionStatus.PENDING,
                    )
                )
                blocked.add(key)
                created += 1
        await db.flush()
        timing["businesses_compared"] = len(businesses)
        timing["suggestions_created"] = created

    return DetectMergesResult(suggestions_created=created, businesses_compared=len(businesses))


async def list_pending_suggestions(db: AsyncSession) -> list[BusinessMergeSuggestion]:
    result = await db.execute(
        select(BusinessMergeSuggestion)
        .where(BusinessMergeSuggestion.status == SuggestionStatus.PENDING)
        .order_by(BusinessMergeSuggestion.similarity_score.desc())
    )
    return list(result.scalars().all())


async def merge_businesses(db: AsyncSession, target_id: UUID, business_ids: list[UUID]) -> MergeResult:
    """Merge ``business_ids`` (target included) into ``target_id``.

    Transactions move to the target, keeping their first-ever business in
    ``original_business_id``; pending suggestions about the sources are
    dropped; sources are marked with ``merged_to_id``. All of it happens in
    one SAVEPOINT.

    Raises:
        InvalidMergeRequestError: Target missing from the set, fewer than two
            businesses, or a business that is already merged.
        BusinessNotFoundError: An id does not exist.
    """
    ids = list(dict.fromkeys(business_ids))
    if target_id not in ids:
        raise InvalidMergeRequestError("Target business must be one of the selected businesses")
    source_ids = [business_id for business_id in ids if business_id != target_id]
    if not source_ids:
        raise InvalidMergeRequestError("At least two distinct businesses are required to merge")

    result = await db.execute(select(Business).where(Business.id.in_(ids)))
    found = {business.id: business for business in result.scalars().all()}
    missing = [business_id for business_id in ids if business_id not in found]
    if missing:
        raise BusinessNotFoundError(f"Business not found: {', '.join(str(m) for m in missing)}")

    target = found[target_id]
    if target.merged_to_id is not None:
        raise InvalidMergeRequestError("Target business is itself merged into another business")
    already_merged = [str(sid) for sid in source_ids if found[sid].merged_to_id is not None]
    if already_merged:
        raise InvalidMergeRequestError(f"Businesses already merged: {', '.join(already_merged)}")

    async with db.begin_nested():
        txn_result = await db.execute(select(Transaction).where(Transaction.business_id.in_(source_ids)))
        transactions = list(txn_result.scalars().all())
        for transaction in transactions:
            if transaction.original_business_id is None:
                transaction.original_business_id = transaction.business_id
            transaction.business_id = target_id

        await db.execute(
            delete(BusinessMergeSuggestion)
            .where(BusinessMergeSuggestion.status == SuggestionStatus.PENDING)
            .where(
                or_(
                    BusinessMergeSuggestion.business_id_1.in_(source_ids),
                    BusinessMergeSuggestion.business_id_2.in_(source_ids),
                )
            )
            .execution_options(synchronize_session=False)
        )

        # Businesses previously merged into a source now point at the target directly
        children_result = await db.execute(select(Business).where(Business.merged_to_id.in_(source_ids)))
        for child in children_result.scalars().all():
            child.merged_to_id = target_id

        for source_id in source_ids:
            found[source_id].merged_to_id = target_id
        await db.flush()

    logger.info(
        "Businesses merged",
        target_id=str(target_id),
        businesses_merged=len(source_ids),
        transactions_moved=len(transactions),
    )
    return MergeResult(
        target_id=target_id,
        businesses_merged=len(source_ids),
        transactions_moved=len(transactions),
    )


async def unmerge_business(db: AsyncSession, business_id: UUID) -> UnmergeResult:
    """Restore a merged business and move its original transactions back.

    Transactions that were merged without ``original_business_id`` cannot be
    attributed and stay with the target.
    """
    business = await db.get(Business, business_id)
    if business is None:
        raise BusinessNotFoundError(f"Business {business_id} not found")
    if business.merged_to_id is None:
        raise InvalidMergeRequestError("Business is not merged")

    target_id = business.merged_to_id
    async with db.begin_nested():
        restored = await _restore_transactions(db, business_id)
        business.merged_to_id = None
        await db.flush()

    logger.info(
        "Business unmerged",
        business_id=str(business_id),
        target_id=str(target_id),
        transactions_restored=restored,
    )
    return UnmergeResult(business_id=business_id, target_id=target_id, transactions_restored=restored)


async def _restore_transactions(db: AsyncSession, business_id: UUID) -> int:
    result = await db.execute(select(Transaction).where(Transaction.original_business_id == business_id))
    transactions = list(result.scalars().all())
    for transaction in transactions:
        transaction.business_id = business_id
    return len(transactions)


async def _get_suggestion(db: AsyncSession, suggestion_id: UUID) -> BusinessMergeSuggestion:
    suggestion = await db.get(BusinessMergeSuggestion, suggestion_id)
    if suggestion is None:
        raise SuggestionNotFoundError(f"Suggestion {suggestion_id} not found")
    if suggestion.status != SuggestionStatus.PENDING:
        raise InvalidMergeRequestError(f"Suggestion is already {suggestion.status.value}")
    return suggestion


async def approve_merge_suggestion(db: AsyncSession, suggestion_id: UUID, target_id: UUID) -> MergeResult:
    """Accept a suggestion, keeping ``target_id`` and merging the other business into it."""
    suggestion = await _get_suggestion(db, suggestion_id)
    pair = [suggestion.business_id_1, suggestion.business_id_2]
    if target_id not in pair:
        raise InvalidMergeRequestError("Target business must be one of the suggested pair")

    async with db.begin_nested():
        suggestion.status = SuggestionStatus.APPROVED
        suggestion.resolved_at = datetime.now(UTC)
        await db.flush()
        return await merge_businesses(db, target_id, pair)


async def reject_merge_suggestion(db: AsyncSession, suggestion_id: UUID) -> BusinessMergeSuggestion:
    """Reject a suggestion and keep the pair from being re-suggested for the freeze window."""
    suggestion = await _get_suggestion(db, suggestion_id)
    now = datetime.now(UTC)
    suggestion.status = SuggestionStatus.REJECTED
    suggestion.resolved_at = now
    suggestion.rejected_until = now + timedelta(days=settings.suggestion_freeze_days)
    await db.flush()
    logger.info("Merge suggestion rejected", suggestion_id=str(suggestion_id))
    return suggestion


async def get_delete_info(db: AsyncSession, business_id: UUID) -> BusinessDeleteInfo:
    business = await db.get(Business, business_id)
    if business is None:
        raise BusinessNotFoundError(f"Business {business_id} not found")

    merged_result = await db.execute(select(Business.id).where(Business.merged_to_id == business_id))
    merged_ids = list(merged_result.scalars().all())

    transaction_count = await db.scalar(
        select(func.count()).select_from(Transaction).where(Transaction.business_id == business_id)
    )
    subscription_count = await db.scalar(
        select(func.count()).select_from(Subscription).where(Subscription.business_id == business_id)
    )
    merged_transaction_count = 0
    if merged_ids:
        merged_transaction_count = await db.scalar(
            select(func.count())
            .select_from(Transaction)
            .where(Transaction.original_business_id.in_(merged_ids))
        )

    return BusinessDeleteInfo(
        business_id=business_id,
        display_name=business.display_name,
        transaction_count=transaction_count or 0,
        subscription_count=subscription_count or 0,
        merged_business_ids=merged_ids,
        merged_transaction_count=merged_transaction_count or 0,
    )


async def delete_business(
    db: AsyncSession,
    business_id: UUID,
    mode: BusinessDeleteMode | None = None,
) -> BusinessDeleteResult:
    """Delete a business with its transactions and subscriptions.

    When other businesses are merged into it, ``mode`` decides their fate:
    PARENT_ONLY unmerges them first (their transactions survive), CASCADE
    deletes them together with every transaction that originated from them.

    Raises:
        DeleteModeRequiredError: Merged businesses exist and no mode was given.
    """
    info = await get_delete_info(db, business_id)
    if info.requires_mode and mode is None:
        raise DeleteModeRequiredError(info)

    merged_ids = info.merged_business_ids
    deleted_merged_transactions = 0
    unmerged = 0

    async with db.begin_nested():
        if merged_ids and mode == BusinessDeleteMode.CASCADE:
            deleted_merged_transactions = await _delete_where(
                db, Transaction, Transaction.original_business_id.in_(merged_ids)
            )
        elif merged_ids:
            for merged_id in merged_ids:
                await _restore_transactions(db, merged_id)
            children = await db.execute(select(Business).where(Business.id.in_(merged_ids)))
            for child in children.scalars().all():
                child.merged_to_id = None
            unmerged = len(merged_ids)
            await db.flush()

        doomed_ids = [business_id]
        if mode == BusinessDeleteMode.CASCADE:
            doomed_ids += merged_ids

        deleted_transactions = await _delete_where(db, Transaction, Transaction.business_id.in_(doomed_ids))
        await _delete_where(
            db,
            Transaction,
            Transaction.subscription_id.in_(select(Subscription.id).where(Subscription.business_id.in_(doomed_ids))),
        )
        deleted_subscriptions = await _delete_where(db, Subscription, Subscription.business_id.in_(doomed_ids))
        await _delete_where(db, SubscriptionSuggestion, SubscriptionSuggestion.business_id.in_(doomed_ids))
        await _delete_where(
            db,
            BusinessMergeSuggestion,
            or_(
                BusinessMergeSuggestion.business_id_1.in_(doomed_ids),
                BusinessMergeSuggestion.business_id_2.in_(doomed_ids),
            ),
        )
        await _delete_where(db, Business, Business.id.in_(merged_ids if mode == BusinessDeleteMode.CASCADE else []))
        await _delete_where(db, Business, Business.id == business_id)

    logger.info(
        "Business deleted",
        business_id=str(business_id),
        mode=mode.value if mode else None,
        deleted_transactions=deleted_transactions,
        deleted_merged_transactions=deleted_merged_transactions,
        unmerged_businesses=unmerged,
    )
    return BusinessDeleteResult(
        business_id=business_id,
        deleted_transactions=deleted_transactions,
        deleted_subscriptions=deleted_subscriptions,
        deleted_merged_businesses=len(merged_ids) if mode == BusinessDeleteMode.CASCADE else 0,
        deleted_merged_transactions=deleted_merged_transactions,
        unmerged_businesses=unmerged,
    )


async def _delete_where(db: AsyncSession, model: type, condition) -> int:
    result = await db.execute(delete(model).where(condition).execution_options(synchronize_session="fetch"))
    return result.rowcount or 0
