"""Group-aware deletion of transactions and upload batches.

Deleting part of an installment plan or part of a subscription's stream is
never done implicitly: without an explicit strategy the caller gets a
``PartialGroupDeletionError`` describing the split.
"""

from collections import defaultdict
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from expense_tracker.logger import get_logger
from expense_tracker.models import (
    Business,
    Subscription,
    SubscriptionStatus,
    Transaction,
    UploadBatch,
)
from expense_tracker.schemas.transactions import (
    AffectedSubscription,
    DeleteStrategy,
    DeletionPreview,
    DeletionResult,
    PartialInstallmentGroup,
)

logger = get_logger(__name__)


class DeletionError(Exception):
    """Base exception for deletion errors."""

    pass


class DeletionTargetNotFoundError(DeletionError):
    pass


class PartialGroupDeletionError(DeletionError):
    """The selection covers some but not all rows of an installment group or subscription."""

    def __init__(self, preview: DeletionPreview) -> None:
        super().__init__(
            f"Selection splits {len(preview.partial_installment_groups)} installment group(s) "
            f"and {len(preview.affected_subscriptions)} subscription(s)"
        )
        self.preview = preview


async def preview_deletion(db: AsyncSession, transactions: list[Transaction]) -> DeletionPreview:
    """Describe which installment groups and subscriptions a selection would split."""
    selected_ids = {txn.id for txn in transactions}

    by_group: dict[str, list[Transaction]] = defaultdict(list)
    by_subscription: dict[UUID, list[Transaction]] = defaultdict(list)
    for txn in transactions:
        if txn.installment_group_id:
            by_group[txn.installment_group_id].append(txn)
        if txn.subscription_id:
            by_subscription[txn.subscription_id].append(txn)

    partial_groups: list[PartialInstallmentGroup] = []
    for group_id, selected in by_group.items():
        result = await db.execute(
            select(Transaction.id, Transaction.installment_index)
            .where(Transaction.installment_group_id == group_id)
            .order_by(Transaction.installment_index)
        )
        members = result.all()
        if all(member_id in selected_ids for member_id, _ in members):
            continue
        business = await db.get(Business, selected[0].business_id)
        partial_groups.append(
            PartialInstallmentGroup(
                group_id=group_id,
                business_name=business.display_name if business else "Unknown",
                selected_indices=sorted(txn.installment_index or 0 for txn in selected),
                all_indices=[index or 0 for _, index in members],
            )
        )

    affected: list[AffectedSubscription] = []
    for subscription_id, selected in by_subscription.items():
        total = await db.scalar(
            select(func.count()).select_from(Transaction).where(Transaction.subscription_id == subscription_id)
        )
        remaining = (total or 0) - len(selected)
        if remaining <= 0:
            continue
        subscription = await db.get(Subscription, subscription_id)
        name = "Unknown"
        if subscription is not None:
            business = await db.get(Business, subscription.business_id)
            name = subscription.name or (business.display_name if business else "Unknown")
        affected.append(
            AffectedSubscription(
                subscription_id=subscription_id,
                name=name,
                selected_dates=sorted(txn.deal_date for txn in selected),
                remaining_count=remaining,
            )
        )

    return DeletionPreview(
        selected_count=len(transactions),
        partial_installment_groups=partial_groups,
        affected_subscriptions=affected,
    )


async def _delete_selection(
    db: AsyncSession,
    transactions: list[Transaction],
    strategy: DeleteStrategy | None,
) -> DeletionResult:
    preview = await preview_deletion(db, transactions)
    if preview.requires_confirmation and strategy is None:
        raise PartialGroupDeletionError(preview)

    ids = {txn.id for txn in transactions}
    cancelled: list[UUID] = []

    async with db.begin_nested():
        if strategy == DeleteStrategy.WHOLE_GROUPS:
            group_ids = [group.group_id for group in preview.partial_installment_groups]
            if group_ids:
                result = await db.execute(
                    select(Transaction.id).where(Transaction.installment_group_id.in_(group_ids))
                )
                ids.update(result.scalars().all())

            now = datetime.now(UTC)
            for affected in preview.affected_subscriptions:
                result = await db.execute(
                    select(Transaction.id).where(Transaction.subscription_id == affected.subscription_id)
                )
                ids.update(result.scalars().all())
                subscription = await db.get(Subscription, affected.subscription_id)
                if subscription is not None and subscription.status == SubscriptionStatus.ACTIVE:
                    subscription.status = SubscriptionStatus.CANCELLED
                    subscription.cancelled_at = now
                    subscription.end_date = min(affected.selected_dates)
                    cancelled.append(subscription.id)

        result = await db.execute(
            delete(Transaction)
            .where(Transaction.id.in_(list(ids)))
            .execution_options(synchronize_session="fetch")
        )
        deleted = result.rowcount or 0
        await db.flush()

    logger.info(
        "Transactions deleted",
        selected=len(transactions),
        deleted=deleted,
        strategy=strategy.value if strategy else None,
        cancelled_subscriptions=len(cancelled),
    )
    return DeletionResult(deleted_count=deleted, cancelled_subscription_ids=cancelled)


async def delete_transactions(
    db: AsyncSession,
    transaction_ids: list[UUID],
    *,
    strategy: DeleteStrategy | None = None,
) -> DeletionResult:
    """Delete the given transactions.

    WHOLE_GROUPS extends the selection to every row of a touched installment
    group or subscription (cancelling the subscription); SELECTED_ONLY deletes
    exactly the selection.

    Raises:
        DeletionTargetNotFoundError: An id does not exist.
        PartialGroupDeletionError: The selection splits a group and no strategy was given.
    """
    unique_ids = set(transaction_ids)
    result = await db.execute(select(Transaction).where(Transaction.id.in_(list(unique_ids))))
    transactions = list(result.scalars().all())
    missing = unique_ids - {txn.id for txn in transactions}
    if missing:
        raise DeletionTargetNotFoundError(f"Transactions not found: {', '.join(sorted(str(m) for m in missing))}")
    return await _delete_selection(db, transactions, strategy)


async def delete_upload_batch(
    db: AsyncSession,
    batch_id: UUID,
    *,
    strategy: DeleteStrategy | None = None,
) -> DeletionResult:
    """Delete an upload batch together with the transactions it wrote."""
    batch = await db.get(UploadBatch, batch_id)
    if batch is None:
        raise DeletionTargetNotFoundError(f"Upload batch {batch_id} not found")

    result = await db.execute(select(Transaction).where(Transaction.upload_batch_id == batch_id))
    transactions = list(result.scalars().all())

    async with db.begin_nested():
        deletion = await _delete_selection(db, transactions, strategy)
        await db.execute(
            delete(UploadBatch).where(UploadBatch.id == batch_id).execution_options(synchronize_session="fetch")
        )
        await db.flush()

    logger.info("Upload batch deleted", batch_id=str(batch_id), deleted=deletion.deleted_count)
    return deletion
