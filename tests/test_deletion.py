"""Tests for group-aware transaction and batch deletion.

GIVEN: Installment groups, subscriptions and upload batches
WHEN: Deleting part or all of them
THEN: Splitting a group needs an explicit strategy
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from expense_tracker.models import (
    Subscription,
    SubscriptionFrequency,
    SubscriptionStatus,
    Transaction,
    UploadBatch,
    UploadBatchStatus,
)
from expense_tracker.schemas.statement import StatementFile
from expense_tracker.schemas.subscriptions import SubscriptionCreate
from expense_tracker.schemas.transactions import DeleteStrategy
from expense_tracker.services.deletion import (
    DeletionTargetNotFoundError,
    PartialGroupDeletionError,
    delete_transactions,
    delete_upload_batch,
    preview_deletion,
)
from expense_tracker.services.installments import get_group_transactions
from expense_tracker.services.reconciliation import ReconciliationEngine, load_engine_config
from expense_tracker.services.subscriptions import create_subscription
from tests.factories import (
    BusinessFactory,
    CardFactory,
    StatementRowFactory,
    TransactionFactory,
    UploadBatchFactory,
)


async def _count(db, *conditions) -> int:
    return await db.scalar(select(func.count()).select_from(Transaction).where(*conditions))


async def _installment_group(db) -> list[Transaction]:
    await CardFactory.create_async(db, last4_digits="1234")
    result = await ReconciliationEngine().ingest(db, StatementRowFactory(installment=True))
    txn = await db.get(Transaction, result.transaction_id)
    return await get_group_transactions(db, txn.installment_group_id)


async def _subscription(db):
    card = await CardFactory.create_async(db)
    return await create_subscription(
        db,
        SubscriptionCreate(
            name="Gym",
            business_name="Holmes Place",
            card_id=card.id,
            amount=Decimal("199.00"),
            frequency=SubscriptionFrequency.MONTHLY,
            start_date=date(2024, 1, 15),
            end_date=date(2024, 6, 15),
        ),
        today=date(2024, 3, 1),
    )


@pytest.mark.asyncio
class TestPreview:
    async def test_plain_selection_needs_no_confirmation(self, db):
        card = await CardFactory.create_async(db)
        business = await BusinessFactory.create_async(db)
        txn = await TransactionFactory.create_async(db, business_id=business.id, card_id=card.id)

        preview = await preview_deletion(db, [txn])

        assert preview.selected_count == 1
        assert not preview.requires_confirmation

    async def test_whole_group_selection_is_not_partial(self, db):
        group = await _installment_group(db)

        preview = await preview_deletion(db, group)

        assert preview.partial_installment_groups == []


@pytest.mark.asyncio
class TestDeleteTransactions:
    async def test_partial_group_requires_strategy(self, db):
        """GIVEN: A 12-payment installment plan
        WHEN: Deleting two of its payments without a strategy
        THEN: Nothing is deleted and the split is described"""
        group = await _installment_group(db)

        with pytest.raises(PartialGroupDeletionError) as exc_info:
            await delete_transactions(db, [group[0].id, group[1].id])

        partial = exc_info.value.preview.partial_installment_groups
        assert len(partial) == 1
        assert partial[0].business_name == "Ikea Netanya"
        assert partial[0].selected_indices == [1, 2]
        assert partial[0].all_indices == list(range(1, 13))
        assert await _count(db) == 12

    async def test_whole_groups_deletes_every_payment(self, db):
        group = await _installment_group(db)

        result = await delete_transactions(db, [group[0].id], strategy=DeleteStrategy.WHOLE_GROUPS)

        assert result.deleted_count == 12
        assert await _count(db) == 0

    async def test_selected_only_deletes_exactly_the_selection(self, db):
        group = await _installment_group(db)

        result = await delete_transactions(db, [group[3].id, group[4].id], strategy=DeleteStrategy.SELECTED_ONLY)

        assert result.deleted_count == 2
        remaining = await get_group_transactions(db, group[0].installment_group_id)
        assert [t.installment_index for t in remaining] == [1, 2, 3, 6, 7, 8, 9, 10, 11, 12]

    async def test_whole_groups_cancels_split_subscription(self, db):
        """GIVEN: A subscription with six occurrences
        WHEN: Deleting its April occurrence with whole-group strategy
        THEN: Every occurrence is deleted and the subscription is cancelled from April"""
        created = await _subscription(db)
        rows = (
            await db.execute(
                select(Transaction)
                .where(Transaction.subscription_id == created.subscription.id)
                .order_by(Transaction.deal_date)
            )
        ).scalars().all()
        assert len(rows) == 6

        with pytest.raises(PartialGroupDeletionError) as exc_info:
            await delete_transactions(db, [rows[3].id])
        affected = exc_info.value.preview.affected_subscriptions
        assert affected[0].name == "Gym"
        assert affected[0].remaining_count == 5

        result = await delete_transactions(db, [rows[3].id], strategy=DeleteStrategy.WHOLE_GROUPS)

        assert result.deleted_count == 6
        assert result.cancelled_subscription_ids == [created.subscription.id]
        subscription = await db.get(Subscription, created.subscription.id)
        await db.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.end_date == date(2024, 4, 15)

    async def test_unknown_id_is_not_found(self, db):
        with pytest.raises(DeletionTargetNotFoundError):
            await delete_transactions(db, [CardFactory.build().id])


@pytest.mark.asyncio
class TestDeleteUploadBatch:
    async def test_batch_and_its_rows_are_deleted(self, db):
        """GIVEN: A processed batch with one charge and a charge outside it
        WHEN: Deleting the batch
        THEN: Only the batch's rows go, along with the batch itself"""
        card = await CardFactory.create_async(db, last4_digits="1234")
        business = await BusinessFactory.create_async(db)
        outside = await TransactionFactory.create_async(db, business_id=business.id, card_id=card.id)
        batch = await UploadBatchFactory.create_async(db, status=UploadBatchStatus.PENDING)
        engine = ReconciliationEngine(replace(load_engine_config(), detect_after_batch=False))
        await engine.process_batch(db, batch, [StatementFile(filename="march.xlsx", rows=[StatementRowFactory()])])

        result = await delete_upload_batch(db, batch.id)

        assert result.deleted_count == 1
        assert await db.scalar(select(func.count()).select_from(UploadBatch)) == 0
        assert await _count(db) == 1
        assert await db.get(Transaction, outside.id) is not None

    async def test_batch_splitting_a_group_needs_strategy(self, db):
        await CardFactory.create_async(db, last4_digits="1234")
        batch = await UploadBatchFactory.create_async(db)
        engine = ReconciliationEngine()
        await engine.ingest(db, StatementRowFactory(installment=True))
        await engine.ingest(db, StatementRowFactory(installment=True, installment_index=2), batch=batch)

        with pytest.raises(PartialGroupDeletionError):
            await delete_upload_batch(db, batch.id)

        result = await delete_upload_batch(db, batch.id, strategy=DeleteStrategy.SELECTED_ONLY)
        assert result.deleted_count == 1
        assert await _count(db) == 11

    async def test_unknown_batch_is_not_found(self, db):
        with pytest.raises(DeletionTargetNotFoundError):
            await delete_upload_batch(db, UploadBatchFactory.build().id)
