"""Tests for the statement reconciliation engine.

GIVEN: Parsed statement rows and the stored transactions
WHEN: Ingesting rows one at a time
THEN: Each row is classified new/duplicate/group_joined/completed/ambiguous
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from expense_tracker.models import Business, Transaction, TransactionStatus, TransactionType
from expense_tracker.models.subscription import SubscriptionFrequency
from expense_tracker.schemas.statement import IngestOutcome
from expense_tracker.schemas.subscriptions import SubscriptionCreate
from expense_tracker.services.installments import get_group_transactions
from expense_tracker.services.reconciliation import (
    ReconciliationEngine,
    _ConcurrentInsert,
    exceeds_tolerance,
    load_engine_config,
)
from expense_tracker.services.subscriptions import create_subscription
from tests.factories import BusinessFactory, CardFactory, StatementRowFactory


async def _count(db, *conditions) -> int:
    return await db.scalar(select(func.count()).select_from(Transaction).where(*conditions))


def test_exceeds_tolerance() -> None:
    tolerance = Decimal("0.05")
    assert not exceeds_tolerance(Decimal("100"), Decimal("104.99"), tolerance)
    assert exceeds_tolerance(Decimal("100"), Decimal("106"), tolerance)
    assert exceeds_tolerance(Decimal("0"), Decimal("1"), tolerance)
    assert not exceeds_tolerance(Decimal("0"), Decimal("0"), tolerance)


@pytest.mark.asyncio
class TestOneTimeRows:
    async def test_new_row_is_stored_with_provenance(self, db):
        """GIVEN: An empty store and a known card
        WHEN: Ingesting a one-time charge
        THEN: One completed row is stored against a newly created business"""
        card = await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()

        result = await engine.ingest(db, StatementRowFactory(), source_file="march.xlsx")

        assert result.outcome == IngestOutcome.NEW
        txn = await db.get(Transaction, result.transaction_id)
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.transaction_type == TransactionType.ONE_TIME
        assert txn.card_id == card.id
        assert txn.source_file == "march.xlsx"
        assert txn.original_business_id == txn.business_id
        business = await db.get(Business, txn.business_id)
        assert business.normalized_name == "cafe nimrod"
        assert business.display_name == "Cafe Nimrod"

    async def test_reingesting_same_row_is_duplicate(self, db):
        """GIVEN: A row already ingested
        WHEN: The same statement is uploaded again
        THEN: The row is a duplicate and nothing new is written"""
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()
        row = StatementRowFactory()

        first = await engine.ingest(db, row)
        second = await engine.ingest(db, row)

        assert second.outcome == IngestOutcome.DUPLICATE
        assert second.transaction_id == first.transaction_id
        assert await _count(db) == 1

    async def test_refund_is_not_a_duplicate_of_the_charge(self, db):
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()

        charge = await engine.ingest(db, StatementRowFactory())
        refund = await engine.ingest(db, StatementRowFactory(is_refund=True))

        assert charge.outcome == IngestOutcome.NEW
        assert refund.outcome == IngestOutcome.NEW
        assert await _count(db) == 2

    async def test_unknown_card_is_ambiguous(self, db):
        engine = ReconciliationEngine()

        result = await engine.ingest(db, StatementRowFactory(card_last4="9999"))

        assert result.outcome == IngestOutcome.AMBIGUOUS
        assert "9999" in result.reason
        assert await _count(db) == 0

    async def test_two_active_cards_with_same_digits_are_ambiguous(self, db):
        first = await CardFactory.create_async(db, last4_digits="1234")
        second = await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()

        result = await engine.ingest(db, StatementRowFactory())

        assert result.outcome == IngestOutcome.AMBIGUOUS
        assert set(result.candidate_ids) == {first.id, second.id}

    async def test_row_without_any_date_is_ambiguous(self, db):
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()

        result = await engine.ingest(db, StatementRowFactory(deal_date=None, bank_charge_date=None))

        assert result.outcome == IngestOutcome.AMBIGUOUS
        assert await _count(db) == 0

    async def test_row_for_merged_business_lands_on_target(self, db):
        """GIVEN: "Super Pharm" merged into "Super-Pharm"
        WHEN: A row arrives under the merged name
        THEN: It is stored on the target and remembers where it came from"""
        await CardFactory.create_async(db, last4_digits="1234")
        target = await BusinessFactory.create_async(db, display_name="Super-Pharm")
        source = await BusinessFactory.create_async(db, display_name="Super Pharm", merged_to_id=target.id)
        engine = ReconciliationEngine()

        result = await engine.ingest(db, StatementRowFactory(business_name="SUPER PHARM"))

        txn = await db.get(Transaction, result.transaction_id)
        assert txn.business_id == target.id
        assert txn.original_business_id == source.id

    async def test_merge_chain_is_ambiguous(self, db):
        await CardFactory.create_async(db, last4_digits="1234")
        root = await BusinessFactory.create_async(db, display_name="Root")
        middle = await BusinessFactory.create_async(db, display_name="Middle", merged_to_id=root.id)
        await BusinessFactory.create_async(db, display_name="Leaf", merged_to_id=middle.id)
        engine = ReconciliationEngine()

        result = await engine.ingest(db, StatementRowFactory(business_name="Leaf"))

        assert result.outcome == IngestOutcome.AMBIGUOUS
        assert middle.id in result.candidate_ids

    async def test_concurrent_insert_resolves_to_duplicate(self, db, monkeypatch):
        """GIVEN: Another upload stores the same row between lookup and insert
        WHEN: The unique constraint rejects our insert
        THEN: The row is reported as a duplicate of the stored one"""
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()
        row = StatementRowFactory()
        stored = await engine.ingest(db, row)

        real_find = engine._find_by_hash
        calls = {"n": 0}

        async def stale_lookup(session, txn_hash):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await real_find(session, txn_hash)

        monkeypatch.setattr(engine, "_find_by_hash", stale_lookup)

        result = await engine.ingest(db, row)

        assert result.outcome == IngestOutcome.DUPLICATE
        assert result.transaction_id == stored.transaction_id
        assert await _count(db) == 1

    async def test_rejected_insert_without_stored_twin_is_ambiguous(self, db, monkeypatch):
        """GIVEN: The database rejects the insert for a reason other than a stored twin
        WHEN: Ingesting the row
        THEN: The row is reported for review rather than as a duplicate"""
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()

        async def rejecting_insert(session, transactions):
            raise _ConcurrentInsert()

        monkeypatch.setattr(engine, "_insert", rejecting_insert)

        result = await engine.ingest(db, StatementRowFactory())

        assert result.outcome == IngestOutcome.AMBIGUOUS
        assert result.transaction_id is None
        assert await _count(db) == 0


@pytest.mark.asyncio
class TestInstallmentRows:
    async def test_payment_five_of_twelve_establishes_group(self, db):
        """GIVEN: Payment 5 of a 12-payment plan seen first
        WHEN: Ingesting it
        THEN: Payments 1-4 are backfilled, 6-12 projected, under one group id"""
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()
        row = StatementRowFactory(installment=True, installment_index=5, bank_charge_date=date(2024, 5, 10))

        result = await engine.ingest(db, row, source_file="may.xlsx")

        assert result.outcome == IngestOutcome.NEW
        assert result.generated_count == 11
        current = await db.get(Transaction, result.transaction_id)
        group = await get_group_transactions(db, current.installment_group_id)
        assert [t.installment_index for t in group] == list(range(1, 13))
        assert len({t.transaction_hash for t in group}) == 12

        by_index = {t.installment_index: t for t in group}
        assert by_index[5].source_file == "may.xlsx"
        assert by_index[5].bank_charge_date == date(2024, 5, 10)
        for i in range(1, 5):
            assert by_index[i].status == TransactionStatus.COMPLETED
            assert by_index[i].source_file is None
            assert by_index[i].is_placeholder
        for i in range(6, 13):
            assert by_index[i].status == TransactionStatus.PROJECTED
        assert by_index[12].projected_charge_date == date(2024, 12, 10)
        assert all(t.original_amount == Decimal("1200.00") for t in group)

    async def test_next_payment_completes_projection_in_place(self, db):
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()
        await engine.ingest(db, StatementRowFactory(installment=True, installment_index=5))

        result = await engine.ingest(
            db,
            StatementRowFactory(installment=True, installment_index=6, bank_charge_date=date(2024, 6, 11)),
            source_file="june.xlsx",
        )

        assert result.outcome == IngestOutcome.COMPLETED
        txn = await db.get(Transaction, result.transaction_id)
        assert txn.installment_index == 6
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.actual_charge_date == date(2024, 6, 11)
        assert txn.source_file == "june.xlsx"
        assert await _count(db) == 12

        again = await engine.ingest(
            db,
            StatementRowFactory(installment=True, installment_index=6, bank_charge_date=date(2024, 6, 11)),
            source_file="june.xlsx",
        )
        assert again.outcome == IngestOutcome.DUPLICATE

    async def test_backfilled_payment_is_completed_by_real_row(self, db):
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()
        await engine.ingest(db, StatementRowFactory(installment=True, installment_index=5))

        result = await engine.ingest(db, StatementRowFactory(installment=True, installment_index=1), source_file="jan.xlsx")

        assert result.outcome == IngestOutcome.COMPLETED
        txn = await db.get(Transaction, result.transaction_id)
        assert txn.installment_index == 1
        assert txn.source_file == "jan.xlsx"
        assert not txn.is_placeholder

    async def test_group_joined_when_nothing_was_projected(self, db):
        await CardFactory.create_async(db, last4_digits="1234")
        config = replace(load_engine_config(), installment_backfill_enabled=False, installment_projection_enabled=False)
        engine = ReconciliationEngine(config)

        first = await engine.ingest(db, StatementRowFactory(installment=True, installment_index=1))
        second = await engine.ingest(db, StatementRowFactory(installment=True, installment_index=2))

        assert first.outcome == IngestOutcome.NEW
        assert first.generated_count == 0
        assert second.outcome == IngestOutcome.GROUP_JOINED
        a = await db.get(Transaction, first.transaction_id)
        b = await db.get(Transaction, second.transaction_id)
        assert a.installment_group_id == b.installment_group_id

    async def test_out_of_range_index_is_ambiguous(self, db):
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()

        result = await engine.ingest(db, StatementRowFactory(installment=True, installment_index=13))

        assert result.outcome == IngestOutcome.AMBIGUOUS
        assert await _count(db) == 0

    async def test_drifted_purchase_date_matches_existing_payment(self, db):
        """GIVEN: A plan established from a row carrying the purchase date
        WHEN: A later statement omits it and the back-calculated date is two days off
        THEN: The payment completes the existing projection instead of opening a second plan"""
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()
        await engine.ingest(
            db, StatementRowFactory(installment=True, installment_total=3, original_amount=Decimal("300.00"))
        )
        drifted = StatementRowFactory(
            installment=True,
            installment_index=2,
            installment_total=3,
            original_amount=Decimal("300.00"),
            deal_date=None,
            bank_charge_date=date(2024, 2, 12),
        )

        result = await engine.ingest(db, drifted, source_file="feb.xlsx")

        assert result.outcome == IngestOutcome.COMPLETED
        assert await _count(db) == 3

        again = await engine.ingest(db, drifted, source_file="feb.xlsx")
        assert again.outcome == IngestOutcome.DUPLICATE
        assert again.transaction_id == result.transaction_id
        assert await _count(db) == 3

    async def test_twin_first_payment_across_uploads_is_not_copied(self, db):
        """GIVEN: Payment 1 of a plan stored from one upload
        WHEN: The identical payment-1 row arrives in a later upload
        THEN: It is a duplicate; no second group or copy row is made"""
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()
        row = StatementRowFactory(installment=True)

        await engine.ingest_file(db, [row], source_file="jan.xlsx")
        results = await engine.ingest_file(db, [row], source_file="jan-again.xlsx")

        assert results[0].outcome == IngestOutcome.DUPLICATE
        assert await _count(db) == 12

    async def test_twin_first_payment_in_same_file_is_ambiguous(self, db):
        """GIVEN: One file listing two identical payment-1 rows
        WHEN: Ingesting the file
        THEN: The first establishes the plan and the second is left for review"""
        await CardFactory.create_async(db, last4_digits="1234")
        engine = ReconciliationEngine()
        row = StatementRowFactory(installment=True)

        results = await engine.ingest_file(db, [row, row], source_file="jan.xlsx")

        assert [r.outcome for r in results] == [IngestOutcome.NEW, IngestOutcome.AMBIGUOUS]
        assert results[1].candidate_ids == [results[0].transaction_id]
        assert await _count(db) == 12


@pytest.mark.asyncio
class TestSubscriptionRows:
    async def test_real_charge_completes_projected_occurrence(self, db):
        """GIVEN: A subscription with projected monthly occurrences
        WHEN: A statement row for the same business and card arrives two days late
        THEN: The projected occurrence becomes the real charge"""
        card = await CardFactory.create_async(db, last4_digits="1234")
        created = await create_subscription(
            db,
            SubscriptionCreate(
                business_name="Netflix",
                card_id=card.id,
                amount=Decimal("49.90"),
                frequency=SubscriptionFrequency.MONTHLY,
                start_date=date(2024, 3, 1),
                end_date=date(2024, 12, 1),
            ),
            today=date(2024, 2, 1),
        )
        engine = ReconciliationEngine()
        row = StatementRowFactory(
            business_name="NETFLIX",
            deal_date=date(2024, 4, 3),
            bank_charge_date=date(2024, 5, 2),
            charged_amount_ils=Decimal("49.90"),
        )

        result = await engine.ingest(db, row, source_file="april.xlsx")

        assert result.outcome == IngestOutcome.COMPLETED
        txn = await db.get(Transaction, result.transaction_id)
        assert txn.subscription_id == created.subscription.id
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.deal_date == date(2024, 4, 3)
        assert txn.source_file == "april.xlsx"
        assert await _count(db, Transaction.subscription_id == created.subscription.id) == 10

        again = await engine.ingest(db, row, source_file="april.xlsx")
        assert again.outcome == IngestOutcome.DUPLICATE
        assert again.transaction_id == txn.id

    async def test_charge_outside_window_is_new(self, db):
        card = await CardFactory.create_async(db, last4_digits="1234")
        await create_subscription(
            db,
            SubscriptionCreate(
                business_name="Netflix",
                card_id=card.id,
                amount=Decimal("49.90"),
                frequency=SubscriptionFrequency.MONTHLY,
                start_date=date(2024, 3, 1),
                end_date=date(2024, 6, 1),
            ),
            today=date(2024, 2, 1),
        )
        engine = ReconciliationEngine()

        result = await engine.ingest(
            db,
            StatementRowFactory(business_name="Netflix", deal_date=date(2024, 3, 15), charged_amount_ils=Decimal("49.90")),
        )

        assert result.outcome == IngestOutcome.NEW
