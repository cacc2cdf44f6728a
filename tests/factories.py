"""Test data factories using factory_boy pattern.

Usage:
    # Simple creation
    card = CardFactory.build()

    # Create and flush to DB (transaction not committed)
    card = await CardFactory.create_async(db, last4_digits="1234")
    txn = await TransactionFactory.create_async(db, business_id=b.id, card_id=card.id)
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TypeVar
from uuid import uuid4

import factory
from sqlalchemy.ext.asyncio import AsyncSession

from expense_tracker.models import (
    Business,
    Card,
    PaymentType,
    Subscription,
    SubscriptionFrequency,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    UploadBatch,
    UploadBatchStatus,
)
from expense_tracker.schemas.statement import StatementRow
from expense_tracker.services.business_catalog import normalize_business_name

T = TypeVar("T")


class AsyncFactoryMixin:
    """Mixin providing async database persistence for factories."""

    @classmethod
    def _build_kwargs(cls, *args, **kwargs) -> dict:
        return kwargs

    @classmethod
    async def create_async(cls, db: AsyncSession, *args, **kwargs) -> T:
        """Create and flush to database (transaction not committed)."""
        build_kwargs = cls._build_kwargs(*args, **kwargs)
        instance = cls.build(**build_kwargs)
        db.add(instance)
        await db.flush()
        await db.refresh(instance)
        return instance


class CardFactory(factory.Factory, AsyncFactoryMixin):
    class Meta:
        model = Card

    id = factory.LazyFunction(uuid4)
    last4_digits = factory.Sequence(lambda n: f"{1000 + n % 9000:04d}")
    nickname = factory.Sequence(lambda n: f"Card {n}")
    issuer = "isracard"
    is_active = True
    created_at = factory.LazyFunction(lambda: datetime.now(UTC))
    updated_at = factory.LazyFunction(lambda: datetime.now(UTC))


class BusinessFactory(factory.Factory, AsyncFactoryMixin):
    class Meta:
        model = Business

    id = factory.LazyFunction(uuid4)
    display_name = factory.Sequence(lambda n: f"Business {n}")
    category = None
    approved = False
    normalized_name = factory.LazyAttribute(lambda o: normalize_business_name(o.display_name))
    merged_to_id = None
    created_at = factory.LazyFunction(lambda: datetime.now(UTC))
    updated_at = factory.LazyFunction(lambda: datetime.now(UTC))


class UploadBatchFactory(factory.Factory, AsyncFactoryMixin):
    class Meta:
        model = UploadBatch

    id = factory.LazyFunction(uuid4)
    status = UploadBatchStatus.COMPLETED
    file_count = 1
    total_transactions = 0
    new_transactions = 0
    updated_transactions = 0
    duplicate_transactions = 0
    ambiguous_transactions = 0
    total_amount_ils = Decimal("0")
    created_at = factory.LazyFunction(lambda: datetime.now(UTC))
    updated_at = factory.LazyFunction(lambda: datetime.now(UTC))


class TransactionFactory(factory.Factory, AsyncFactoryMixin):
    """Completed one-time charge; pass ``business_id`` and ``card_id``."""

    class Meta:
        model = Transaction

    id = factory.LazyFunction(uuid4)
    transaction_hash = factory.LazyFunction(lambda: uuid4().hex + uuid4().hex)
    transaction_type = TransactionType.ONE_TIME
    deal_date = factory.LazyFunction(lambda: date(2024, 1, 15))
    bank_charge_date = factory.LazyAttribute(lambda o: o.deal_date)
    charged_amount_ils = Decimal("100.00")
    original_amount = None
    original_currency = "ILS"
    payment_type = PaymentType.ONE_TIME
    status = TransactionStatus.COMPLETED
    actual_charge_date = factory.LazyAttribute(lambda o: o.deal_date)
    is_refund = False
    source_file = "statement.xlsx"
    created_at = factory.LazyFunction(lambda: datetime.now(UTC))
    updated_at = factory.LazyFunction(lambda: datetime.now(UTC))

    @classmethod
    def _build_kwargs(cls, *args, **kwargs) -> dict:
        kwargs.setdefault("original_business_id", kwargs.get("business_id"))
        return kwargs


class SubscriptionFactory(factory.Factory, AsyncFactoryMixin):
    """Bare subscription row without generated occurrences."""

    class Meta:
        model = Subscription

    id = factory.LazyFunction(uuid4)
    name = factory.Sequence(lambda n: f"Subscription {n}")
    amount = Decimal("49.90")
    frequency = SubscriptionFrequency.MONTHLY
    start_date = factory.LazyFunction(lambda: date(2024, 1, 1))
    end_date = None
    status = SubscriptionStatus.ACTIVE
    created_from_suggestion = False
    created_at = factory.LazyFunction(lambda: datetime.now(UTC))
    updated_at = factory.LazyFunction(lambda: datetime.now(UTC))


class StatementRowFactory(factory.Factory):
    """Parsed statement row; one-time charge on card 1234 by default."""

    class Meta:
        model = StatementRow

    business_name = "Cafe Nimrod"
    deal_date = factory.LazyFunction(lambda: date(2024, 3, 5))
    bank_charge_date = factory.LazyFunction(lambda: date(2024, 4, 2))
    charged_amount_ils = Decimal("42.00")
    card_last4 = "1234"
    payment_type = PaymentType.ONE_TIME

    class Params:
        installment = factory.Trait(
            business_name="Ikea Netanya",
            payment_type=PaymentType.INSTALLMENTS,
            deal_date=factory.LazyFunction(lambda: date(2024, 1, 10)),
            bank_charge_date=None,
            charged_amount_ils=Decimal("100.00"),
            original_amount=Decimal("1200.00"),
            installment_index=1,
            installment_total=12,
        )
