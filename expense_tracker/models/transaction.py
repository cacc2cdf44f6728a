"""Transaction model: one charge or refund, real or projected."""

from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, Date, ForeignKey, Index, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from expense_tracker.database import Base
from expense_tracker.models.base import TimestampMixin, UUIDMixin, enum_column


class PaymentType(str, Enum):
    """How the card issuer reports the charge."""

    ONE_TIME = "one_time"
    INSTALLMENTS = "installments"


class TransactionType(str, Enum):
    """What the charge belongs to."""

    ONE_TIME = "one_time"
    INSTALLMENT = "installment"
    SUBSCRIPTION = "subscription"


class TransactionStatus(str, Enum):
    """Whether the charge happened, is expected, or was called off."""

    COMPLETED = "completed"
    PROJECTED = "projected"
    CANCELLED = "cancelled"


class Transaction(Base, UUIDMixin, TimestampMixin):
    """
    A single charge event.

    Identity is content-addressed: ``transaction_hash`` is unique, so the same
    logical charge always maps onto one row. Rows the engine generates itself
    (installment backfills and projections, subscription occurrences) carry no
    ``source_file``; those are the placeholders a real statement row completes
    in place.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_installment_group", "installment_group_id", "installment_index"),
        Index("ix_transactions_business_status", "business_id", "status"),
    )

    transaction_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    transaction_type: Mapped[TransactionType] = mapped_column(
        enum_column(TransactionType, "transaction_type_enum"),
        nullable=False,
        default=TransactionType.ONE_TIME,
    )

    business_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id"),
        nullable=False,
    )
    # Business the row belonged to before its first merge; makes merges reversible
    original_business_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    card_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("cards.id"),
        nullable=False,
        index=True,
    )

    deal_date: Mapped[date] = mapped_column(Date, nullable=False)
    bank_charge_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    charged_amount_ils: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    original_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    original_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    exchange_rate_used: Mapped[Decimal | None] = mapped_column(Numeric(10, 6), nullable=True)

    payment_type: Mapped[PaymentType] = mapped_column(
        enum_column(PaymentType, "payment_type_enum"),
        nullable=False,
        default=PaymentType.ONE_TIME,
    )
    installment_group_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    installment_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    installment_total: Mapped[int | None] = mapped_column(Integer, nullable=True)

    subscription_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    status: Mapped[TransactionStatus] = mapped_column(
        enum_column(TransactionStatus, "transaction_status_enum"),
        nullable=False,
        default=TransactionStatus.COMPLETED,
    )
    projected_charge_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_charge_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    is_refund: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    source_file: Mapped[str | None] = mapped_column(String(255), nullable=True)
    upload_batch_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("upload_batches.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    @property
    def is_placeholder(self) -> bool:
        """True for engine-generated rows still waiting for a real statement row."""
        if self.status == TransactionStatus.PROJECTED:
            return True
        return self.status == TransactionStatus.COMPLETED and self.source_file is None

    def __repr__(self) -> str:
        return f"<Transaction {self.deal_date} {self.charged_amount_ils} {self.status.value}>"
