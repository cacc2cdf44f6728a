"""Recurring subscription models."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from expense_tracker.database import Base
from expense_tracker.models.base import TimestampMixin, UUIDMixin, enum_column
from expense_tracker.models.business import SuggestionStatus


class SubscriptionFrequency(str, Enum):
    """Billing cadence."""

    MONTHLY = "monthly"
    ANNUAL = "annual"

    @property
    def months(self) -> int:
        return 12 if self is SubscriptionFrequency.ANNUAL else 1


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    ENDED = "ended"


class Subscription(Base, UUIDMixin, TimestampMixin):
    """A recurring-charge definition owning a stream of generated transactions."""

    __tablename__ = "subscriptions"

    business_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id"),
        nullable=False,
        index=True,
    )
    card_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("cards.id"),
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    frequency: Mapped[SubscriptionFrequency] = mapped_column(
        enum_column(SubscriptionFrequency, "subscription_frequency_enum"),
        nullable=False,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        enum_column(SubscriptionStatus, "subscription_status_enum"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )
    created_from_suggestion: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class SubscriptionSuggestion(Base, UUIDMixin, TimestampMixin):
    """A recurring pattern spotted in one-time transactions."""

    __tablename__ = "subscription_suggestions"

    business_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    card_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("cards.id", ondelete="CASCADE"),
        nullable=False,
    )
    detected_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    frequency: Mapped[SubscriptionFrequency] = mapped_column(
        enum_column(SubscriptionFrequency, "subscription_frequency_enum"),
        nullable=False,
    )
    first_occurrence: Mapped[date] = mapped_column(Date, nullable=False)
    last_occurrence: Mapped[date] = mapped_column(Date, nullable=False)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False)
    detection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[SuggestionStatus] = mapped_column(
        enum_column(SuggestionStatus, "suggestion_status_enum"),
        nullable=False,
        default=SuggestionStatus.PENDING,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
