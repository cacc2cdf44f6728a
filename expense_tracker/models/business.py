"""Business (merchant) catalog and merge suggestion models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from expense_tracker.database import Base
from expense_tracker.models.base import TimestampMixin, UUIDMixin, enum_column


class SuggestionStatus(str, Enum):
    """Lifecycle of a detected suggestion."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Business(Base, UUIDMixin, TimestampMixin):
    """
    A merchant seen on statements.

    ``normalized_name`` (lowercased, trimmed) is the canonical dedup key. When
    ``merged_to_id`` is set the business is a merge source: its transactions
    were repointed to the target and it no longer counts as active.
    """

    __tablename__ = "businesses"

    normalized_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    merged_to_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    @property
    def is_active(self) -> bool:
        return self.merged_to_id is None

    def __repr__(self) -> str:
        return f"<Business {self.normalized_name!r}>"


class BusinessMergeSuggestion(Base, UUIDMixin, TimestampMixin):
    """Candidate pair of businesses that look like the same merchant.

    A rejected suggestion stays frozen until ``rejected_until``; detection
    compares that timestamp against the current time on every run.
    """

    __tablename__ = "business_merge_suggestions"

    business_id_1: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    business_id_2: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    similarity_score: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[SuggestionStatus] = mapped_column(
        enum_column(SuggestionStatus, "suggestion_status_enum"),
        nullable=False,
        default=SuggestionStatus.PENDING,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
