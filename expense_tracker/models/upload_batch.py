"""Upload batch model."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, Integer, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from expense_tracker.database import Base
from expense_tracker.models.base import TimestampMixin, UUIDMixin, enum_column


class UploadBatchStatus(str, Enum):
    """Processing state of an upload batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadBatch(Base, UUIDMixin, TimestampMixin):
    """One user upload: a set of statement files ingested together."""

    __tablename__ = "upload_batches"

    status: Mapped[UploadBatchStatus] = mapped_column(
        enum_column(UploadBatchStatus, "upload_batch_status_enum"),
        nullable=False,
        default=UploadBatchStatus.PENDING,
    )
    file_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicate_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ambiguous_transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount_ils: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
