"""Schemas for parsed statement rows and ingestion results."""

from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from expense_tracker.models.transaction import PaymentType


class StatementRow(BaseModel):
    """One row of a bank statement, already parsed.

    For installment rows ``charged_amount_ils`` is this payment's charge and
    ``original_amount`` is the total deal sum, which every payment of the
    purchase repeats. ``deal_date`` is the purchase date when the issuer
    reports it; otherwise it is derived from ``bank_charge_date``.
    """

    business_name: str = Field(..., min_length=1, max_length=255)
    deal_date: date | None = None
    bank_charge_date: date | None = None
    charged_amount_ils: Decimal
    original_amount: Decimal | None = None
    original_currency: str | None = Field(default=None, max_length=3)
    exchange_rate: Decimal | None = None
    card_last4: str = Field(..., min_length=4, max_length=4)
    payment_type: PaymentType = PaymentType.ONE_TIME
    installment_index: int | None = None
    installment_total: int | None = None
    is_subscription: bool = False
    is_refund: bool = False


class StatementFile(BaseModel):
    """Rows belonging to one uploaded file, in file order."""

    filename: str = Field(..., min_length=1, max_length=255)
    rows: list[StatementRow]


class IngestOutcome(str, Enum):
    """What ingesting a single row did."""

    NEW = "new"
    DUPLICATE = "duplicate"
    GROUP_JOINED = "group_joined"
    COMPLETED = "completed"
    AMBIGUOUS = "ambiguous"


class IngestResult(BaseModel):
    outcome: IngestOutcome
    transaction_id: UUID | None = None
    reason: str | None = None
    candidate_ids: list[UUID] = Field(default_factory=list)
    # Rows written besides the real one (installment backfills and projections)
    generated_count: int = 0


class FileIngestSummary(BaseModel):
    filename: str
    results: list[IngestResult] = Field(default_factory=list)
    error: str | None = None

    def count(self, outcome: IngestOutcome) -> int:
        return sum(1 for result in self.results if result.outcome == outcome)


class IngestRequest(BaseModel):
    files: list[StatementFile] = Field(..., min_length=1)


class BatchIngestResponse(BaseModel):
    batch_id: UUID
    status: str
    total_transactions: int
    new_transactions: int
    updated_transactions: int
    duplicate_transactions: int
    ambiguous_transactions: int
    error_message: str | None = None
    files: list[FileIngestSummary]
