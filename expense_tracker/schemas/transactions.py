"""Pydantic schemas for transactions and group-aware deletion."""

from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, computed_field

from expense_tracker.models.transaction import PaymentType, TransactionStatus, TransactionType
from expense_tracker.schemas.base import BaseResponse


class TransactionResponse(BaseResponse):
    id: UUID
    transaction_hash: str
    transaction_type: TransactionType
    business_id: UUID
    original_business_id: UUID | None
    card_id: UUID
    deal_date: date
    bank_charge_date: date | None
    charged_amount_ils: Decimal
    original_amount: Decimal | None
    original_currency: str | None
    payment_type: PaymentType
    installment_group_id: str | None
    installment_index: int | None
    installment_total: int | None
    subscription_id: UUID | None
    status: TransactionStatus
    projected_charge_date: date | None
    actual_charge_date: date | None
    is_refund: bool
    source_file: str | None
    upload_batch_id: UUID | None


class DeleteStrategy(str, Enum):
    """What to do when a selection splits an installment group or subscription."""

    WHOLE_GROUPS = "whole_groups"
    SELECTED_ONLY = "selected_only"


class PartialInstallmentGroup(BaseModel):
    group_id: str
    business_name: str
    selected_indices: list[int]
    all_indices: list[int]


class AffectedSubscription(BaseModel):
    subscription_id: UUID
    name: str
    selected_dates: list[date]
    remaining_count: int


class DeletionPreview(BaseModel):
    selected_count: int
    partial_installment_groups: list[PartialInstallmentGroup] = Field(default_factory=list)
    affected_subscriptions: list[AffectedSubscription] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def requires_confirmation(self) -> bool:
        return bool(self.partial_installment_groups or self.affected_subscriptions)


class BulkDeleteRequest(BaseModel):
    transaction_ids: list[UUID] = Field(..., min_length=1)
    strategy: DeleteStrategy | None = None


class DeletionResult(BaseModel):
    deleted_count: int
    cancelled_subscription_ids: list[UUID] = Field(default_factory=list)
