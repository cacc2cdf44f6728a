"""Pydantic schemas for subscriptions and subscription suggestions."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from expense_tracker.models.business import SuggestionStatus
from expense_tracker.models.subscription import SubscriptionFrequency, SubscriptionStatus
from expense_tracker.schemas.base import BaseResponse


class SubscriptionCreate(BaseModel):
    """Parameters for a new subscription; either ``business_id`` or ``business_name`` is required."""

    name: str | None = Field(default=None, max_length=255)
    business_id: UUID | None = None
    business_name: str | None = Field(default=None, min_length=1, max_length=255)
    card_id: UUID
    amount: Decimal = Field(..., gt=0)
    frequency: SubscriptionFrequency
    start_date: date
    end_date: date | None = None
    notes: str | None = None
    backfill_transaction_ids: list[UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_business_and_dates(self) -> "SubscriptionCreate":
        if self.business_id is None and not self.business_name:
            raise ValueError("Either business_id or business_name must be provided")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class SubscriptionResponse(BaseResponse):
    id: UUID
    business_id: UUID
    card_id: UUID
    name: str | None
    amount: Decimal
    frequency: SubscriptionFrequency
    start_date: date
    end_date: date | None
    status: SubscriptionStatus
    created_from_suggestion: bool
    cancelled_at: datetime | None
    notes: str | None


class SubscriptionCreateResult(BaseModel):
    subscription: SubscriptionResponse
    projected_count: int
    backfilled_count: int
    linked_count: int


class SubscriptionCancelRequest(BaseModel):
    effective_date: date | None = Field(
        default=None, description="Last day the subscription is active; defaults to today"
    )


class SubscriptionCancelResult(BaseModel):
    subscription: SubscriptionResponse
    cancelled_transactions: int


class SubscriptionSuggestionResponse(BaseResponse):
    id: UUID
    business_id: UUID
    card_id: UUID
    detected_amount: Decimal
    frequency: SubscriptionFrequency
    first_occurrence: date
    last_occurrence: date
    occurrence_count: int
    detection_reason: str | None
    status: SuggestionStatus
    resolved_at: datetime | None
    rejected_until: datetime | None


class DetectSubscriptionsResult(BaseModel):
    suggestions_created: int
    patterns_analyzed: int


class ApproveSubscriptionSuggestionRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    end_date: date | None = None
