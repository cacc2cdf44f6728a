"""Pydantic schemas for business catalog maintenance."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, computed_field

from expense_tracker.models.business import SuggestionStatus
from expense_tracker.schemas.base import BaseResponse


class BusinessResponse(BaseResponse):
    id: UUID
    normalized_name: str
    display_name: str
    category: str | None
    approved: bool
    merged_to_id: UUID | None


class BusinessSort(str, Enum):
    NAME = "name"
    NAME_DESC = "name_desc"
    TOTAL_SPENT = "total_spent"
    TRANSACTION_COUNT = "transaction_count"
    LAST_USED_DATE = "last_used_date"


class BusinessListItem(BusinessResponse):
    transaction_count: int
    total_spent: Decimal
    last_used_date: date | None


class MergeSuggestionResponse(BaseResponse):
    id: UUID
    business_id_1: UUID
    business_id_2: UUID
    similarity_score: Decimal
    reason: str | None
    status: SuggestionStatus
    resolved_at: datetime | None
    rejected_until: datetime | None


class DetectMergesResult(BaseModel):
    suggestions_created: int
    businesses_compared: int


class MergeRequest(BaseModel):
    target_id: UUID
    business_ids: list[UUID] = Field(..., description="All businesses to merge, target included")


class MergeResult(BaseModel):
    target_id: UUID
    businesses_merged: int
    transactions_moved: int


class UnmergeResult(BaseModel):
    business_id: UUID
    target_id: UUID
    transactions_restored: int


class ApproveMergeRequest(BaseModel):
    target_id: UUID = Field(..., description="Business of the pair to keep")


class BusinessDeleteMode(str, Enum):
    """How to treat businesses merged into the one being deleted."""

    PARENT_ONLY = "parent_only"
    CASCADE = "cascade"


class BusinessDeleteInfo(BaseModel):
    business_id: UUID
    display_name: str
    transaction_count: int
    subscription_count: int
    merged_business_ids: list[UUID]
    merged_transaction_count: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def requires_mode(self) -> bool:
        return bool(self.merged_business_ids)


class BusinessDeleteResult(BaseModel):
    business_id: UUID
    deleted_transactions: int
    deleted_subscriptions: int
    deleted_merged_businesses: int
    deleted_merged_transactions: int
    unmerged_businesses: int
