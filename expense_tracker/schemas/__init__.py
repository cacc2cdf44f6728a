"""Pydantic schemas package."""

from expense_tracker.schemas.base import BaseResponse, ListResponse
from expense_tracker.schemas.businesses import (
    ApproveMergeRequest,
    BusinessDeleteInfo,
    BusinessDeleteMode,
    BusinessDeleteResult,
    BusinessListItem,
    BusinessResponse,
    BusinessSort,
    DetectMergesResult,
    MergeRequest,
    MergeResult,
    MergeSuggestionResponse,
    UnmergeResult,
)
from expense_tracker.schemas.statement import (
    BatchIngestResponse,
    FileIngestSummary,
    IngestOutcome,
    IngestRequest,
    IngestResult,
    StatementFile,
    StatementRow,
)
from expense_tracker.schemas.subscriptions import (
    ApproveSubscriptionSuggestionRequest,
    DetectSubscriptionsResult,
    SubscriptionCancelRequest,
    SubscriptionCancelResult,
    SubscriptionCreate,
    SubscriptionCreateResult,
    SubscriptionResponse,
    SubscriptionSuggestionResponse,
)
from expense_tracker.schemas.transactions import (
    AffectedSubscription,
    BulkDeleteRequest,
    DeleteStrategy,
    DeletionPreview,
    DeletionResult,
    PartialInstallmentGroup,
    TransactionResponse,
)

__all__ = [
    "AffectedSubscription",
    "ApproveMergeRequest",
    "ApproveSubscriptionSuggestionRequest",
    "BaseResponse",
    "BatchIngestResponse",
    "BulkDeleteRequest",
    "BusinessDeleteInfo",
    "BusinessDeleteMode",
    "BusinessDeleteResult",
    "BusinessListItem",
    "BusinessResponse",
    "BusinessSort",
    "DeleteStrategy",
    "DeletionPreview",
    "DeletionResult",
    "DetectMergesResult",
    "DetectSubscriptionsResult",
    "FileIngestSummary",
    "IngestOutcome",
    "IngestRequest",
    "IngestResult",
    "ListResponse",
    "MergeRequest",
    "MergeResult",
    "MergeSuggestionResponse",
    "PartialInstallmentGroup",
    "StatementFile",
    "StatementRow",
    "SubscriptionCancelRequest",
    "SubscriptionCancelResult",
    "SubscriptionCreate",
    "SubscriptionCreateResult",
    "SubscriptionResponse",
    "SubscriptionSuggestionResponse",
    "TransactionResponse",
    "UnmergeResult",
]
