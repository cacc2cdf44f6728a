"""Services package."""

from expense_tracker.services.business_catalog import (
    BusinessCatalogError,
    BusinessUsage,
    MergeChainError,
    get_or_create_business,
    list_businesses,
    normalize_business_name,
    resolve_business,
)
from expense_tracker.services.business_merge import (
    BusinessMergeError,
    BusinessNotFoundError,
    DeleteModeRequiredError,
    InvalidMergeRequestError,
    SuggestionNotFoundError,
    approve_merge_suggestion,
    delete_business,
    detect_merges,
    get_delete_info,
    list_pending_suggestions,
    merge_businesses,
    reject_merge_suggestion,
    unmerge_business,
)
from expense_tracker.services.deletion import (
    DeletionError,
    DeletionTargetNotFoundError,
    PartialGroupDeletionError,
    delete_transactions,
    delete_upload_batch,
    preview_deletion,
)
from expense_tracker.services.reconciliation import (
    EngineConfig,
    ReconciliationEngine,
    batch_message,
    load_engine_config,
)
from expense_tracker.services.subscription_detection import (
    SubscriptionSuggestionNotFoundError,
    approve_subscription_suggestion,
    detect_subscriptions,
    list_pending_subscription_suggestions,
    reject_subscription_suggestion,
)
from expense_tracker.services.subscriptions import (
    InvalidSubscriptionError,
    SubscriptionError,
    SubscriptionNotFoundError,
    cancel_subscription,
    create_subscription,
)

__all__ = [
    "BusinessCatalogError",
    "BusinessMergeError",
    "BusinessNotFoundError",
    "BusinessUsage",
    "DeleteModeRequiredError",
    "DeletionError",
    "DeletionTargetNotFoundError",
    "EngineConfig",
    "InvalidMergeRequestError",
    "InvalidSubscriptionError",
    "MergeChainError",
    "PartialGroupDeletionError",
    "ReconciliationEngine",
    "SubscriptionError",
    "SubscriptionNotFoundError",
    "SubscriptionSuggestionNotFoundError",
    "SuggestionNotFoundError",
    "approve_merge_suggestion",
    "approve_subscription_suggestion",
    "batch_message",
    "cancel_subscription",
    "create_subscription",
    "delete_business",
    "delete_transactions",
    "delete_upload_batch",
    "detect_merges",
    "detect_subscriptions",
    "get_delete_info",
    "get_or_create_business",
    "list_businesses",
    "list_pending_subscription_suggestions",
    "list_pending_suggestions",
    "load_engine_config",
    "merge_businesses",
    "normalize_business_name",
    "preview_deletion",
    "reject_merge_suggestion",
    "reject_subscription_suggestion",
    "resolve_business",
    "unmerge_business",
]
