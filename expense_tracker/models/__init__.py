"""SQLAlchemy models package."""

from expense_tracker.models.business import Business, BusinessMergeSuggestion, SuggestionStatus
from expense_tracker.models.card import Card
from expense_tracker.models.subscription import (
    Subscription,
    SubscriptionFrequency,
    SubscriptionStatus,
    SubscriptionSuggestion,
)
from expense_tracker.models.transaction import (
    PaymentType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from expense_tracker.models.upload_batch import UploadBatch, UploadBatchStatus

__all__ = [
    "Business",
    "BusinessMergeSuggestion",
    "Card",
    "PaymentType",
    "Subscription",
    "SubscriptionFrequency",
    "SubscriptionStatus",
    "SubscriptionSuggestion",
    "SuggestionStatus",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "UploadBatch",
    "UploadBatchStatus",
]
