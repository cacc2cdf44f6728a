"""API routers package."""

from expense_tracker.routers import businesses, statements, subscriptions, suggestions, transactions

__all__ = [
    "businesses",
    "statements",
    "subscriptions",
    "suggestions",
    "transactions",
]
