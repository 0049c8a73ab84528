"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.

All models must be imported here to be included in database migrations and table creation.
"""
from polychat.db.models.user import User
from polychat.db.models.plan import Plan
from polychat.db.models.subscription import (
    Subscription,
    SubscriptionStatus,
    PaymentStatus,
    CURRENT_STATUSES,
    FREE_TIER_PAYMENT_ID,
)
from polychat.db.models.credit_transaction import CreditTransaction
from polychat.db.models.chat import Chat, ChatHistory

# Explicitly export all models for clarity
__all__ = [
    "User",
    "Plan",
    "Subscription",
    "SubscriptionStatus",
    "PaymentStatus",
    "CURRENT_STATUSES",
    "FREE_TIER_PAYMENT_ID",
    "CreditTransaction",
    "Chat",
    "ChatHistory",
]
