"""
Subscription model and its lifecycle enums.
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from polychat.db.base import Base

FREE_TIER_PAYMENT_ID = "free_tier"


class SubscriptionStatus(str, enum.Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    CANCELED = "Canceled"
    FAILED = "Failed"
    PENDING_DOWNGRADE = "Pending Downgrade"


class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    FREE = "Free"


# Statuses that still grant access; at most one per user
CURRENT_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_DOWNGRADE)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Subscription(Base):
    """
    A time-bounded association between a user and a plan.

    Rows are end-dated on cancellation, never deleted.
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)

    status = Column(
        Enum(SubscriptionStatus, name="subscription_status", values_callable=_enum_values),
        nullable=False,
        default=SubscriptionStatus.PENDING,
    )
    payment_status = Column(
        Enum(PaymentStatus, name="payment_status", values_callable=_enum_values),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    # free_tier sentinel, checkout session id while Pending, provider subscription id once paid
    stripe_payment_id = Column(String, nullable=True, index=True)
    stripe_checkout_session_id = Column(String, nullable=True, index=True)
    stripe_info = Column(String, nullable=True)

    start_date = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")
    plan = relationship("Plan")

    __table_args__ = (
        Index("idx_subscription_user_status", "user_id", "status"),
    )

    @property
    def is_free_tier(self) -> bool:
        return self.stripe_payment_id == FREE_TIER_PAYMENT_ID

    def __repr__(self):
        return f"<Subscription(id={self.id}, user_id={self.user_id}, status='{self.status}')>"
