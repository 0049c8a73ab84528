from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from polychat.db.base import Base


class CreditTransaction(Base):
    """
    Append-only credit ledger entry.

    Every change to users.credits_remaining is paired with exactly one row,
    so a user's balance always equals sum(credits_added - credits_deducted).
    """
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)

    credits_added = Column(String, nullable=False, default="0")
    credits_deducted = Column(String, nullable=False, default="0")
    payment_method = Column(String, nullable=False, default="System")  # System | Stripe | Usage | Adjustment
    description = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index("idx_credit_tx_user_created", "user_id", "created_at"),
    )

    def __repr__(self):
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, "
            f"added='{self.credits_added}', deducted='{self.credits_deducted}')>"
        )
