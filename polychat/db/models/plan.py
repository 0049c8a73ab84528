"""
Plan model - seeded reference data for subscription tiers.
"""
from sqlalchemy import Column, Integer, String, Numeric
from polychat.db.base import Base


class Plan(Base):
    """A named tier with a monthly credit allotment and a price."""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False, index=True)  # Free | Starter | Pro
    price = Column(Numeric(10, 2), nullable=False, default=0)
    credits_per_month = Column(String, nullable=False)  # decimal string

    stripe_product_id = Column(String, nullable=True)
    stripe_price_id = Column(String, nullable=True, index=True)

    def __repr__(self):
        return f"<Plan(id={self.id}, name='{self.name}', credits_per_month='{self.credits_per_month}')>"
