"""
Pydantic schemas for credit balance and ledger endpoints.
"""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, Field


class CreditBalanceResponse(BaseModel):
    """Schema for the caller's balance."""
    credits_remaining: str = Field(..., description="Exact balance (up to 6 decimals)")
    credits_display: str = Field(..., description="Balance rounded up to 2 decimals")
    ledger_consistent: bool = Field(..., description="Balance equals the sum of the ledger")

    class Config:
        json_schema_extra = {
            "example": {
                "credits_remaining": "4.998912",
                "credits_display": "5.00",
                "ledger_consistent": True
            }
        }


class CreditTransactionResponse(BaseModel):
    """Schema for a single ledger entry."""
    id: int
    subscription_id: Optional[int] = None
    credits_added: str
    credits_deducted: str
    payment_method: str = Field(..., description="System, Stripe, Usage or Adjustment")
    description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CreditTransactionListResponse(BaseModel):
    """Schema for ledger list response."""
    entries: list[CreditTransactionResponse] = Field(..., description="Ledger entries, newest first")
    total: int = Field(..., description="Total number of entries")
    page: int = Field(1, description="Current page number")
    page_size: int = Field(20, description="Number of items per page")
