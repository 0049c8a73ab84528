"""
Pydantic schemas for subscription and billing endpoints.
"""
from typing import Optional
from pydantic import BaseModel, Field


class CreateCheckoutSessionRequest(BaseModel):
    """Request schema for creating checkout session."""
    plan_id: int = Field(..., ge=1, description="Plan to subscribe to")
    success_url: Optional[str] = Field(None, description="URL to redirect after successful payment")
    cancel_url: Optional[str] = Field(None, description="URL to redirect if payment is canceled")

    class Config:
        json_schema_extra = {
            "example": {
                "plan_id": 2,
                "success_url": "https://app.polychat.ai/subscriptions/payment-success?session_id={CHECKOUT_SESSION_ID}",
                "cancel_url": "https://app.polychat.ai/subscriptions/payment-failed"
            }
        }


class CreateCheckoutSessionResponse(BaseModel):
    """Response schema for checkout session creation."""
    checkout_url: str = Field(..., description="Stripe checkout session URL")
    subscription_id: int = Field(..., description="Pending subscription awaiting payment")

    class Config:
        json_schema_extra = {
            "example": {
                "checkout_url": "https://checkout.stripe.com/pay/cs_test_...",
                "subscription_id": 12
            }
        }


class SubscriptionSnapshot(BaseModel):
    """Current plan of a user, as shown in the app and pushed over the update stream."""
    plan_name: str = Field(..., description="Plan name (Free, Starter, Pro)")
    plan_id: Optional[int] = Field(None, description="Plan ID, null when no subscription is current")
    status: Optional[str] = Field(None, description="Active or Pending Downgrade")
    renewal_date: Optional[str] = Field(None, description="End of the current period (ISO 8601)")
    is_downgrade_pending: bool = Field(False, description="Renewal is switched off")
    credits_remaining: str = Field(..., description="Exact balance")
    credits_display: str = Field(..., description="Balance rounded up to 2 decimals")

    class Config:
        json_schema_extra = {
            "example": {
                "plan_name": "Starter",
                "plan_id": 2,
                "status": "Active",
                "renewal_date": "2026-02-15T10:30:00+00:00",
                "is_downgrade_pending": False,
                "credits_remaining": "998.402",
                "credits_display": "998.41"
            }
        }


class SubscriptionActionResponse(BaseModel):
    """Response schema for cancel / downgrade / restore."""
    message: str = Field(..., description="Outcome")
    subscription: SubscriptionSnapshot


class PlanResponse(BaseModel):
    id: int
    name: str
    price: str = Field(..., description="Monthly price in USD")
    credits_per_month: str
    purchasable: bool = Field(..., description="Can be bought through checkout")
    is_current: bool = Field(False, description="The caller's current plan")


class PlanListResponse(BaseModel):
    plans: list[PlanResponse]
    current_plan_id: Optional[int] = None


class BillingErrorResponse(BaseModel):
    """Error response schema for billing operations."""
    error: str = Field(..., description="Error code")
    detail: Optional[str] = Field(None, description="Additional error details")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "not_found",
                "detail": "No active subscription found"
            }
        }
