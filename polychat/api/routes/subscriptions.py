"""
Subscription endpoints.

Checkout, cancellation, downgrade/restore, the current plan and the
server-sent event stream of plan changes.
"""
import asyncio
import logging
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from polychat.core.auth_dependency import (
    get_db,
    get_current_user_obj,
    get_current_user_from_query_token,
)
from polychat.core.plan_catalog import list_plans, is_purchasable
from polychat.db.models.user import User
from polychat.schemas.billing import (
    CreateCheckoutSessionRequest,
    CreateCheckoutSessionResponse,
    SubscriptionSnapshot,
    SubscriptionActionResponse,
    PlanResponse,
    PlanListResponse,
)
from polychat.services import subscription_service
from polychat.services.notifier import notifier, build_notification, stream_events

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


def _snapshot(db: Session, user: User) -> dict:
    current = subscription_service.get_current_subscriptions(db, user.id)
    return subscription_service.subscription_snapshot(user, current[0] if current else None)


def _apply(operation, db: Session, user: User) -> dict:
    """Run a blocking state change (database and Stripe) and return the fresh snapshot."""
    operation(db, user)
    db.refresh(user)
    return _snapshot(db, user)


@router.get("/plans", response_model=PlanListResponse)
def get_plans(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """List plans ordered by price, flagging the caller's current one."""
    current = subscription_service.get_current_subscriptions(db, user.id)
    current_plan_id = current[0].plan_id if current else None
    plans = [
        PlanResponse(
            id=plan.id,
            name=plan.name,
            price=str(plan.price),
            credits_per_month=plan.credits_per_month,
            purchasable=is_purchasable(plan),
            is_current=plan.id == current_plan_id,
        )
        for plan in list_plans(db)
    ]
    return PlanListResponse(plans=plans, current_plan_id=current_plan_id)


@router.post("/create-checkout", status_code=status.HTTP_200_OK, response_model=CreateCheckoutSessionResponse)
def create_checkout(
    request: CreateCheckoutSessionRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """
    Start a Stripe checkout for a paid plan.

    The subscription stays Pending, and no credits move, until Stripe reports
    the checkout as completed.
    """
    subscription, checkout_url = subscription_service.initiate_checkout(
        db,
        user.email,
        request.plan_id,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    return CreateCheckoutSessionResponse(checkout_url=checkout_url, subscription_id=subscription.id)


@router.post("/cancel", response_model=SubscriptionActionResponse)
async def cancel(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """Cancel the current subscription immediately; remaining credits are removed."""
    snapshot = await asyncio.to_thread(_apply, subscription_service.cancel_subscriptions, db, user)
    await notifier.publish(user.id, build_notification("subscription_canceled", snapshot))
    return SubscriptionActionResponse(message="Subscription canceled", subscription=SubscriptionSnapshot(**snapshot))


@router.post("/downgrade", response_model=SubscriptionActionResponse)
async def downgrade(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """Stop renewal at the end of the current period."""
    snapshot = await asyncio.to_thread(_apply, subscription_service.schedule_downgrade, db, user)
    await notifier.publish(user.id, build_notification("subscription_updated", snapshot))
    return SubscriptionActionResponse(message="Downgrade scheduled", subscription=SubscriptionSnapshot(**snapshot))


@router.post("/restore", response_model=SubscriptionActionResponse)
async def restore(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """Undo a pending downgrade."""
    snapshot = await asyncio.to_thread(_apply, subscription_service.restore_subscription, db, user)
    await notifier.publish(user.id, build_notification("subscription_restored", snapshot))
    return SubscriptionActionResponse(message="Subscription restored", subscription=SubscriptionSnapshot(**snapshot))


@router.get("/current", response_model=SubscriptionSnapshot)
def current(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    subscription = subscription_service.get_current_subscription(db, user)
    return SubscriptionSnapshot(**subscription_service.subscription_snapshot(user, subscription))


@router.get("/updates")
async def updates(
    request: Request,
    user: User = Depends(get_current_user_from_query_token),
    db: Session = Depends(get_db)
):
    """
    Server-sent events for the caller's plan changes.

    The first frame is the current snapshot; a heartbeat comment follows every
    quiet interval. Opening a second stream moves events to it; the first
    only gets heartbeats until its client goes away.
    """
    initial = build_notification("connected", await asyncio.to_thread(_snapshot, db, user))
    channel = notifier.register(user.id)
    return StreamingResponse(
        stream_events(notifier, user.id, channel, request.is_disconnected, initial_event=initial),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
