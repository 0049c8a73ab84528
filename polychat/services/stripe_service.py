"""
Stripe service for checkout, subscription management and webhook verification.

Every Stripe failure is re-raised as ExternalProviderError (or
WebhookSignatureError) so callers decide whether it is fatal.
"""
import json
import logging
from typing import Optional, Dict, Any

import stripe

from polychat.core import config
from polychat.core.exceptions import ExternalProviderError, WebhookSignatureError

logger = logging.getLogger(__name__)

# Initialize Stripe client
if config.STRIPE_SECRET_KEY:
    stripe.api_key = config.STRIPE_SECRET_KEY
else:
    logger.warning("STRIPE_SECRET_KEY not configured - Stripe features disabled")


def _require_api_key():
    if not stripe.api_key:
        raise ExternalProviderError("Stripe not configured - STRIPE_SECRET_KEY required")


def create_checkout_session(
    user_id: int,
    user_email: str,
    price_id: str,
    plan_id: int,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Dict[str, str]:
    """
    Create Stripe Checkout session for a plan subscription.

    Args:
        user_id: User ID from database
        user_email: User email address
        price_id: Stripe price of the plan being bought
        plan_id: Local plan id, echoed back in the session metadata
        success_url: Redirect after payment (defaults to FRONTEND_URL/subscriptions/payment-success)
        cancel_url: Redirect if the user backs out (defaults to FRONTEND_URL/subscriptions/payment-failed)

    Returns:
        Dictionary with 'id' and 'url' of the checkout session
    """
    _require_api_key()

    if not success_url:
        success_url = f"{config.FRONTEND_URL}/subscriptions/payment-success?session_id={{CHECKOUT_SESSION_ID}}"
    if not cancel_url:
        cancel_url = f"{config.FRONTEND_URL}/subscriptions/payment-failed"

    try:
        session = stripe.checkout.Session.create(
            customer_email=user_email,
            client_reference_id=str(user_id),
            payment_method_types=["card"],
            line_items=[{
                "price": price_id,
                "quantity": 1,
            }],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={
                "user_id": str(user_id),
                "plan_id": str(plan_id),
            },
            subscription_data={
                "metadata": {
                    "user_id": str(user_id),
                    "plan_id": str(plan_id),
                }
            },
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout session: user_id={user_id}, error={e}")
        raise ExternalProviderError(f"Failed to create checkout session: {e}") from e

    logger.info(f"Created checkout session: user_id={user_id}, plan_id={plan_id}, session_id={session.id}")
    return {"id": session.id, "url": session.url}


def cancel_subscription(subscription_id: str) -> None:
    """Cancel a Stripe subscription immediately."""
    _require_api_key()
    try:
        stripe.Subscription.cancel(subscription_id)
    except stripe.StripeError as e:
        logger.error(f"Stripe error canceling subscription: subscription_id={subscription_id}, error={e}")
        raise ExternalProviderError(f"Failed to cancel subscription: {e}") from e
    logger.info(f"Canceled Stripe subscription: subscription_id={subscription_id}")


def set_auto_renewal(subscription_id: str, enabled: bool) -> None:
    """Turn auto-renewal on or off (cancel_at_period_end is its inverse)."""
    _require_api_key()
    try:
        stripe.Subscription.modify(subscription_id, cancel_at_period_end=not enabled)
    except stripe.StripeError as e:
        logger.error(
            f"Stripe error updating auto-renewal: subscription_id={subscription_id}, enabled={enabled}, error={e}"
        )
        raise ExternalProviderError(f"Failed to update subscription renewal: {e}") from e
    logger.info(f"Auto-renewal {'enabled' if enabled else 'disabled'}: subscription_id={subscription_id}")


def verify_webhook(request_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """
    Verify and parse Stripe webhook event.

    Args:
        request_body: Raw request body bytes
        signature: Stripe-Signature header value

    Returns:
        Parsed event as plain dictionaries

    Raises:
        WebhookSignatureError: header missing, signature invalid or payload malformed
    """
    if not signature:
        logger.error("Webhook rejected: missing Stripe-Signature header")
        raise WebhookSignatureError("Missing Stripe-Signature header")

    secret = config.STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("Webhook rejected: STRIPE_WEBHOOK_SECRET not configured")
        raise WebhookSignatureError("Webhook secret not configured")

    try:
        payload = request_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookSignatureError("Invalid webhook payload encoding") from e

    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret)
    except stripe.SignatureVerificationError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise WebhookSignatureError(f"Invalid signature: {e}") from e

    try:
        event = json.loads(payload)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise WebhookSignatureError(f"Invalid webhook payload: {e}") from e

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookSignatureError("Invalid webhook payload: missing id or type")

    logger.info(f"Verified webhook event: {event['type']}, id={event['id']}")
    return event
