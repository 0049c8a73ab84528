"""
Stripe webhook reconciliation.

Translates verified provider events into subscription state changes. Each
event is applied in one transaction; anything that goes wrong rolls back and
propagates so the endpoint answers with an error and Stripe retries.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from polychat.core import config
from polychat.core.exceptions import NotFoundError
from polychat.core.plan_catalog import get_plan_by_price_id
from polychat.db.models.user import User
from polychat.db.models.subscription import Subscription, SubscriptionStatus, CURRENT_STATUSES
from polychat.services import subscription_service
from polychat.services.notifier import build_notification

logger = logging.getLogger(__name__)

# Acknowledged without touching state
NOOP_EVENT_TYPES = frozenset({
    "invoice.created",
    "invoice.finalized",
    "invoice.updated",
    "invoice.paid",
    "invoice.payment_succeeded",
})


class EventDeduplicator:
    """
    Remembers recently seen event keys for a short window.

    Process-local: only meaningful for a single instance (or when retries are
    pinned to one instance).
    """

    def __init__(self, window_seconds: float = config.WEBHOOK_DEDUP_WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key_for(event: Dict[str, Any]) -> str:
        return f"{event['type']}-{event['id']}"

    def mark_if_new(self, key: str) -> bool:
        """Record `key`; False if it was already seen inside the window."""
        now = self._clock()
        with self._lock:
            expired = [k for k, expires_at in self._expiry.items() if expires_at <= now]
            for k in expired:
                del self._expiry[k]
            if key in self._expiry:
                return False
            self._expiry[key] = now + self.window_seconds
            return True

    def forget(self, key: str) -> None:
        with self._lock:
            self._expiry.pop(key, None)

    def __len__(self) -> int:
        return len(self._expiry)


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    skipped: bool = False
    handled: bool = False
    # (user_id, payload) pairs to publish once the transaction is committed
    notifications: List[tuple] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"received": True, "eventId": self.event_id, "type": self.event_type}
        if self.skipped:
            body["skipped"] = True
        return body


def _timestamp_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _period_end(subscription_data: Dict[str, Any]) -> Optional[datetime]:
    """current_period_end lives on the subscription or, in newer API versions, on its first item."""
    value = subscription_data.get("current_period_end")
    if not value:
        items = (subscription_data.get("items") or {}).get("data") or [{}]
        value = items[0].get("current_period_end")
    return _timestamp_to_datetime(value)


def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ============================================
# Event handlers
# Each returns the id of the user whose state changed, or None.
# ============================================

def handle_checkout_session_completed(event_data: Dict, db: Session) -> Optional[int]:
    """
    Handle checkout.session.completed webhook event.

    Activates the Pending subscription created when the checkout was opened.
    A missing row raises so the event is retried.
    """
    session = event_data.get("object", {})
    session_id = session.get("id")

    subscription = subscription_service.find_pending_by_checkout_session(db, session_id) if session_id else None

    if subscription is None:
        user_id = _parse_int(session.get("client_reference_id"))
        plan_id = _parse_int((session.get("metadata") or {}).get("plan_id"))
        if user_id and plan_id:
            subscription = db.query(Subscription).filter(
                Subscription.user_id == user_id,
                Subscription.plan_id == plan_id,
                Subscription.status == SubscriptionStatus.PENDING,
            ).order_by(Subscription.id.desc()).first()

    if subscription is None:
        raise NotFoundError(f"No pending subscription for checkout session {session_id}")

    customer = (session.get("customer_details") or {}).get("email") or session.get("customer_email") or ""
    subscription_service.activate_pending_subscription(
        db,
        subscription,
        external_id=session.get("subscription"),
        stripe_info=f"ACTIVE | {customer} | {subscription.plan.name}",
    )
    return subscription.user_id


def handle_checkout_session_failed(event_data: Dict, db: Session) -> Optional[int]:
    """Handle checkout.session.expired / checkout.session.async_payment_failed."""
    session = event_data.get("object", {})
    session_id = session.get("id")

    subscription = subscription_service.find_pending_by_checkout_session(db, session_id) if session_id else None
    if subscription is None:
        logger.warning(f"Checkout failure for unknown session: session_id={session_id}")
        return None

    subscription_service.fail_pending_subscription(db, subscription)
    return subscription.user_id


def handle_subscription_updated(event_data: Dict, db: Session) -> Optional[int]:
    """
    Handle customer.subscription.updated webhook event.

    cancel_at_period_end maps to Pending Downgrade, its absence back to Active.
    The period end becomes the local end_date.
    """
    subscription_data = event_data.get("object", {})
    stripe_subscription_id = subscription_data.get("id")

    subscription = db.query(Subscription).filter(
        Subscription.stripe_payment_id == stripe_subscription_id,
    ).order_by(Subscription.id.desc()).first()

    if not subscription:
        logger.warning(f"customer.subscription.updated: Subscription not found for subscription_id={stripe_subscription_id}")
        return None

    if subscription.status not in CURRENT_STATUSES:
        logger.info(
            f"customer.subscription.updated: ignoring update for subscription_id={subscription.id}, "
            f"status={SubscriptionStatus(subscription.status).value}"
        )
        return None

    subscription_service.lock_user(db, subscription.user_id)

    if subscription_data.get("status") == "canceled":
        target = SubscriptionStatus.CANCELED
    elif subscription_data.get("cancel_at_period_end"):
        target = SubscriptionStatus.PENDING_DOWNGRADE
    else:
        target = SubscriptionStatus.ACTIVE

    subscription_service.transition(subscription, target)

    items = (subscription_data.get("items") or {}).get("data") or [{}]
    price_id = (items[0].get("price") or {}).get("id")
    billed_plan = get_plan_by_price_id(db, price_id)
    if billed_plan is not None and billed_plan.id != subscription.plan_id:
        # Plan changes go through checkout; a mismatch means it was changed on Stripe directly
        logger.warning(
            f"Stripe plan differs from local plan: subscription_id={subscription.id}, "
            f"local_plan_id={subscription.plan_id}, stripe_plan_id={billed_plan.id}, price_id={price_id}"
        )

    period_end = _period_end(subscription_data)
    if target == SubscriptionStatus.CANCELED:
        subscription.end_date = subscription_service.utcnow()
    elif period_end:
        subscription.end_date = period_end

    logger.info(
        f"Subscription updated: user_id={subscription.user_id}, subscription_id={subscription.id}, "
        f"status={target.value}"
    )
    return subscription.user_id


def handle_subscription_deleted(event_data: Dict, db: Session) -> Optional[int]:
    """
    Handle customer.subscription.deleted webhook event.

    Ends the local subscription and puts the user back on the Free plan.
    """
    subscription_data = event_data.get("object", {})
    stripe_subscription_id = subscription_data.get("id")

    subscription = db.query(Subscription).filter(
        Subscription.stripe_payment_id == stripe_subscription_id,
    ).order_by(Subscription.id.desc()).first()

    if not subscription:
        logger.warning(f"customer.subscription.deleted: Subscription not found for subscription_id={stripe_subscription_id}")
        return None

    user = subscription_service.lock_user(db, subscription.user_id)

    if subscription.status in CURRENT_STATUSES:
        subscription_service.transition(subscription, SubscriptionStatus.CANCELED)
        subscription.end_date = subscription_service.utcnow()
        db.flush()

    if not subscription_service.get_current_subscriptions(db, user.id):
        subscription_service.bootstrap_free_subscription(db, user)
        logger.info(f"Subscription deleted, user moved to Free: user_id={user.id}")

    return user.id


EVENT_HANDLERS: Dict[str, Callable[[Dict, Session], Optional[int]]] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "checkout.session.expired": handle_checkout_session_failed,
    "checkout.session.async_payment_failed": handle_checkout_session_failed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
}


def process_event(db: Session, event: Dict[str, Any], deduplicator: EventDeduplicator) -> WebhookResult:
    """
    Apply one verified event.

    Duplicates inside the dedup window are acknowledged and skipped. On failure
    the dedup key is released so the provider's retry is processed.
    """
    event_id = event["id"]
    event_type = event["type"]
    result = WebhookResult(event_id=event_id, event_type=event_type)

    key = EventDeduplicator.key_for(event)
    if not deduplicator.mark_if_new(key):
        logger.info(f"Skipping duplicate webhook event: event_id={event_id}, type={event_type}")
        result.skipped = True
        return result

    if event_type in NOOP_EVENT_TYPES:
        logger.info(f"Acknowledged webhook event without changes: event_id={event_id}, type={event_type}")
        return result

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Unhandled webhook event type: event_id={event_id}, type={event_type}")
        return result

    try:
        user_id = handler(event.get("data", {}), db)
        db.commit()
    except Exception:
        db.rollback()
        deduplicator.forget(key)
        logger.error(f"Webhook event failed: event_id={event_id}, type={event_type}", exc_info=True)
        raise

    result.handled = True
    if user_id is not None:
        user = db.query(User).filter(User.id == user_id).first()
        if user:
            current = subscription_service.get_current_subscriptions(db, user.id)
            snapshot = subscription_service.subscription_snapshot(user, current[0] if current else None)
            result.notifications.append((user.id, build_notification("subscription_updated", snapshot)))

    logger.info(f"Processed webhook event: event_id={event_id}, type={event_type}, user_id={user_id}")
    return result
