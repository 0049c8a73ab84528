"""
Subscription lifecycle service.

Owns every status change of a Subscription row and keeps the credit ledger in
step with it. Lifecycle:

    Pending -> Active | Failed | Canceled
    Active -> Canceled | Pending Downgrade
    Pending Downgrade -> Active | Canceled
    Canceled, Failed: terminal

Each operation starts by locking the owning users row (SELECT ... FOR UPDATE),
which serialises state changes for one user on PostgreSQL. At most one
subscription per user is Active or Pending Downgrade at any time.
"""
import calendar
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple, Any

from sqlalchemy.orm import Session

from polychat.core.exceptions import (
    InternalError,
    InvalidTransitionError,
    NotFoundError,
    ExternalProviderError,
    ValidationFailedError,
)
from polychat.core.model_rates import format_credits_for_display
from polychat.core.plan_catalog import get_plan, get_free_plan, is_purchasable
from polychat.db.models.user import User
from polychat.db.models.plan import Plan
from polychat.db.models.subscription import (
    Subscription,
    SubscriptionStatus,
    PaymentStatus,
    CURRENT_STATUSES,
    FREE_TIER_PAYMENT_ID,
)
from polychat.services import credit_ledger, stripe_service

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, Tuple[SubscriptionStatus, ...]] = {
    SubscriptionStatus.PENDING: (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.FAILED,
        SubscriptionStatus.CANCELED,
    ),
    SubscriptionStatus.ACTIVE: (
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.PENDING_DOWNGRADE,
    ),
    SubscriptionStatus.PENDING_DOWNGRADE: (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    ),
    SubscriptionStatus.CANCELED: (),
    SubscriptionStatus.FAILED: (),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_one_month(start: datetime) -> datetime:
    """Same day next month, clamped to the month's last day (Jan 31 -> Feb 28/29)."""
    year = start.year + (1 if start.month == 12 else 0)
    month = 1 if start.month == 12 else start.month + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(SubscriptionStatus(current), ())


def transition(subscription: Subscription, target: SubscriptionStatus) -> None:
    """Move a subscription to `target`, refusing transitions outside the lifecycle."""
    current = SubscriptionStatus(subscription.status)
    if current == target:
        return
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Subscription {subscription.id} cannot move from {current.value} to {target.value}"
        )
    subscription.status = target
    logger.info(
        f"Subscription transition: subscription_id={subscription.id}, user_id={subscription.user_id}, "
        f"{current.value} -> {target.value}"
    )


def lock_user(db: Session, user_id: int) -> User:
    """Load the user row FOR UPDATE (a no-op lock on SQLite)."""
    user = db.query(User).filter(User.id == user_id).with_for_update().first()
    if not user:
        raise NotFoundError("User not found")
    return user


def get_current_subscriptions(db: Session, user_id: int) -> List[Subscription]:
    """Active / Pending Downgrade rows, most recently started first."""
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status.in_(CURRENT_STATUSES),
    ).order_by(Subscription.start_date.desc(), Subscription.id.desc()).all()


def _has_upstream_subscription(subscription: Subscription) -> bool:
    """True when the row is backed by a live Stripe subscription we can call."""
    payment_id = subscription.stripe_payment_id
    if not payment_id or payment_id == FREE_TIER_PAYMENT_ID:
        return False
    # A checkout session id means payment was never confirmed
    return payment_id != subscription.stripe_checkout_session_id


def _cancel_upstream_best_effort(subscription: Subscription) -> None:
    if not _has_upstream_subscription(subscription):
        return
    try:
        stripe_service.cancel_subscription(subscription.stripe_payment_id)
    except ExternalProviderError as e:
        logger.warning(
            f"Upstream cancel failed, continuing with local cancel: subscription_id={subscription.id}, "
            f"stripe_payment_id={subscription.stripe_payment_id}, error={e.message}"
        )


def _end_subscription(subscription: Subscription, now: datetime) -> None:
    transition(subscription, SubscriptionStatus.CANCELED)
    subscription.end_date = now


def _commit(db: Session, operation: str, user_id: int) -> None:
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.error(f"Commit failed: operation={operation}, user_id={user_id}", exc_info=True)
        raise


# ============================================
# Free tier bootstrap
# ============================================

def bootstrap_free_subscription(db: Session, user: User) -> Subscription:
    """
    Put the user on the Free plan without committing.

    Cancels any current subscription, creates an Active/Free row and resets the
    balance to the Free allotment with one ledger entry.
    """
    now = utcnow()
    free_plan = get_free_plan(db)

    for previous in get_current_subscriptions(db, user.id):
        _end_subscription(previous, now)

    subscription = Subscription(
        user_id=user.id,
        plan_id=free_plan.id,
        status=SubscriptionStatus.ACTIVE,
        payment_status=PaymentStatus.FREE,
        stripe_payment_id=FREE_TIER_PAYMENT_ID,
        stripe_info="FREE TIER | System Generated",
        start_date=now,
        end_date=add_one_month(now),
    )
    db.add(subscription)
    db.flush()

    credit_ledger.reset_balance(
        db,
        user,
        free_plan.credits_per_month,
        subscription=subscription,
        description="Initial free plan credits",
        payment_method="System",
    )

    logger.info(f"Free subscription created: user_id={user.id}, subscription_id={subscription.id}")
    return subscription


def create_free_subscription(db: Session, user: User) -> Subscription:
    """Bootstrap the Free plan for a user in its own transaction."""
    try:
        locked = lock_user(db, user.id)
        subscription = bootstrap_free_subscription(db, locked)
    except Exception:
        db.rollback()
        raise
    _commit(db, "create_free_subscription", user.id)
    db.refresh(subscription)
    return subscription


def ensure_user_has_subscription(db: Session, user: User) -> Subscription:
    """Create the Free subscription once per user; later calls return the latest row."""
    existing = db.query(Subscription).filter(
        Subscription.user_id == user.id
    ).order_by(Subscription.id.desc()).first()
    if existing:
        return existing
    return create_free_subscription(db, user)


# ============================================
# Paid checkout
# ============================================

def get_or_create_user(db: Session, email: str, full_name: Optional[str] = None) -> User:
    """Local record for an identity that signed in elsewhere (e.g. OAuth)."""
    user = db.query(User).filter(User.email == email).first()
    if user:
        return user
    user = User(email=email, full_name=full_name, credits_remaining="0")
    db.add(user)
    _commit(db, "get_or_create_user", 0)
    db.refresh(user)
    logger.info(f"Created local user record: user_id={user.id}")
    return user


def initiate_checkout(
    db: Session,
    email: Optional[str],
    plan_id: int,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Tuple[Subscription, str]:
    """
    Open a Stripe checkout for a paid plan and record a Pending subscription.

    No credits move here; they are granted when the checkout completes.
    Earlier Pending rows stay open: any of those sessions may still be paid,
    and unpaid ones are failed by checkout.session.expired.

    Returns:
        (pending subscription, checkout redirect URL)
    """
    if not email:
        raise ValidationFailedError("User email is required for checkout")

    plan = get_plan(db, plan_id)
    if not is_purchasable(plan):
        raise ValidationFailedError(f"Plan {plan.name} cannot be purchased")

    user = get_or_create_user(db, email)

    checkout = stripe_service.create_checkout_session(
        user_id=user.id,
        user_email=user.email,
        price_id=plan.stripe_price_id,
        plan_id=plan.id,
        success_url=success_url,
        cancel_url=cancel_url,
    )

    try:
        user = lock_user(db, user.id)
        now = utcnow()

        subscription = Subscription(
            user_id=user.id,
            plan_id=plan.id,
            status=SubscriptionStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            stripe_payment_id=checkout["id"],
            stripe_checkout_session_id=checkout["id"],
            stripe_info=f"PENDING | {user.email} | {plan.name}",
            start_date=now,
            end_date=add_one_month(now),
        )
        db.add(subscription)
    except Exception:
        db.rollback()
        raise
    _commit(db, "initiate_checkout", user.id)
    db.refresh(subscription)

    logger.info(
        f"Checkout initiated: user_id={user.id}, plan={plan.name}, subscription_id={subscription.id}, "
        f"session_id={checkout['id']}"
    )
    return subscription, checkout["url"]


def find_pending_by_checkout_session(db: Session, session_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(
        Subscription.stripe_checkout_session_id == session_id
    ).order_by(Subscription.id.desc()).first()


def activate_pending_subscription(
    db: Session,
    subscription: Subscription,
    external_id: Optional[str] = None,
    period_end: Optional[datetime] = None,
    stripe_info: Optional[str] = None,
) -> Subscription:
    """
    Confirm payment for a Pending subscription without committing.

    Cancels whatever the user had before, marks this row Active/Paid and resets
    the balance to the plan allotment. Re-activating an already paid row is a
    no-op so a late duplicate delivery cannot grant credits twice.
    """
    user = lock_user(db, subscription.user_id)

    if subscription.status == SubscriptionStatus.ACTIVE and subscription.payment_status == PaymentStatus.PAID:
        logger.info(f"Subscription already active, skipping activation: subscription_id={subscription.id}")
        return subscription
    if subscription.status != SubscriptionStatus.PENDING:
        raise InvalidTransitionError(
            f"Subscription {subscription.id} is {SubscriptionStatus(subscription.status).value}, not Pending"
        )

    now = utcnow()
    plan: Plan = subscription.plan

    previous_names = []
    for previous in get_current_subscriptions(db, user.id):
        if previous.id == subscription.id:
            continue
        _cancel_upstream_best_effort(previous)
        _end_subscription(previous, now)
        previous_names.append(previous.plan.name)

    transition(subscription, SubscriptionStatus.ACTIVE)
    subscription.payment_status = PaymentStatus.PAID
    if external_id:
        subscription.stripe_payment_id = external_id
    if stripe_info:
        subscription.stripe_info = stripe_info
    subscription.start_date = now
    subscription.end_date = period_end or add_one_month(now)

    credit_ledger.reset_balance(
        db,
        user,
        plan.credits_per_month,
        subscription=subscription,
        description=f"Plan change: {', '.join(previous_names) or 'None'} to {plan.name}",
        payment_method="Stripe",
    )

    logger.info(
        f"Subscription activated: user_id={user.id}, plan={plan.name}, subscription_id={subscription.id}, "
        f"credits={user.credits_remaining}"
    )
    return subscription


def fail_pending_subscription(db: Session, subscription: Subscription) -> Subscription:
    """Pending -> Failed without committing; other statuses are left alone."""
    if subscription.status != SubscriptionStatus.PENDING:
        logger.info(
            f"Ignoring payment failure for non-pending subscription: subscription_id={subscription.id}, "
            f"status={SubscriptionStatus(subscription.status).value}"
        )
        return subscription

    lock_user(db, subscription.user_id)
    transition(subscription, SubscriptionStatus.FAILED)
    subscription.payment_status = PaymentStatus.FAILED
    subscription.end_date = utcnow()
    logger.warning(f"Subscription payment failed: subscription_id={subscription.id}, user_id={subscription.user_id}")
    return subscription


# ============================================
# User actions
# ============================================

def cancel_subscriptions(db: Session, user: User) -> List[Subscription]:
    """
    Cancel every current subscription of the user and zero the balance.

    Upstream cancellation is best-effort: a Stripe outage is logged and the
    local cancel still happens.
    """
    try:
        user = lock_user(db, user.id)
        subscriptions = get_current_subscriptions(db, user.id)
        if not subscriptions:
            raise NotFoundError("No active subscription found")

        for subscription in subscriptions:
            _cancel_upstream_best_effort(subscription)

        credit_ledger.reset_balance(
            db,
            user,
            "0",
            subscription=subscriptions[0],
            description="Credits removed due to subscription cancellation",
            payment_method="System",
        )

        now = utcnow()
        for subscription in subscriptions:
            _end_subscription(subscription, now)
    except Exception:
        db.rollback()
        raise
    _commit(db, "cancel_subscriptions", user.id)

    logger.info(f"Subscriptions canceled: user_id={user.id}, count={len(subscriptions)}")
    return subscriptions


def schedule_downgrade(db: Session, user: User) -> Subscription:
    """
    Active -> Pending Downgrade: keep access until end_date, stop renewal.

    Turning renewal off upstream is best-effort; reading the current
    subscription retries it.
    """
    try:
        user = lock_user(db, user.id)
        subscriptions = get_current_subscriptions(db, user.id)
        if not subscriptions or subscriptions[0].status != SubscriptionStatus.ACTIVE:
            raise NotFoundError("No active subscription to downgrade")
        subscription = subscriptions[0]
        if subscription.is_free_tier:
            raise ValidationFailedError("The Free plan cannot be downgraded")
        transition(subscription, SubscriptionStatus.PENDING_DOWNGRADE)
    except Exception:
        db.rollback()
        raise
    _commit(db, "schedule_downgrade", user.id)

    if _has_upstream_subscription(subscription):
        try:
            stripe_service.set_auto_renewal(subscription.stripe_payment_id, enabled=False)
        except ExternalProviderError as e:
            logger.warning(f"Failed to disable auto-renewal: subscription_id={subscription.id}, error={e.message}")

    db.refresh(subscription)
    return subscription


def restore_subscription(db: Session, user: User) -> Subscription:
    """
    Undo a pending downgrade.

    Re-enabling renewal upstream must succeed before the change is committed;
    otherwise nothing changes and InternalError is raised.
    """
    try:
        user = lock_user(db, user.id)
        subscription = db.query(Subscription).filter(
            Subscription.user_id == user.id,
            Subscription.status == SubscriptionStatus.PENDING_DOWNGRADE,
        ).order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()
        if not subscription:
            raise NotFoundError("No subscription to restore")

        transition(subscription, SubscriptionStatus.ACTIVE)
        db.flush()

        if _has_upstream_subscription(subscription):
            stripe_service.set_auto_renewal(subscription.stripe_payment_id, enabled=True)
    except ExternalProviderError as e:
        db.rollback()
        logger.error(f"Restore aborted, upstream renewal could not be re-enabled: user_id={user.id}, error={e.message}")
        raise InternalError("Failed to restore subscription") from e
    except Exception:
        db.rollback()
        raise
    _commit(db, "restore_subscription", user.id)
    db.refresh(subscription)

    logger.info(f"Subscription restored: user_id={user.id}, subscription_id={subscription.id}")
    return subscription


def get_current_subscription(db: Session, user: User) -> Subscription:
    """
    The user's Active / Pending Downgrade subscription.

    For a pending downgrade, auto-renewal is switched off upstream again
    (idempotent, failures only logged).
    """
    subscriptions = get_current_subscriptions(db, user.id)
    if not subscriptions:
        raise NotFoundError("No active subscription found")
    if len(subscriptions) > 1:
        logger.error(
            f"Multiple current subscriptions: user_id={user.id}, "
            f"subscription_ids={[s.id for s in subscriptions]}"
        )
    subscription = subscriptions[0]

    if subscription.status == SubscriptionStatus.PENDING_DOWNGRADE and _has_upstream_subscription(subscription):
        try:
            stripe_service.set_auto_renewal(subscription.stripe_payment_id, enabled=False)
        except ExternalProviderError as e:
            logger.warning(f"Failed to disable auto-renewal: subscription_id={subscription.id}, error={e.message}")

    return subscription


def subscription_snapshot(user: User, subscription: Optional[Subscription]) -> Dict[str, Any]:
    """What clients see of a user's plan; pushed over the update stream too."""
    if subscription is None or subscription.status not in CURRENT_STATUSES:
        return {
            "plan_name": "Free",
            "plan_id": None,
            "status": None,
            "renewal_date": None,
            "is_downgrade_pending": False,
            "credits_remaining": user.credits_remaining,
            "credits_display": format_credits_for_display(credit_ledger.get_balance(user)),
        }
    return {
        "plan_name": subscription.plan.name,
        "plan_id": subscription.plan_id,
        "status": SubscriptionStatus(subscription.status).value,
        "renewal_date": subscription.end_date.isoformat() if subscription.end_date else None,
        "is_downgrade_pending": subscription.status == SubscriptionStatus.PENDING_DOWNGRADE,
        "credits_remaining": user.credits_remaining,
        "credits_display": format_credits_for_display(credit_ledger.get_balance(user)),
    }
