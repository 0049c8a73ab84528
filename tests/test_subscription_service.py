"""
Unit tests for the subscription lifecycle.
Tests free bootstrap, checkout, activation, cancel, downgrade and restore.
"""
import pytest
from datetime import datetime
from unittest.mock import patch
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from polychat.db.base import Base
from polychat.db.models.user import User
from polychat.db.models.plan import Plan
from polychat.db.models.subscription import (
    Subscription,
    SubscriptionStatus,
    PaymentStatus,
    FREE_TIER_PAYMENT_ID,
)
from polychat.db.models.credit_transaction import CreditTransaction
from polychat.core.exceptions import (
    ExternalProviderError,
    InternalError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from polychat.core.plan_catalog import seed_plans
from polychat.services import credit_ledger, subscription_service


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db():
    """Create a fresh database with the plan catalog for each test."""
    Base.metadata.create_all(bind=test_engine)
    db = TestSessionLocal()
    seed_plans(db)
    for plan in db.query(Plan).filter(Plan.name != "Free").all():
        plan.stripe_price_id = f"price_test_{plan.name.lower()}"
    db.commit()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def test_user(db):
    user = User(full_name="Test User", email="subscriber@example.com", credits_remaining="0")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def starter_plan(db):
    return db.query(Plan).filter(Plan.name == "Starter").first()


def _transactions(db, user):
    return db.query(CreditTransaction).filter(CreditTransaction.user_id == user.id).order_by(CreditTransaction.id).all()


def _current(db, user):
    return subscription_service.get_current_subscriptions(db, user.id)


def _checkout(db, user, plan, session_id="cs_test_123"):
    with patch(
        "polychat.services.stripe_service.create_checkout_session",
        return_value={"id": session_id, "url": f"https://checkout.stripe.com/pay/{session_id}"},
    ):
        return subscription_service.initiate_checkout(db, user.email, plan.id)


def _make_paid(db, user, plan, stripe_subscription_id="sub_test_1", session_id="cs_test_123"):
    pending, _ = _checkout(db, user, plan, session_id=session_id)
    with patch("polychat.services.stripe_service.cancel_subscription"):
        subscription_service.activate_pending_subscription(db, pending, external_id=stripe_subscription_id)
    db.commit()
    return pending


# ============================================
# Helpers
# ============================================

def test_add_one_month_clamps_day():
    assert subscription_service.add_one_month(datetime(2026, 1, 31)) == datetime(2026, 2, 28)
    assert subscription_service.add_one_month(datetime(2028, 1, 31)) == datetime(2028, 2, 29)
    assert subscription_service.add_one_month(datetime(2026, 12, 15)) == datetime(2027, 1, 15)


def test_transition_table():
    assert subscription_service.can_transition(SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE)
    assert subscription_service.can_transition(SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_DOWNGRADE)
    assert subscription_service.can_transition(SubscriptionStatus.PENDING_DOWNGRADE, SubscriptionStatus.ACTIVE)
    assert not subscription_service.can_transition(SubscriptionStatus.CANCELED, SubscriptionStatus.ACTIVE)
    assert not subscription_service.can_transition(SubscriptionStatus.FAILED, SubscriptionStatus.PENDING)
    assert not subscription_service.can_transition(SubscriptionStatus.PENDING, SubscriptionStatus.PENDING_DOWNGRADE)


def test_transition_rejects_terminal_state():
    subscription = Subscription(id=1, user_id=1, status=SubscriptionStatus.CANCELED)
    with pytest.raises(InvalidTransitionError):
        subscription_service.transition(subscription, SubscriptionStatus.ACTIVE)


# ============================================
# Free bootstrap
# ============================================

def test_new_user_bootstrap_gets_free_plan(db, test_user):
    """New user is put on Free with its 5 credits and one ledger entry."""
    subscription = subscription_service.create_free_subscription(db, test_user)

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.payment_status == PaymentStatus.FREE
    assert subscription.stripe_payment_id == FREE_TIER_PAYMENT_ID
    assert subscription.plan.name == "Free"
    assert subscription.end_date is not None

    db.refresh(test_user)
    assert test_user.credits_remaining == "5"
    transactions = _transactions(db, test_user)
    assert len(transactions) == 1
    assert transactions[0].credits_added == "5"
    assert transactions[0].description == "Initial free plan credits"


def test_ensure_user_has_subscription_is_idempotent(db, test_user):
    first = subscription_service.ensure_user_has_subscription(db, test_user)
    second = subscription_service.ensure_user_has_subscription(db, test_user)

    assert first.id == second.id
    assert db.query(Subscription).filter(Subscription.user_id == test_user.id).count() == 1
    assert len(_transactions(db, test_user)) == 1


def test_bootstrap_replaces_current_subscription(db, test_user):
    first = subscription_service.create_free_subscription(db, test_user)
    subscription_service.create_free_subscription(db, test_user)

    db.refresh(first)
    assert first.status == SubscriptionStatus.CANCELED
    assert len(_current(db, test_user)) == 1


# ============================================
# Checkout and activation
# ============================================

def test_initiate_checkout_creates_pending_without_credits(db, test_user, starter_plan):
    subscription_service.create_free_subscription(db, test_user)

    pending, url = _checkout(db, test_user, starter_plan)

    assert url == "https://checkout.stripe.com/pay/cs_test_123"
    assert pending.status == SubscriptionStatus.PENDING
    assert pending.payment_status == PaymentStatus.PENDING
    assert pending.stripe_checkout_session_id == "cs_test_123"
    db.refresh(test_user)
    assert test_user.credits_remaining == "5"
    assert len(_transactions(db, test_user)) == 1


def test_initiate_checkout_keeps_earlier_pending_open(db, test_user, starter_plan):
    first, _ = _checkout(db, test_user, starter_plan, session_id="cs_old")
    second, _ = _checkout(db, test_user, starter_plan, session_id="cs_new")

    db.refresh(first)
    assert first.status == SubscriptionStatus.PENDING
    assert first.end_date is not None
    assert second.status == SubscriptionStatus.PENDING


def test_initiate_checkout_rejects_free_plan(db, test_user):
    free_plan = db.query(Plan).filter(Plan.name == "Free").first()
    with pytest.raises(ValidationFailedError):
        subscription_service.initiate_checkout(db, test_user.email, free_plan.id)


def test_initiate_checkout_requires_email(db, starter_plan):
    with pytest.raises(ValidationFailedError):
        subscription_service.initiate_checkout(db, "", starter_plan.id)


def test_initiate_checkout_unknown_plan(db, test_user):
    with pytest.raises(NotFoundError):
        subscription_service.initiate_checkout(db, test_user.email, 999)


def test_initiate_checkout_provider_failure_leaves_no_row(db, test_user, starter_plan):
    with patch(
        "polychat.services.stripe_service.create_checkout_session",
        side_effect=ExternalProviderError("Stripe down"),
    ):
        with pytest.raises(ExternalProviderError):
            subscription_service.initiate_checkout(db, test_user.email, starter_plan.id)

    assert db.query(Subscription).filter(Subscription.status == SubscriptionStatus.PENDING).count() == 0


def test_activation_replaces_free_and_resets_credits(db, test_user, starter_plan):
    free = subscription_service.create_free_subscription(db, test_user)
    credit_ledger.deduct(db, test_user, "1.25")
    db.commit()

    pending = _make_paid(db, test_user, starter_plan)

    db.refresh(free)
    db.refresh(test_user)
    assert pending.status == SubscriptionStatus.ACTIVE
    assert pending.payment_status == PaymentStatus.PAID
    assert pending.stripe_payment_id == "sub_test_1"
    assert free.status == SubscriptionStatus.CANCELED
    assert test_user.credits_remaining == "1000"

    last = _transactions(db, test_user)[-1]
    assert last.credits_deducted == "3.75"
    assert last.credits_added == "1000"
    assert last.payment_method == "Stripe"
    assert credit_ledger.reconcile_user(db, test_user)


def test_activation_cancels_previous_paid_upstream(db, test_user, starter_plan):
    _make_paid(db, test_user, starter_plan, stripe_subscription_id="sub_old", session_id="cs_a")
    pro = db.query(Plan).filter(Plan.name == "Pro").first()
    pending, _ = _checkout(db, test_user, pro, session_id="cs_b")

    with patch("polychat.services.stripe_service.cancel_subscription") as mock_cancel:
        subscription_service.activate_pending_subscription(db, pending, external_id="sub_new")
        db.commit()

    mock_cancel.assert_called_once_with("sub_old")
    current = _current(db, test_user)
    assert [s.id for s in current] == [pending.id]
    db.refresh(test_user)
    assert test_user.credits_remaining == "3000"


def test_activation_is_idempotent(db, test_user, starter_plan):
    pending = _make_paid(db, test_user, starter_plan)
    count = len(_transactions(db, test_user))

    subscription_service.activate_pending_subscription(db, pending, external_id="sub_test_1")
    db.commit()

    assert len(_transactions(db, test_user)) == count


def test_fail_pending_subscription(db, test_user, starter_plan):
    pending, _ = _checkout(db, test_user, starter_plan)

    subscription_service.fail_pending_subscription(db, pending)
    db.commit()

    assert pending.status == SubscriptionStatus.FAILED
    assert pending.payment_status == PaymentStatus.FAILED
    assert pending.end_date is not None


# ============================================
# Cancel
# ============================================

def test_cancel_zeroes_credits(db, test_user, starter_plan):
    """Active user with 1000 credits cancels: Canceled, balance 0, 1000 deducted."""
    pending = _make_paid(db, test_user, starter_plan)

    with patch("polychat.services.stripe_service.cancel_subscription") as mock_cancel:
        subscription_service.cancel_subscriptions(db, test_user)

    mock_cancel.assert_called_once_with("sub_test_1")
    db.refresh(pending)
    db.refresh(test_user)
    assert pending.status == SubscriptionStatus.CANCELED
    assert pending.end_date is not None
    assert test_user.credits_remaining == "0"

    last = _transactions(db, test_user)[-1]
    assert last.credits_deducted == "1000"
    assert last.credits_added == "0"
    assert last.description == "Credits removed due to subscription cancellation"


def test_cancel_survives_provider_outage(db, test_user, starter_plan):
    pending = _make_paid(db, test_user, starter_plan)

    with patch(
        "polychat.services.stripe_service.cancel_subscription",
        side_effect=ExternalProviderError("Stripe down"),
    ):
        subscription_service.cancel_subscriptions(db, test_user)

    db.refresh(pending)
    assert pending.status == SubscriptionStatus.CANCELED


def test_cancel_free_tier_skips_provider(db, test_user):
    subscription_service.create_free_subscription(db, test_user)

    with patch("polychat.services.stripe_service.cancel_subscription") as mock_cancel:
        subscription_service.cancel_subscriptions(db, test_user)

    mock_cancel.assert_not_called()
    assert _current(db, test_user) == []


def test_cancel_without_subscription(db, test_user):
    with pytest.raises(NotFoundError):
        subscription_service.cancel_subscriptions(db, test_user)


# ============================================
# Downgrade / restore / current
# ============================================

def test_schedule_downgrade_disables_renewal(db, test_user, starter_plan):
    pending = _make_paid(db, test_user, starter_plan)

    with patch("polychat.services.stripe_service.set_auto_renewal") as mock_renewal:
        subscription_service.schedule_downgrade(db, test_user)

    mock_renewal.assert_called_once_with("sub_test_1", enabled=False)
    db.refresh(pending)
    assert pending.status == SubscriptionStatus.PENDING_DOWNGRADE
    db.refresh(test_user)
    assert test_user.credits_remaining == "1000"


def test_schedule_downgrade_rejects_free(db, test_user):
    subscription_service.create_free_subscription(db, test_user)
    with pytest.raises(ValidationFailedError):
        subscription_service.schedule_downgrade(db, test_user)


def test_restore_without_pending_downgrade(db, test_user, starter_plan):
    """Restore with nothing to restore is NotFound and changes nothing."""
    pending = _make_paid(db, test_user, starter_plan)
    count = len(_transactions(db, test_user))

    with patch("polychat.services.stripe_service.set_auto_renewal") as mock_renewal:
        with pytest.raises(NotFoundError):
            subscription_service.restore_subscription(db, test_user)

    mock_renewal.assert_not_called()
    db.refresh(pending)
    assert pending.status == SubscriptionStatus.ACTIVE
    assert len(_transactions(db, test_user)) == count


def test_restore_reenables_renewal(db, test_user, starter_plan):
    pending = _make_paid(db, test_user, starter_plan)
    with patch("polychat.services.stripe_service.set_auto_renewal"):
        subscription_service.schedule_downgrade(db, test_user)

    with patch("polychat.services.stripe_service.set_auto_renewal") as mock_renewal:
        restored = subscription_service.restore_subscription(db, test_user)

    mock_renewal.assert_called_once_with("sub_test_1", enabled=True)
    assert restored.id == pending.id
    assert restored.status == SubscriptionStatus.ACTIVE


def test_restore_rolls_back_when_provider_fails(db, test_user, starter_plan):
    pending = _make_paid(db, test_user, starter_plan)
    with patch("polychat.services.stripe_service.set_auto_renewal"):
        subscription_service.schedule_downgrade(db, test_user)

    with patch(
        "polychat.services.stripe_service.set_auto_renewal",
        side_effect=ExternalProviderError("Stripe down"),
    ):
        with pytest.raises(InternalError):
            subscription_service.restore_subscription(db, test_user)

    db.refresh(pending)
    assert pending.status == SubscriptionStatus.PENDING_DOWNGRADE


def test_get_current_subscription_retries_renewal_disable(db, test_user, starter_plan):
    _make_paid(db, test_user, starter_plan)
    with patch("polychat.services.stripe_service.set_auto_renewal"):
        subscription_service.schedule_downgrade(db, test_user)

    with patch(
        "polychat.services.stripe_service.set_auto_renewal",
        side_effect=ExternalProviderError("Stripe down"),
    ) as mock_renewal:
        current = subscription_service.get_current_subscription(db, test_user)

    mock_renewal.assert_called_once_with("sub_test_1", enabled=False)
    assert current.status == SubscriptionStatus.PENDING_DOWNGRADE


def test_get_current_subscription_none(db, test_user):
    with pytest.raises(NotFoundError):
        subscription_service.get_current_subscription(db, test_user)


def test_snapshot(db, test_user, starter_plan):
    pending = _make_paid(db, test_user, starter_plan)
    db.refresh(test_user)

    snapshot = subscription_service.subscription_snapshot(test_user, pending)

    assert snapshot["plan_name"] == "Starter"
    assert snapshot["status"] == "Active"
    assert snapshot["is_downgrade_pending"] is False
    assert snapshot["credits_remaining"] == "1000"
    assert snapshot["credits_display"] == "1000.00"
    assert snapshot["renewal_date"] is not None


def test_single_current_subscription_through_lifecycle(db, test_user, starter_plan):
    subscription_service.create_free_subscription(db, test_user)
    assert len(_current(db, test_user)) == 1

    _make_paid(db, test_user, starter_plan, session_id="cs_1", stripe_subscription_id="sub_1")
    assert len(_current(db, test_user)) == 1

    with patch("polychat.services.stripe_service.set_auto_renewal"):
        subscription_service.schedule_downgrade(db, test_user)
    assert len(_current(db, test_user)) == 1

    _make_paid(db, test_user, starter_plan, session_id="cs_2", stripe_subscription_id="sub_2")
    assert len(_current(db, test_user)) == 1
    assert credit_ledger.reconcile_user(db, test_user)
