"""
Credit ledger.

users.credits_remaining is the single source of truth for spend
authorization. Every mutation here appends exactly one CreditTransaction so
the balance can always be rebuilt from the ledger.

None of these functions commit: they run inside the caller's transaction so a
balance change and the state change that caused it land together.
"""
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from polychat.core.exceptions import InsufficientCreditsError, ValidationFailedError
from polychat.core.model_rates import STORAGE_QUANTUM
from polychat.db.models.user import User
from polychat.db.models.subscription import Subscription
from polychat.db.models.credit_transaction import CreditTransaction

logger = logging.getLogger(__name__)

CreditAmount = Union[Decimal, str, int]


def parse_credits(value: Optional[CreditAmount]) -> Decimal:
    """Parse a stored or requested credit amount; empty means zero."""
    if value is None or value == "":
        return Decimal("0")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValidationFailedError(f"Invalid credit amount: {value!r}")
    if not amount.is_finite():
        raise ValidationFailedError(f"Invalid credit amount: {value!r}")
    return amount


def to_credit_string(amount: Decimal) -> str:
    """Fixed-point string with at most 6 decimals: Decimal("1000.000000") -> "1000"."""
    quantized = amount.quantize(STORAGE_QUANTUM, rounding=ROUND_HALF_UP)
    if quantized == 0:
        return "0"
    text = format(quantized, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def get_balance(user: User) -> Decimal:
    return parse_credits(user.credits_remaining)


def _append_transaction(
    db: Session,
    user: User,
    added: Decimal,
    deducted: Decimal,
    subscription: Optional[Subscription],
    description: str,
    payment_method: str,
) -> CreditTransaction:
    transaction = CreditTransaction(
        user_id=user.id,
        subscription_id=subscription.id if subscription is not None else None,
        credits_added=to_credit_string(added),
        credits_deducted=to_credit_string(deducted),
        payment_method=payment_method,
        description=description,
    )
    db.add(transaction)
    return transaction


def grant(
    db: Session,
    user: User,
    amount: CreditAmount,
    subscription: Optional[Subscription] = None,
    description: str = "Credits granted",
    payment_method: str = "System",
) -> CreditTransaction:
    """Add credits to a user's balance."""
    value = parse_credits(amount)
    if value < 0:
        raise ValidationFailedError("Grant amount must be non-negative")

    balance = get_balance(user)
    user.credits_remaining = to_credit_string(balance + value)
    transaction = _append_transaction(db, user, value, Decimal("0"), subscription, description, payment_method)
    db.flush()

    logger.info(f"Credits granted: user_id={user.id}, amount={to_credit_string(value)}, balance={user.credits_remaining}")
    return transaction


def deduct(
    db: Session,
    user: User,
    amount: CreditAmount,
    subscription: Optional[Subscription] = None,
    description: str = "Credits used",
    payment_method: str = "Usage",
) -> CreditTransaction:
    """
    Remove credits from a user's balance.

    Raises:
        InsufficientCreditsError: amount exceeds the balance; nothing is written
    """
    value = parse_credits(amount)
    if value < 0:
        raise ValidationFailedError("Deduction amount must be non-negative")

    balance = get_balance(user)
    if value > balance:
        logger.warning(
            f"Insufficient credits: user_id={user.id}, requested={to_credit_string(value)}, "
            f"balance={to_credit_string(balance)}"
        )
        raise InsufficientCreditsError(
            "Insufficient credits",
            extra={"required": to_credit_string(value), "remaining": to_credit_string(balance)},
        )

    user.credits_remaining = to_credit_string(balance - value)
    transaction = _append_transaction(db, user, Decimal("0"), value, subscription, description, payment_method)
    db.flush()

    logger.info(f"Credits deducted: user_id={user.id}, amount={to_credit_string(value)}, balance={user.credits_remaining}")
    return transaction


def reset_balance(
    db: Session,
    user: User,
    new_balance: CreditAmount,
    subscription: Optional[Subscription] = None,
    description: str = "Balance reset",
    payment_method: str = "System",
) -> CreditTransaction:
    """
    Replace the balance outright, e.g. on plan activation or cancellation.

    Recorded as one row: the prior balance deducted, the new balance added.
    """
    value = parse_credits(new_balance)
    if value < 0:
        raise ValidationFailedError("Balance must be non-negative")

    prior = get_balance(user)
    user.credits_remaining = to_credit_string(value)
    transaction = _append_transaction(db, user, value, prior, subscription, description, payment_method)
    db.flush()

    logger.info(
        f"Credits reset: user_id={user.id}, previous={to_credit_string(prior)}, balance={user.credits_remaining}"
    )
    return transaction


def ledger_balance(db: Session, user_id: int) -> Decimal:
    """Balance rebuilt from the ledger rows."""
    # Amounts are strings, so the sum happens in Decimal rather than in SQL
    rows = db.query(CreditTransaction.credits_added, CreditTransaction.credits_deducted).filter(
        CreditTransaction.user_id == user_id
    ).all()
    total = Decimal("0")
    for added, deducted in rows:
        total += parse_credits(added) - parse_credits(deducted)
    return total


def reconcile_user(db: Session, user: User) -> bool:
    """True when the stored balance matches the ledger."""
    return ledger_balance(db, user.id) == get_balance(user)


def count_transactions(db: Session, user_id: int) -> int:
    return db.query(func.count(CreditTransaction.id)).filter(CreditTransaction.user_id == user_id).scalar() or 0
