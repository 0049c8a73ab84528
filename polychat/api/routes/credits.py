"""
Credit balance and ledger endpoints.
"""
import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy import desc
from sqlalchemy.orm import Session

from polychat.core.auth_dependency import get_db, get_current_user_obj
from polychat.core.model_rates import format_credits_for_display
from polychat.db.models.user import User
from polychat.db.models.credit_transaction import CreditTransaction
from polychat.schemas.credits import CreditBalanceResponse, CreditTransactionListResponse
from polychat.services import credit_ledger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/me", tags=["Credits"])


@router.get("/credits", response_model=CreditBalanceResponse)
def get_credits(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    consistent = credit_ledger.reconcile_user(db, user)
    if not consistent:
        logger.error(
            f"Balance does not match ledger: user_id={user.id}, balance={user.credits_remaining}, "
            f"ledger={credit_ledger.to_credit_string(credit_ledger.ledger_balance(db, user.id))}"
        )
    return CreditBalanceResponse(
        credits_remaining=user.credits_remaining,
        credits_display=format_credits_for_display(credit_ledger.get_balance(user)),
        ledger_consistent=consistent,
    )


@router.get("/credit-transactions", response_model=CreditTransactionListResponse)
def get_credit_transactions(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db)
):
    """Ledger entries for the authenticated user, newest first."""
    query = db.query(CreditTransaction).filter(CreditTransaction.user_id == user.id)
    total = query.count()
    offset = (page - 1) * page_size
    entries = query.order_by(desc(CreditTransaction.created_at), desc(CreditTransaction.id)).offset(offset).limit(page_size).all()

    logger.debug(f"Credit transactions listed: user_id={user.id}, total={total}, page={page}")
    return CreditTransactionListResponse(entries=entries, total=total, page=page, page_size=page_size)
