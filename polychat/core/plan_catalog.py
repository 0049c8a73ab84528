"""
Plan catalog configuration.

Single source of truth for the subscription tiers, their monthly credit
allotments and the Stripe prices used to sell them.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Any

from sqlalchemy.orm import Session

from polychat.core.config import STRIPE_PRICE_ID_STARTER, STRIPE_PRICE_ID_PRO
from polychat.core.exceptions import NotFoundError
from polychat.db.models.plan import Plan

logger = logging.getLogger(__name__)

FREE_PLAN_NAME = "Free"

PLAN_CATALOG: List[Dict[str, Any]] = [
    {
        "name": FREE_PLAN_NAME,
        "price": Decimal("0.00"),
        "credits_per_month": "5",
        "stripe_product_id": None,
        "stripe_price_id": None,
    },
    {
        "name": "Starter",
        "price": Decimal("9.99"),
        "credits_per_month": "1000",
        "stripe_product_id": "prod_RqUmGdLyUsGuxM",
        "stripe_price_id": STRIPE_PRICE_ID_STARTER,
    },
    {
        "name": "Pro",
        "price": Decimal("29.99"),
        "credits_per_month": "3000",
        "stripe_product_id": "prod_RqUmW0lFzzSzmW",
        "stripe_price_id": STRIPE_PRICE_ID_PRO,
    },
]


def seed_plans(db: Session) -> List[Plan]:
    """
    Insert or refresh the catalog rows. Safe to run on every startup.

    Existing rows keep their ids so subscriptions stay attached.
    """
    plans = []
    for entry in PLAN_CATALOG:
        plan = db.query(Plan).filter(Plan.name == entry["name"]).first()
        if not plan:
            plan = Plan(name=entry["name"])
            db.add(plan)
            logger.info(f"Seeding plan: name={entry['name']}")
        plan.price = entry["price"]
        plan.credits_per_month = entry["credits_per_month"]
        plan.stripe_product_id = entry["stripe_product_id"]
        # Keep a price id set by hand when the environment has none
        if entry["stripe_price_id"]:
            plan.stripe_price_id = entry["stripe_price_id"]
        plans.append(plan)

    db.commit()
    return plans


def list_plans(db: Session) -> List[Plan]:
    return db.query(Plan).order_by(Plan.price.asc(), Plan.id.asc()).all()


def get_plan(db: Session, plan_id: int) -> Plan:
    plan = db.query(Plan).filter(Plan.id == plan_id).first()
    if not plan:
        raise NotFoundError(f"Plan not found: {plan_id}")
    return plan


def get_free_plan(db: Session) -> Plan:
    plan = db.query(Plan).filter(Plan.name == FREE_PLAN_NAME).first()
    if not plan:
        raise NotFoundError("Free plan not found")
    return plan


def get_plan_by_price_id(db: Session, price_id: Optional[str]) -> Optional[Plan]:
    """Get plan from Stripe price ID."""
    if not price_id:
        return None
    return db.query(Plan).filter(Plan.stripe_price_id == price_id).first()


def is_purchasable(plan: Plan) -> bool:
    """Paid plan whose Stripe price is configured."""
    if plan.name == FREE_PLAN_NAME:
        return False
    price_id = plan.stripe_price_id
    # Placeholder values from .env.example do not count
    return bool(price_id) and not price_id.startswith("price_your_")
