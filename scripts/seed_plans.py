"""
Script to create or refresh the Free / Starter / Pro plan rows.
Run: python -m scripts.seed_plans
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from polychat.db.init_db import init_db
from polychat.db.session import SessionLocal
from polychat.core.plan_catalog import list_plans, is_purchasable
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main():
    init_db()
    db = SessionLocal()
    try:
        for plan in list_plans(db):
            logger.info(
                f"Plan {plan.id}: {plan.name}, price={plan.price}, credits={plan.credits_per_month}, "
                f"purchasable={is_purchasable(plan)}"
            )
    finally:
        db.close()


if __name__ == "__main__":
    main()
