"""
Script to report users whose stored balance disagrees with their credit ledger.
Run: python -m scripts.reconcile_credits [--email user@example.com]
Exits with status 1 when any mismatch is found.
"""
import argparse
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from polychat.db.session import SessionLocal
from polychat.db.models.user import User
from polychat.services.credit_ledger import ledger_balance, get_balance, to_credit_string
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def find_mismatches(db, email=None):
    """(user, stored balance, ledger balance) for every inconsistent user."""
    query = db.query(User)
    if email:
        query = query.filter(User.email == email.lower())

    mismatches = []
    for user in query.order_by(User.id).all():
        stored = get_balance(user)
        computed = ledger_balance(db, user.id)
        if stored != computed:
            mismatches.append((user, stored, computed))
    return mismatches


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--email", help="Only check this user")
    args = parser.parse_args(argv)

    db = SessionLocal()
    try:
        mismatches = find_mismatches(db, args.email)
    finally:
        db.close()

    for user, stored, computed in mismatches:
        logger.warning(
            f"Mismatch: user_id={user.id}, balance={to_credit_string(stored)}, ledger={to_credit_string(computed)}"
        )

    if mismatches:
        print(f"\n[ERROR] {len(mismatches)} user(s) out of balance with their ledger")
        return 1
    print("\n[SUCCESS] All balances match their ledgers")
    return 0


if __name__ == "__main__":
    sys.exit(main())
