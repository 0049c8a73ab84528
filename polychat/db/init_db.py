import logging

from polychat.db.session import engine, SessionLocal
from polychat.db.base import Base

logger = logging.getLogger(__name__)


def init_db():
    """Create any missing tables and seed the plan catalog."""
    # Registers every model on Base.metadata
    import polychat.db.models  # noqa: F401
    from polychat.core.plan_catalog import seed_plans

    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        seed_plans(db)
    finally:
        db.close()
    logger.info("Database initialized")
