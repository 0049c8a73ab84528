"""
Health check endpoint for deployment monitoring.
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from polychat.db.session import SessionLocal
from polychat.services.notifier import notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
def health_check():
    """
    Returns 200 with "healthy" when the database answers, "degraded" otherwise.
    """
    status = "healthy"
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        db_status = "error"
        status = "degraded"
    finally:
        db.close()

    return {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": db_status,
        "event_streams": notifier.connection_count(),
        "service": "Polychat API",
    }
