"""
Database migration runner for Alembic migrations.
"""
import logging
import os
from alembic.config import Config
from alembic import command
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

ADVISORY_LOCK_ID = 734110982


def alembic_config(database_url: str) -> Config:
    alembic_ini_path = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "alembic.ini")
    cfg = Config(alembic_ini_path)
    cfg.set_main_option("sqlalchemy.url", database_url)
    return cfg


def run_migrations():
    """
    Run Alembic migrations to head revision, then seed the plan catalog.

    On PostgreSQL an advisory lock keeps concurrent instances from migrating
    at the same time.
    """
    from polychat.core import config as app_config
    from polychat.core.plan_catalog import seed_plans
    from polychat.db.session import SessionLocal

    if not app_config.DATABASE_URL:
        raise ValueError("DATABASE_URL is not set")

    logger.info("RUN_MIGRATIONS=1 -> running alembic upgrade head")

    alembic_cfg = alembic_config(app_config.DATABASE_URL)
    is_postgres = app_config.DATABASE_URL.startswith("postgresql")

    engine = create_engine(app_config.DATABASE_URL, pool_pre_ping=True)
    lock_conn = None

    try:
        if is_postgres:
            # Lock is held for as long as this connection stays open
            lock_conn = engine.connect()
            lock_conn.execute(text(f"SELECT pg_advisory_lock({ADVISORY_LOCK_ID})"))
            lock_conn.commit()
            logger.info("Migration lock acquired")

        command.upgrade(alembic_cfg, "head")
        logger.info("Migrations complete")
    except Exception:
        logger.exception("Migration failed")
        raise
    finally:
        if lock_conn is not None:
            try:
                lock_conn.execute(text(f"SELECT pg_advisory_unlock({ADVISORY_LOCK_ID})"))
                lock_conn.commit()
            except SQLAlchemyError as e:
                logger.warning(f"Could not release migration lock: {e}")
            finally:
                lock_conn.close()
        engine.dispose()

    db = SessionLocal()
    try:
        seed_plans(db)
    finally:
        db.close()
