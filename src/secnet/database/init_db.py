"""
Database Initialization Script

This script handles database setup:
1. Table creation with all constraints and indexes
2. Trigger creation for audit log immutability (PostgreSQL only)
3. Verification that every table is reachable

Usage:
    poetry run python -m secnet.database.init_db

For Docker:
    docker exec -it app python -m secnet.database.init_db
"""

import logging
import os
import sys

from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError

from .models import (
    AnomalyProfile,
    AuditLog,
    Base,
    ConsentRequestRecord,
    CredentialRecord,
    DIDRecord,
    SessionLocal,
    engine,
)

logger = logging.getLogger(__name__)


def _is_postgres(bind) -> bool:
    return bind.dialect.name == "postgresql"


def create_tables(bind=None):
    """
    Create all database tables using SQLAlchemy metadata.

    This is idempotent - safe to run multiple times.
    """
    bind = bind or engine
    logger.info("Creating database tables...")

    try:
        Base.metadata.create_all(bind=bind)
        logger.info("All tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create tables: {e}")
        raise


def apply_audit_trigger(bind=None):
    """
    Install a trigger that rejects UPDATE on audit_logs.

    Database-level protection in addition to the ORM event listener in
    models.py. Skipped on engines other than PostgreSQL.
    """
    bind = bind or engine
    if not _is_postgres(bind):
        logger.info(f"Skipping audit trigger on {bind.dialect.name}")
        return

    logger.info("Applying audit log immutability trigger...")

    with bind.connect() as conn:
        conn.execute(text("""
            CREATE OR REPLACE FUNCTION prevent_audit_log_update()
            RETURNS TRIGGER AS $$
            BEGIN
                RAISE EXCEPTION 'UPDATE operations on audit_logs are prohibited. Audit records are immutable.';
            END;
            $$ language 'plpgsql';
        """))
        conn.execute(text("DROP TRIGGER IF EXISTS trigger_prevent_audit_update ON audit_logs;"))
        try:
            conn.execute(text("""
                CREATE TRIGGER trigger_prevent_audit_update
                BEFORE UPDATE ON audit_logs
                FOR EACH ROW
                EXECUTE FUNCTION prevent_audit_log_update();
            """))
            conn.commit()
            logger.info("Audit log immutability trigger applied")
        except ProgrammingError as e:
            if "already exists" in str(e):
                logger.debug("Trigger already exists")
            else:
                logger.warning(f"Could not create trigger: {e}")


def verify_setup(session_factory=None):
    """Verify that every table is reachable."""
    logger.info("Verifying database setup...")

    session = (session_factory or SessionLocal)()
    try:
        for model in (ConsentRequestRecord, AuditLog, DIDRecord, CredentialRecord, AnomalyProfile):
            count = session.query(model).count()
            logger.info(f"{model.__tablename__} accessible ({count} records)")

        logger.info("=" * 50)
        logger.info("Database setup verification PASSED")
        logger.info("=" * 50)
    except Exception as e:
        logger.error(f"Verification failed: {e}")
        raise
    finally:
        session.close()


def init_database(drop_existing: bool = False, bind=None, session_factory=None):
    """
    Main initialization function.

    Args:
        drop_existing: If True, drop all tables before creating.
                      Refused when FLASK_ENV is production.
    """
    bind = bind or engine
    logger.info("=" * 50)
    logger.info("Starting database initialization...")
    logger.info("=" * 50)

    if drop_existing:
        if os.getenv("FLASK_ENV") == "production":
            raise ValueError(
                "Cannot drop tables in production! "
                "Set FLASK_ENV to 'development' or 'testing' to drop tables."
            )
        logger.warning("Dropping all existing tables...")
        Base.metadata.drop_all(bind=bind)
        logger.info("All tables dropped")

    create_tables(bind)
    apply_audit_trigger(bind)
    verify_setup(session_factory)

    logger.info("=" * 50)
    logger.info("Database initialization COMPLETE")
    logger.info("=" * 50)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    drop_flag = "--drop" in sys.argv

    if drop_flag:
        confirm = input(
            "WARNING: This will DROP ALL TABLES. "
            "Type 'yes' to confirm: "
        )
        if confirm.lower() != "yes":
            print("Aborted.")
            sys.exit(1)

    init_database(drop_existing=drop_flag)
