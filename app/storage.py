"""
Database engine and session management.

Sessions are synchronous and scoped to one request through get_db().
Background export jobs open their own session from SessionLocal.
"""

import logging
from typing import Generator

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from app.config import settings

logger = logging.getLogger(__name__)

# Tables the service cannot run without
REQUIRED_TABLES = ("communication_logs", "notification_delivery_logs", "message_audit_trails")

IS_SQLITE = settings.DATABASE_URL.startswith("sqlite")

engine = create_engine(
    settings.DATABASE_URL,
    # SQLite connections are shared with FastAPI's threadpool and export workers
    connect_args={"check_same_thread": False} if IS_SQLITE else {},
    pool_pre_ping=not IS_SQLITE,
)


if IS_SQLITE:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """Create missing tables. Called from the app lifespan."""
    # Models register themselves on Base.metadata when imported
    from app import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database: {e}")
        raise
    logger.info("Database initialized")


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; uncommitted work is rolled back on close."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Readiness check.

    Returns:
        True if the database answers and every table in REQUIRED_TABLES exists.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        existing = set(inspect(engine).get_table_names())
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False

    missing = [table for table in REQUIRED_TABLES if table not in existing]
    if missing:
        logger.error(f"Database schema not applied, missing tables: {', '.join(missing)}")
        return False
    return True
