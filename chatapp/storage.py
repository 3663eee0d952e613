"""
Database engine and sessions.

Queries live in chatapp.repository; this module only owns the engine, the
declarative Base every model inherits from, and the schema/health helpers.
"""

import logging
from typing import Generator

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from chatapp.config import settings

logger = logging.getLogger(__name__)

TABLES = (
    "accounts",
    "access_tokens",
    "profiles",
    "conversations",
    "conversation_participants",
    "messages",
)

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# Sessions are used from FastAPI's threadpool, so SQLite must allow cross-thread use
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    echo=False,
)

if _is_sqlite:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        # SQLite ignores ON DELETE CASCADE unless asked per connection
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# Rows are published to the change feed after commit, so keep them loaded
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """Create any missing tables. Runs once at startup."""
    # Registers the tables and the row hooks on Base.metadata
    import chatapp.models  # noqa: F401

    logger.debug(f"Creating schema on {engine.url.render_as_string(hide_password=True)}")
    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        logger.error(f"Failed to create schema: {e}")
        raise
    logger.info(f"Database ready ({len(TABLES)} tables)")


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request, always closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Readiness check.

    Returns:
        True when the database answers and every table in TABLES exists
    """
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            missing = [name for name in TABLES if not inspect(connection).has_table(name)]
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False
    if missing:
        logger.error(f"Database schema not applied, missing tables: {missing}")
        return False
    return True
