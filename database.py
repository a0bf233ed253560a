"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the marketplace settlement engine.
"""

import logging
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from config import Config
from models import Base

logger = logging.getLogger(__name__)

# Seconds a SQLite writer waits for the database write lock before failing.
# Concurrent checkouts queue on the lock instead of erroring out.
SQLITE_BUSY_TIMEOUT = 30


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite is used for development and tests; PostgreSQL in production. Both
    honour the conditional-UPDATE allocation strategy, PostgreSQL additionally
    uses row locks (SELECT ... FOR UPDATE SKIP LOCKED).
    """
    if database_url.startswith("sqlite"):
        sqlite_engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        )

        @event.listens_for(sqlite_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
            # Transactions are started explicitly below
            dbapi_connection.isolation_level = None

        @event.listens_for(sqlite_engine, "begin")
        def _begin_immediate(conn):
            # No row locks in SQLite: writers queue on the database lock
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return sqlite_engine

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
    )


if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(bind: Engine = None) -> bool:
    """Create all tables that do not exist yet"""
    target = bind or engine
    try:
        Base.metadata.create_all(bind=target)
        logger.info("✅ Database tables created/verified")
        return True
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise


def test_connection() -> bool:
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
