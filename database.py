"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the settlement engine.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, text, inspect
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base
from utils.settlement_exceptions import SettlementError

logger = logging.getLogger(__name__)


def build_engine(database_url: str = None):
    """
    Create an engine for the configured database.

    PostgreSQL gets a bounded connection pool; SQLite (local runs and tests) gets a
    busy timeout so concurrent writers queue on the database lock instead of failing.
    """
    database_url = database_url or Config.DATABASE_URL
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=Config.SQL_ECHO,
            connect_args={
                "check_same_thread": False,
                "timeout": Config.LOCK_TIMEOUT_SECONDS,
            },
        )

    return create_engine(
        database_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=Config.SQL_ECHO,
        connect_args={
            "connect_timeout": 10,
            "application_name": "settlement_engine",  # For monitoring in pg_stat_activity
        },
    )


engine = build_engine()

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def configure_database(database_url: str):
    """Point the engine and session factory at a different database (tests, CLI tools)"""
    global engine
    old_engine = engine
    engine = build_engine(database_url)
    SessionLocal.configure(bind=engine)
    old_engine.dispose()
    logger.info(f"🔌 Database rebound to {database_url.split('://')[0]}")
    return engine


def is_postgres(session: Session) -> bool:
    return session.get_bind().dialect.name == "postgresql"


def create_tables(bind=None):
    """Create all database tables if they don't exist"""
    bind = bind or engine
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

    Base.metadata.create_all(bind=bind, checkfirst=True)

    existing_tables = inspect(bind).get_table_names()
    logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
    return True


def drop_tables(bind=None):
    """Drop every settlement table - used by the test suite"""
    Base.metadata.drop_all(bind=bind or engine)


@contextmanager
def managed_session():
    """Sync context manager for database sessions"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except SettlementError:
        # Domain rejections are reported by the caller
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def test_connection():
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except OperationalError as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
