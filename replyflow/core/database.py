"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (PostgreSQL or a SQLite file)
- Table definitions for the entitlement engine
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Date, Boolean, JSON, Text, Index, text
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from replyflow.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# SQLite waits this long on a locked database before failing a write
SQLITE_BUSY_TIMEOUT = 30

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # Worker threads share the pool; writers serialize on the file lock
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back and re-raises on error.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """Return True when the configured database answers a trivial query."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


# Plans (static catalog mirrored for reporting and joins)
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('monthly_action_limit', Integer, nullable=True),  # NULL = unlimited
    Column('daily_post_cap', Integer, nullable=False),
    Column('is_default', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_plans_is_default', 'is_default'),
)

# User profiles, including the subscription record owned by the reconciler
profiles = Table(
    'profiles',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('tier', String(20), nullable=False, server_default='free'),
    Column('subscription_status', String(50), nullable=False, server_default='none'),
    Column('subscribed_until', DateTime(timezone=True), nullable=True),
    Column('external_customer_id', String(100), nullable=True, unique=True),
    Column('external_subscription_id', String(100), nullable=True),
    Column('last_billing_event_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_profiles_external_customer_id', 'external_customer_id'),
    Index('idx_profiles_external_subscription_id', 'external_subscription_id'),
)

# Per-user usage counters; mutated only through conditional updates
usage_counters = Table(
    'usage_counters',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('plan_id', String(50), nullable=False),
    Column('actions_used_this_month', Integer, nullable=False, server_default='0'),
    Column('month_start', Date, nullable=False),
    Column('posts_today', Integer, nullable=False, server_default='0'),
    Column('day_start', Date, nullable=False),
    Column('queued_count', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_usage_counters_plan_id', 'plan_id'),
)

# Deferred posts waiting for daily capacity
overflow_queue = Table(
    'overflow_queue',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('target_comment_id', String(200), nullable=False),
    Column('payload_text', Text, nullable=False),
    Column('video_id', String(100), nullable=True),
    Column('status', String(20), nullable=False, server_default='pending'),  # pending, posted, failed
    Column('attempts', Integer, nullable=False, server_default='0'),
    Column('max_attempts', Integer, nullable=False, server_default='3'),
    Column('error_message', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('posted_at', DateTime(timezone=True), nullable=True),
    Index('idx_overflow_queue_user_status', 'user_id', 'status'),
    Index('idx_overflow_queue_status_created', 'status', 'created_at'),
)

# Billing webhook idempotency gate; the primary key is the only lock
processed_events = Table(
    'processed_events',
    metadata,
    Column('event_id', String(100), primary_key=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('payload', JSON, nullable=True),
    Column('processed', Boolean, nullable=False, server_default='0', index=True),
    Column('outcome', String(50), nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Index('idx_processed_events_received_at', 'received_at'),
)
