"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Billing table definitions (SQLAlchemy Core)
"""
from typing import Optional, Callable
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Numeric, Index, ForeignKey
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from pg_billing.core.config import settings


logger = logging.getLogger("pg_billing.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory (used by the app wiring only; stores get a factory injected)
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


def build_engine(url: str):
    """Create an engine; SQLite URLs get a single shared connection (tests, local runs)."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


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

    _engine = build_engine(url)
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
def session_scope(session_factory: Callable[[], Session]):
    """Commit on success, roll back on error, always close."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    with session_scope(get_session_factory()) as session:
        yield session


def create_all_tables(engine=None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


def drop_all_tables(engine=None):
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine or get_engine())


def reset_database(engine=None):
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables(engine)
    create_all_tables(engine)


def check_connection(engine=None) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        eng = engine or get_engine()
        with eng.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False


# Plans (read-only to the billing engine)
plans = Table(
    'plans',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('name', String(200), nullable=False),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('interval', String(10), nullable=False),  # day, week, month, year
    Column('trial_period_days', Integer, nullable=False, server_default='0'),
    Column('description', Text, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_plans_is_active', 'is_active'),
)

# Saved payment instruments (gateway tokens only, never card numbers)
cards = Table(
    'cards',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('gateway_token', String(255), nullable=False),
    Column('last_four', String(4), nullable=True),
    Column('expiry_month', Integer, nullable=True),
    Column('expiry_year', Integer, nullable=True),
    Column('scheme', String(50), nullable=True),
    Column('is_default', Boolean, nullable=False, server_default='false'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Subscriptions; `version` is the optimistic concurrency token
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', Integer, ForeignKey('plans.id'), nullable=True),
    Column('card_id', Integer, ForeignKey('cards.id'), nullable=True),
    Column('plan_name', String(200), nullable=False),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('status', String(30), nullable=False, index=True),
    Column('interval', String(10), nullable=False),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('trial_start', DateTime(timezone=True), nullable=True),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='false'),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('billing_cycle_anchor', DateTime(timezone=True), nullable=True),
    Column('next_billing_at', DateTime(timezone=True), nullable=False),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # Due-for-billing scan: (status, next_billing_at)
    Index('idx_subscriptions_status_next_billing', 'status', 'next_billing_at'),
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
)

# Billing attempts
billing_attempts = Table(
    'billing_attempts',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subscription_id', Integer, ForeignKey('subscriptions.id'), nullable=False, index=True),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('status', String(30), nullable=False),
    Column('attempt_number', Integer, nullable=False),
    Column('billing_period_start', DateTime(timezone=True), nullable=True),
    Column('scheduled_at', DateTime(timezone=True), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('gateway_transaction_id', String(100), nullable=True),
    Column('error_code', String(100), nullable=True),
    Column('error_message', Text, nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # Pending scan: (status, scheduled_at)
    Index('idx_billing_attempts_status_scheduled', 'status', 'scheduled_at'),
    # Retry scan: (status, processed_at)
    Index('idx_billing_attempts_status_processed', 'status', 'processed_at'),
)

# Transactions (immutable charge records)
transactions = Table(
    'transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('card_id', Integer, nullable=True),
    Column('subscription_id', Integer, ForeignKey('subscriptions.id'), nullable=True, index=True),
    Column('billing_attempt_id', Integer, ForeignKey('billing_attempts.id'), nullable=True, unique=True),
    Column('invoice_id', String(50), nullable=True),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False),
    Column('status', String(50), nullable=False),
    Column('gateway_transaction_id', String(100), nullable=True),
    Column('type', String(30), nullable=False),  # manual, recurring
    Column('created_at', DateTime(timezone=True), nullable=False),
)

# Background job runs (reconcile)
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(30), nullable=False),
    Column('stats_json', Text, nullable=True),
)
