"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for subscriptions, payments, webhook events and profiles
"""
from typing import Optional, Generator
from contextlib import contextmanager
from sqlalchemy import create_engine, event, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, UniqueConstraint, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from polaris.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

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

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _enable_sqlite_savepoints(engine) -> None:
    """Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINTs behave."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


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
        engine_kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # Single shared connection so in-memory databases survive across sessions
            engine_kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, **engine_kwargs)
        _enable_sqlite_savepoints(_engine)
    else:
        # Create engine with connection pooling
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
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

    Commits on clean exit and rolls back if the block raises.

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


def get_db() -> Generator[Session, None, None]:
    """FastAPI-friendly DB dependency that yields a Session and closes it.

    Use this with `Depends(get_db)` in route functions to ensure the session
    lifecycle works with both sync and async endpoints under FastAPI.
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


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
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logging.getLogger("polaris").warning(f"Database connection check failed: {e}")
        return False


# Subscriptions: one row per processor-side subscription
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('razorpay_subscription_id', String(100), nullable=False),
    Column('razorpay_customer_id', String(100), nullable=True),
    Column('razorpay_plan_id', String(100), nullable=False),
    Column('subscription_tier', String(50), nullable=False),
    Column('billing_cycle', String(20), nullable=False),
    Column('seats', Integer, nullable=True),
    Column('status', String(50), nullable=False, server_default='created'),
    Column('plan_name', String(200), nullable=False),
    Column('plan_amount', Integer, nullable=False),  # minor units (paise)
    Column('plan_currency', String(3), nullable=False, server_default='INR'),
    Column('current_start', DateTime(timezone=True), nullable=True),
    Column('current_end', DateTime(timezone=True), nullable=True),
    Column('next_billing_date', DateTime(timezone=True), nullable=True),
    Column('charge_at', DateTime(timezone=True), nullable=True),
    Column('start_at', DateTime(timezone=True), nullable=True),
    Column('end_at', DateTime(timezone=True), nullable=True),
    Column('ended_at', DateTime(timezone=True), nullable=True),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('total_count', Integer, nullable=True),
    Column('paid_count', Integer, nullable=False, server_default='0'),
    Column('remaining_count', Integer, nullable=True),
    Column('short_url', Text, nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('version', Integer, nullable=False, server_default='1'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('razorpay_subscription_id', name='uq_subscriptions_razorpay_id'),
    # Duplicate check pattern: (user_id, status)
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
)

# Payments: immutable charge outcomes reported by webhooks
payments = Table(
    'payments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('razorpay_payment_id', String(100), nullable=False),
    Column('razorpay_subscription_id', String(100), nullable=True, index=True),
    Column('user_id', String(100), nullable=True, index=True),
    Column('amount', Integer, nullable=False),  # minor units
    Column('currency', String(3), nullable=False),
    Column('status', String(20), nullable=False),  # captured | failed
    Column('failure_reason', Text, nullable=True),
    Column('method', String(50), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('razorpay_payment_id', name='uq_payments_razorpay_id'),
)

# Webhook events: append-only ledger, event_id is the idempotency key
webhook_events = Table(
    'webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('razorpay_entity_id', String(100), nullable=True, index=True),
    Column('payload', JSON, nullable=True),  # sanitized
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('processed', Boolean, nullable=False, server_default='false'),
    Column('processing_status', String(20), nullable=False),  # processed | skipped | rejected | failed
    Column('error', Text, nullable=True),
    Column('warnings', JSON, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('event_id', name='uq_webhook_events_event_id'),
    Index('idx_webhook_events_received_at', 'received_at'),
)

# User profiles: tier and usage limits mirrored from the subscription
user_profiles = Table(
    'user_profiles',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('subscription_tier', String(50), nullable=False, server_default='free'),
    Column('subscription_status', String(50), nullable=True),
    Column('subscription_ends_at', DateTime(timezone=True), nullable=True),
    Column('seats', Integer, nullable=True),
    Column('blueprint_creation_limit', Integer, nullable=False, server_default='2'),
    Column('blueprint_saving_limit', Integer, nullable=False, server_default='2'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
