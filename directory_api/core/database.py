"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for users, plans and the subscription ledger
"""
from datetime import datetime, timezone
from typing import Optional, Generator
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Float,
    Text,
    Index,
    ForeignKey,
    CheckConstraint,
    text,
    true,
    false,
)
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import logging
import os

from directory_api.core.config import settings


logger = logging.getLogger("directory")

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


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends without tz support (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    options = {
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
    }
    if url.startswith("postgresql"):
        # Ledger reads/writes share the 10s request timeout
        options["connect_args"] = {
            "options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}",
        }
    return options


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

    _engine = create_engine(url, echo=False, **_engine_options(url))

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Dispose the engine and forget the session factory (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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
    """FastAPI-friendly DB dependency that yields a Session and closes it."""
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
        logger.warning(f"Database connection check failed: {e}")
        return False


# Users: listing profile plus the entitlement projection owned by the subscription flow
users = Table(
    'users',
    metadata,
    Column('user_id', String(64), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('phone_no', String(32), nullable=True),
    Column('location', String(100), nullable=True, index=True),
    Column('role', String(20), nullable=False, server_default='user'),
    Column('is_active', Boolean, nullable=False, server_default=false()),  # admin approved
    Column('has_active_subscription', Boolean, nullable=False, server_default=false()),
    Column('subscription_expiry', DateTime(timezone=True), nullable=True),
    Column('last_payment_date', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_visibility', 'is_active', 'has_active_subscription', 'subscription_expiry'),
)

# Plan catalog
subscription_plans = Table(
    'subscription_plans',
    metadata,
    Column('plan_id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('price', Float, nullable=False),
    Column('duration_days', Integer, nullable=False),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('price > 0', name='ck_subscription_plans_price_positive'),
    CheckConstraint('duration_days > 0', name='ck_subscription_plans_duration_positive'),
    Index('idx_subscription_plans_active_price', 'is_active', 'price'),
)

# Subscription ledger
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(64), ForeignKey('users.user_id'), nullable=False),
    Column('plan_id', String(36), ForeignKey('subscription_plans.plan_id'), nullable=False),
    Column('status', String(20), nullable=False, index=True),  # pending, active, failed
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('expiry_date', DateTime(timezone=True), nullable=False),
    Column('amount', Float, nullable=False),
    Column('expected_amount', Float, nullable=False),
    Column('amount_mismatch', Boolean, nullable=False, server_default=false()),
    Column('checkout_id', String(100), nullable=True, unique=True),  # correlation id
    Column('merchant_request_id', String(100), nullable=True),
    Column('mpesa_receipt', String(50), nullable=True),
    Column('failure_reason', Text, nullable=True),
    Column('phone_used', String(32), nullable=False),
    Column('payer_phone', String(32), nullable=True),
    Column('paid_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    # Lookup of a user's blocking/current subscription
    Index('idx_subscriptions_user_status_expiry', 'user_id', 'status', 'expiry_date'),
    # Stale pending sweep for operators
    Index('idx_subscriptions_status_created', 'status', 'created_at'),
)
