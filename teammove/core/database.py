"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Billing table definitions (SQLAlchemy Core)
"""
import logging
from typing import Any, Dict, Iterable, Optional
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
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    insert,
    false,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from teammove.core.config import settings

logger = logging.getLogger("teammove")


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

    engine_kwargs: Dict[str, Any] = {
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "echo": False,  # Set to True for SQL query logging
    }
    if url.startswith("sqlite"):
        # Local/test databases: wait on the file lock instead of failing fast
        engine_kwargs["connect_args"] = {"timeout": 30, "check_same_thread": False}

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, **engine_kwargs)

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

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
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


def insert_ignore(
    session: Session,
    table: Table,
    values: Dict[str, Any],
    index_elements: Iterable[str],
) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING.

    Returns True when a row was inserted. Postgres and SQLite use the native
    clause; other dialects fall back to a savepoint around a plain insert.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        dialect_insert = None

    if dialect_insert is not None:
        stmt = dialect_insert(table).values(**values).on_conflict_do_nothing(
            index_elements=list(index_elements)
        )
        result = session.execute(stmt)
        return bool(result.rowcount)

    try:
        with session.begin_nested():
            session.execute(insert(table).values(**values))
        return True
    except IntegrityError:
        return False


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


# Tenants: billing projection of organization accounts
tenants = Table(
    'tenants',
    metadata,
    Column('tenant_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True),
    Column('name', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_tenants_email', 'email'),
)


# Tenant subscriptions: exactly one row per tenant
tenant_subscriptions = Table(
    'tenant_subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.tenant_id'), nullable=False, unique=True),
    Column('plan_id', String(50), nullable=False),
    Column('status', String(20), nullable=False),  # active, cancelled, past_due, expired
    Column('external_customer_ref', String(100), nullable=True, unique=True),
    Column('external_subscription_ref', String(100), nullable=True),
    Column('last_external_session_ref', String(255), nullable=True),
    Column('period_start', DateTime(timezone=True), nullable=True),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('past_due_since', DateTime(timezone=True), nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_tenant_subscriptions_status', 'status'),
    Index('idx_tenant_subscriptions_subscription_ref', 'external_subscription_ref'),
    # Sweep scans by (status, period_end)
    Index('idx_tenant_subscriptions_status_period_end', 'status', 'period_end'),
)


# Quota counters: one row per tenant per period
quota_counters = Table(
    'quota_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), ForeignKey('tenants.tenant_id'), nullable=False),
    Column('period_key', String(40), nullable=False),
    Column('events_created', Integer, nullable=False, server_default='0'),
    Column('invitations_sent', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('tenant_id', 'period_key', name='uq_quota_counters_tenant_period'),
    Index('idx_quota_counters_period_key', 'period_key'),
)


# Quota period cursor: advanced only by the scheduled rollover job
quota_periods = Table(
    'quota_periods',
    metadata,
    Column('cadence', String(20), primary_key=True),
    Column('period_key', String(16), nullable=False),
    Column('advanced_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)


# Processed webhook events (idempotency ledger)
processed_webhook_events = Table(
    'processed_webhook_events',
    metadata,
    Column('event_id', String(255), primary_key=True),
    Column('event_type', String(100), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('tenant_id', String(100), nullable=True),
    Column('processed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_processed_webhook_events_processed_at', 'processed_at'),
    Index('idx_processed_webhook_events_tenant', 'tenant_id'),
)


# Scheduled job runs
billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),  # success, failed
    Column('stats_json', Text, nullable=True),
)
