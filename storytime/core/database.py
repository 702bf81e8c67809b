"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine construction with connection pooling
- Session factory helpers
- The `users` table holding each user's entitlement record
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Text, Index
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def create_db_engine(database_url: Optional[str]) -> Engine:
    """
    Build a SQLAlchemy engine for the given URL.

    SQLite URLs (local development and tests) get a single shared
    connection so in-memory databases survive across sessions.
    """
    if not database_url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )


@contextmanager
def session_scope(session_factory: sessionmaker):
    """
    Context manager for database sessions.

    Usage:
        with session_scope(factory) as session:
            session.execute(...)

    Commits on success, rolls back on any exception.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """Return True when a trivial query succeeds."""
    try:
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception:
        return False


# Users table: one entitlement record per application user.
# Column names match the ones the frontend reads.
users = Table(
    'users',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('email', Text, nullable=True),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    Column('subscription_status', String(50), nullable=False, server_default='none'),
    Column('active_plan_price_id', String(100), nullable=True),
    Column('subscription_current_period_end', DateTime(timezone=True), nullable=True),
    Column('monthly_minutes_limit', Integer, nullable=True),
    Column('minutes_used_this_period', Integer, nullable=True, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Webhook handlers resolve users by Stripe customer id
    Index('idx_users_stripe_customer_id', 'stripe_customer_id'),
    Index('idx_users_subscription_status', 'subscription_status'),
)
