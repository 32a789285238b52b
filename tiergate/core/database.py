"""
SQL persistence for the gating service.

Tables hold the per-period usage counters, mirrored tier assignments,
upgrade prompt interactions and prompt opt-outs. The engine is
process-global; init_engine() may be called again with another URL (tests
point it at a temp SQLite file).
"""
from contextlib import contextmanager
from typing import Optional
import logging
import os

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql import func

from tiergate.core.config import settings

logger = logging.getLogger("tiergate")

metadata = MetaData()

_POOL_OPTIONS = {
    "poolclass": QueuePool,
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
}

_engine = None
_SessionLocal = None


def get_database_url(settings_obj=None) -> Optional[str]:
    """TEST_DATABASE_URL (env first, then settings) wins over DATABASE_URL."""
    cfg = settings_obj or settings
    return os.getenv("TEST_DATABASE_URL") or cfg.TEST_DATABASE_URL or cfg.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured")

    # Sessions cross FastAPI threadpool workers
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}

    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, connect_args=connect_args, **_POOL_OPTIONS)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False)
    return _engine


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """Session scoped to one unit of work: commit on success, rollback on error."""
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    metadata.create_all(bind=get_engine())


def drop_all_tables():
    metadata.drop_all(bind=get_engine())


def reset_database():
    """Drop and recreate every table. Tests only."""
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as exc:
        logger.warning("database.unreachable: %s", exc)
        return False


# Written by the metered services; limit_reached_at anchors the grace period
usage_counters = Table(
    "usage_counters",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(100), nullable=False),
    Column("usage_type", String(100), nullable=False),
    Column("period_start", DateTime(timezone=True), nullable=False),
    Column("count", Integer, nullable=False, server_default="0"),
    Column("limit_reached_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint("user_id", "usage_type", "period_start", name="uq_usage_counters_period"),
    Index("idx_usage_counters_user_type", "user_id", "usage_type"),
)

# Tier facts mirrored from the identity/billing provider
user_tiers = Table(
    "user_tiers",
    metadata,
    Column("user_id", String(100), primary_key=True),
    Column("tier", String(50), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

# One row per prompt shown
prompt_interactions = Table(
    "prompt_interactions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(100), nullable=False),
    Column("trigger_type", String(100), nullable=False),
    Column("variant_id", String(100), nullable=False),
    Column("user_tier", String(50), nullable=True),
    Column("shown_at", DateTime(timezone=True), nullable=False),
    Column("outcome", String(20), nullable=True),
    Column("resolved_at", DateTime(timezone=True), nullable=True),
    Column("snooze_until", DateTime(timezone=True), nullable=True),
    Index("idx_prompt_interactions_user_trigger", "user_id", "trigger_type", "shown_at"),
)

# Latest interaction per (user, trigger); compare-and-set target so a trigger
# has at most one prompt in flight
prompt_trigger_state = Table(
    "prompt_trigger_state",
    metadata,
    Column("user_id", String(100), nullable=False),
    Column("trigger_type", String(100), nullable=False),
    Column("latest_interaction_id", String(64), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("user_id", "trigger_type", name="pk_prompt_trigger_state"),
)

# Per-user prompt opt-out; NULL disabled_until means until re-enabled
prompt_opt_outs = Table(
    "prompt_opt_outs",
    metadata,
    Column("user_id", String(100), primary_key=True),
    Column("disabled_at", DateTime(timezone=True), nullable=False),
    Column("disabled_until", DateTime(timezone=True), nullable=True),
    Column("reason", String(500), nullable=True),
)
