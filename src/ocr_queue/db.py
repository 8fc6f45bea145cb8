"""
Database engine and session management.

The queue talks to the database from a handful of poller threads, so it uses
a plain synchronous engine with a connection pool and one short transaction
per repository call. PostgreSQL is the production target (the claim relies on
``FOR UPDATE SKIP LOCKED``); SQLite is accepted for local runs and tests.
"""

from __future__ import annotations

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from common.config import Settings
from .models import Base


def create_db_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Build an engine suited to the URL's backend."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            # A single shared connection, or every checkout gets an empty DB
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)

    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,  # detect stale connections before use
        pool_recycle=3600,
    )


def create_engine_from_settings(settings: Settings) -> Engine:
    return create_db_engine(settings.DATABASE_URL)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    # expire_on_commit=False keeps returned rows readable after the transaction
    return sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


def init_schema(engine: Engine) -> None:
    """Create any missing tables (idempotent)."""
    Base.metadata.create_all(engine)

