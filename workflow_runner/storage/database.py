"""Database connection and session management."""

import os
from typing import Callable, Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Global engine and session factory
_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None

# Base class for all database models
Base = declarative_base()

SessionFactory = Callable[[], Session]


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create database engine with configuration."""
    global _engine

    if _engine is None:
        if database_url is None:
            database_url = os.getenv("WORKFLOW_RUNNER_DATABASE_URL", "sqlite:///./workflow_runner.db")
        _engine = build_engine(database_url, echo=echo, connect_args=connect_args)

    return _engine


def build_engine(database_url: str, echo: bool = False, connect_args: Optional[dict] = None) -> Engine:
    """Create a new engine. SQLite engines share one connection across threads."""
    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {}

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        pool_pre_ping=True
    )


def init_database(database_url: str, echo: bool = False) -> sessionmaker:
    """Replace the global engine, create all tables and return the session factory."""
    global _engine, _session_factory
    reset_database_engine()
    _engine = build_engine(database_url, echo=echo)
    _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    create_tables()
    return _session_factory


def reset_database_engine():
    """Reset the global database engine (mainly for testing)."""
    global _engine, _session_factory
    if _engine:
        _engine.dispose()
    _engine = None
    _session_factory = None


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    from . import models  # noqa: F401  registers tables on Base.metadata
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine or get_database_engine())
