"""Database connection and session management."""

import os
from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///./bizflow.db"

# Global engine, created lazily
_engine: Optional[Engine] = None

# Base class for all database models
Base = declarative_base()


def build_engine(database_url: str, echo: bool = False, connect_args: Optional[dict] = None) -> Engine:
    """Create a SQLAlchemy engine with settings suited to the backend."""
    if connect_args is None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}

    if database_url.startswith("sqlite") and (":memory:" in database_url or database_url == "sqlite://"):
        # One shared connection keeps an in-memory database alive across sessions
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(database_url, echo=echo, connect_args=connect_args, pool_pre_ping=True)


def get_database_engine(database_url: Optional[str] = None,
                        echo: bool = False,
                        connect_args: Optional[dict] = None) -> Engine:
    """Get or create the global database engine used when no engine is passed."""
    global _engine

    if _engine is None:
        if database_url is None:
            database_url = os.getenv("BIZFLOW_DATABASE_URL", DEFAULT_DATABASE_URL)
        _engine = build_engine(database_url, echo=echo, connect_args=connect_args)

    return _engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory for an explicit engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Optional[Engine] = None):
    """Create all database tables."""
    # Importing models registers the tables on Base.metadata
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine or get_database_engine())


def drop_tables(engine: Optional[Engine] = None):
    """Drop all database tables."""
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine or get_database_engine())
