"""
Database configuration and session management.
Uses SQLAlchemy 2.x. Engines are built explicitly by the service container
at process start instead of at import time.
"""

from typing import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ussd_wallet.logging_config import get_logger

logger = get_logger(__name__)

# SQLAlchemy Base for ORM models
Base = declarative_base()


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create a sync engine for the given URL.

    In-memory SQLite (used by the test suite) shares a single connection
    so every session sees the same database.

    Args:
        database_url: SQLAlchemy connection URL
        echo: Log emitted SQL

    Returns:
        SQLAlchemy Engine
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        echo=echo,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    """Create the session factory bound to an engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Yield a session and close it afterwards.

    Writers commit explicitly after every status change, so this only
    rolls back what an exception left uncommitted.

    Yields:
        SQLAlchemy Session
    """
    db = session_factory()
    try:
        logger.debug("database_session_created")
        yield db
    except Exception as e:
        db.rollback()
        logger.error("database_session_error", error=str(e), exc_info=True)
        raise
    finally:
        db.close()
        logger.debug("database_session_closed")
