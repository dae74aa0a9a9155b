# backend/docchat/database.py
"""Database configuration and session management"""
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from docchat.config import settings
from docchat.utils.logging import logger

# Base class for models
Base = declarative_base()

_default_factory: Optional[sessionmaker] = None


def create_db_engine(database_url: str) -> Engine:
    """Create an engine for the given URL.

    SQLite needs check_same_thread=False because pipeline stages run
    repository calls from worker threads.
    """
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Define it in .env or the container environment.")

    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}

    backend_kind = "sqlite" if database_url.startswith("sqlite") else "postgres"
    logger.info("Database configuration loaded", extra={"backend": backend_kind})
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def create_session_factory(database_url: str) -> sessionmaker:
    """Build a session factory bound to a fresh engine."""
    engine = create_db_engine(database_url)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def get_session_factory() -> sessionmaker:
    """Return the process default session factory (built from settings on first use)."""
    global _default_factory
    if _default_factory is None:
        _default_factory = create_session_factory(settings.database_url)
    return _default_factory


def init_db(session_factory: Optional[sessionmaker] = None) -> None:
    """Initialize database - create all tables"""
    # Register every model with Base.metadata
    import docchat.db_models_documents  # noqa: F401
    import docchat.db_models_chat  # noqa: F401

    factory = session_factory or get_session_factory()
    logger.info("Initializing database...")
    Base.metadata.create_all(bind=factory.kw["bind"])
    logger.info("Database initialized successfully")
