"""Database connection and session management."""

import logging
from typing import Any, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from deferred_completion.config import settings

logger = logging.getLogger(__name__)


def _make_engine(url: str) -> Engine:
    """Create an engine with pooling suited to the backend behind ``url``."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,  # Number of connections to maintain
        max_overflow=20,  # Maximum number of connections beyond pool_size
        echo=False,  # Set to True for SQL query logging in development
    )


engine = _make_engine(settings.database_url)

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)

# Base class for declarative models
Base = declarative_base()


def init_db(bind: Any = None) -> None:
    """Create all tables that do not exist yet.

    Alembic owns the schema in deployed environments; this is used by the
    worker in development and by the test suite.
    """
    import deferred_completion.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables initialized")


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database session.

    Yields:
        Session: SQLAlchemy database session

    Example:
        ```python
        from deferred_completion.database import get_db

        @app.get("/items")
        def get_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
        ```
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
