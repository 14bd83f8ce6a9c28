"""Database connection and session management."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from payrecon.core.config import settings


def build_engine(url: str, timeout_seconds: float) -> Engine:
    """Create an engine whose connections give up after ``timeout_seconds``."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
        )
    return create_engine(url, echo=False, pool_timeout=timeout_seconds)


engine = build_engine(settings.database_url, settings.store_timeout_seconds)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def get_db():
    """Dependency that provides a database session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
