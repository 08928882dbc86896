"""Engine, session factory and the FastAPI database dependency"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from socialbridge.core.config import settings
from socialbridge.models.base import Base


def build_engine(url: str = settings.DATABASE_URL) -> Engine:
    """Postgres in deployment; SQLite for local runs and tests"""
    if url.startswith("sqlite"):
        # The refresh loop and request handlers share connections across threads
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, pool_recycle=3600)


engine = build_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory=SessionLocal) -> Iterator[Session]:
    """Short-lived session for service code; rolled back if the block raises"""
    db = session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """Create any missing tables for the registered models"""
    import socialbridge.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
