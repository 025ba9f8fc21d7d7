"""
Database engine, session factory and declarative base
"""
import logging
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    """Driver-specific engine options, including the store timeout budget"""
    if url.startswith("sqlite"):
        options = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": settings.STORE_TIMEOUT_SECONDS,
            }
        }
        # In-memory databases live as long as their single connection
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return options

    timeout_ms = settings.STORE_TIMEOUT_SECONDS * 1000
    return {
        "pool_pre_ping": True,
        "pool_timeout": settings.STORE_TIMEOUT_SECONDS,
        "connect_args": {"options": f"-c statement_timeout={timeout_ms}"},
    }


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


class Base(DeclarativeBase):
    pass


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding one session per request"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create all tables that do not exist yet"""
    # Register models on the metadata before creating tables
    import app.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")
