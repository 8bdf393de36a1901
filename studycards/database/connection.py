"""Database connection and session management."""

import logging
import os
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .models import Base

logger = logging.getLogger(__name__)

# Database configuration priority:
# 1. PostgreSQL (POSTGRES_URL or DATABASE_URL)
# 2. Local SQLite file (for development)
DATABASE_URL = os.environ.get("POSTGRES_URL") or os.environ.get("DATABASE_URL")

if DATABASE_URL:
    # Fix URL scheme for SQLAlchemy 2.0 (Vercel/Heroku use postgres://)
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)
else:
    DB_PATH = Path(__file__).parent.parent.parent / "studycards.db"
    DATABASE_URL = f"sqlite:///{DB_PATH}"


def create_db_engine(url: str):
    """Create an engine with settings appropriate to the backend."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


engine = create_db_engine(DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_database(bind=None):
    """Create all tables if they don't exist."""
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    where = bind.url.render_as_string(hide_password=True).split("@")[-1]
    logger.info(f"Database tables created/verified ({where})")


@contextmanager
def get_db():
    """Context manager for database sessions.

    Usage:
        with get_db() as db:
            rows = db.query(FlashcardProgress).filter_by(user_id="u1").all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_dependency():
    """FastAPI dependency for database sessions.

    Usage in FastAPI:
        @app.get("/api/something")
        def something(db: Session = Depends(get_db_dependency)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
