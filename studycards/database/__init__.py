"""Database package for StudyCards."""

from .models import (
    Base,
    FlashcardProgress,
)
from .connection import (
    init_database,
    create_db_engine,
    get_db,
    get_db_dependency,
    SessionLocal,
    engine,
)

__all__ = [
    "Base",
    "FlashcardProgress",
    "init_database",
    "create_db_engine",
    "get_db",
    "get_db_dependency",
    "SessionLocal",
    "engine",
]
