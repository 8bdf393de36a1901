"""SQLAlchemy models for StudyCards.

One row per (user, card identity) holds the SM-2 scheduling state for that
card. The deck fingerprint the card was last reviewed under is kept as
metadata in `content_hash`; it is not part of the key.

Rows are created lazily on a card's first review. A user never sees
another user's rows.
"""

import uuid
from sqlalchemy import (
    Column,
    String,
    Integer,
    Float,
    DateTime,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from ..services.spaced_repetition import (
    DEFAULT_EASE_FACTOR,
    ReviewState,
    utcnow,
)

Base = declarative_base()


def generate_uuid() -> str:
    """Generate a UUID string for primary keys."""
    return str(uuid.uuid4())


class FlashcardProgress(Base):
    """Spaced repetition progress for one card of one user."""

    __tablename__ = "flashcard_progress"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(50), nullable=False, index=True)
    flashcard_id = Column(String(100), nullable=False)  # Card identity

    # Fingerprint of the deck this card was last reviewed in
    content_hash = Column(String(64), nullable=False)

    # SM-2 fields
    ease_factor = Column(Float, nullable=False, default=DEFAULT_EASE_FACTOR)
    interval_days = Column(Integer, nullable=False, default=0)
    repetitions = Column(Integer, nullable=False, default=0)
    last_reviewed_at = Column(DateTime, nullable=True)
    next_review_at = Column(DateTime, nullable=False, default=utcnow)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)  # set from the review clock by apply_state

    __table_args__ = (
        UniqueConstraint("user_id", "flashcard_id", name="uq_progress_user_card"),
        Index("ix_progress_user_hash", "user_id", "content_hash"),
    )

    def to_state(self) -> ReviewState:
        """Snapshot this row as an immutable ReviewState."""
        return ReviewState(
            repetitions=self.repetitions,
            ease_factor=self.ease_factor,
            interval_days=self.interval_days,
            next_review_at=self.next_review_at,
            last_reviewed_at=self.last_reviewed_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def apply_state(self, state: ReviewState) -> None:
        """Copy scheduling fields from a ReviewState onto this row."""
        self.repetitions = state.repetitions
        self.ease_factor = state.ease_factor
        self.interval_days = state.interval_days
        self.next_review_at = state.next_review_at
        self.last_reviewed_at = state.last_reviewed_at
        self.updated_at = state.updated_at or utcnow()
