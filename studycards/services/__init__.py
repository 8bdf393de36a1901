"""Services package for StudyCards.

Pure scheduling and identity helpers are re-exported here. The progress
store lives in `services.progress_store` and is imported from there
directly, since it depends on the database package.
"""

from .content_identity import (
    Card,
    Deck,
    build_deck,
    card_identity,
    fingerprint,
    normalize_cards,
)
from .spaced_repetition import (
    RetentionBucket,
    ReviewState,
    get_bucket,
    is_due,
    quality_from_button,
    quality_from_response,
    schedule,
)

__all__ = [
    "Card",
    "Deck",
    "build_deck",
    "card_identity",
    "fingerprint",
    "normalize_cards",
    "RetentionBucket",
    "ReviewState",
    "get_bucket",
    "is_due",
    "quality_from_button",
    "quality_from_response",
    "schedule",
]
