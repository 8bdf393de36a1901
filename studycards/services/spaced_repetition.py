"""SM-2 Spaced Repetition scheduling.

The SM-2 algorithm (SuperMemo 2) schedules each card's next review from how
well the learner recalled it.

Key concepts:
- Quality (0-5): User's self-assessment of how well they knew the answer
- Ease Factor: How easy the card is for this user (min 1.3, default 2.5)
- Interval: Days until next review
- Repetitions: Consecutive successful reviews

Quality ratings:
- 0: Complete blackout, no recall
- 1: Incorrect, but remembered upon seeing answer
- 2: Incorrect, but answer seemed easy to recall
- 3: Correct with serious difficulty
- 4: Correct after hesitation
- 5: Perfect response, instant recall

This variant is lenient on failure: a failed review resets repetitions and
brings the card back tomorrow, but leaves the ease factor alone.
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from ..errors import InvalidArgument

DEFAULT_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3
PASSING_QUALITY = 3
MASTERED_INTERVAL_DAYS = 21


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RetentionBucket(str, Enum):
    """Display label derived from a card's review state."""

    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    MASTERED = "mastered"


@dataclass(frozen=True)
class ReviewState:
    """Scheduling state for one card of one user."""

    repetitions: int = 0
    ease_factor: float = DEFAULT_EASE_FACTOR
    interval_days: int = 0
    next_review_at: Optional[datetime] = None
    last_reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "repetitions": self.repetitions,
            "ease_factor": self.ease_factor,
            "interval_days": self.interval_days,
            "next_review_at": _isoformat(self.next_review_at),
            "last_reviewed_at": _isoformat(self.last_reviewed_at),
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def validate_quality(quality) -> int:
    """Return `quality` if it is an integer in 0-5, else raise InvalidArgument."""
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidArgument(f"Quality must be an integer, got {quality!r}")
    if not 0 <= quality <= 5:
        raise InvalidArgument(f"Quality must be 0-5, got {quality}")
    return quality


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def schedule(
    state: Optional[ReviewState],
    quality: int,
    now: Optional[datetime] = None,
) -> ReviewState:
    """Compute the next review state using the SM-2 algorithm.

    Args:
        state: Current state, or None for a card never reviewed
        quality: User's self-assessment (0-5)
        now: Review time (defaults to the current UTC time)

    Returns:
        A new ReviewState; the input is never modified

    Raises:
        InvalidArgument: if quality is not an integer in 0-5
    """
    quality = validate_quality(quality)
    if now is None:
        now = utcnow()
    if state is None:
        state = ReviewState()

    ease_factor = state.ease_factor

    if quality < PASSING_QUALITY:
        # Failed review - reset to beginning, ease untouched
        repetitions = 0
        interval = 1
    else:
        repetitions = state.repetitions + 1

        if repetitions == 1:
            interval = 1  # First success: review tomorrow
        elif repetitions == 2:
            interval = 6  # Second success: review in 6 days
        else:
            interval = _round_half_up(state.interval_days * ease_factor)

        # Formula: EF' = EF + (0.1 - (5-q) * (0.08 + (5-q) * 0.02))
        ease_factor = ease_factor + (
            0.1 - (5 - quality) * (0.08 + (5 - quality) * 0.02)
        )
        ease_factor = max(MIN_EASE_FACTOR, round(ease_factor, 2))

    return replace(
        state,
        repetitions=repetitions,
        ease_factor=ease_factor,
        interval_days=interval,
        last_reviewed_at=now,
        next_review_at=now + timedelta(days=interval),
        created_at=state.created_at or now,
        updated_at=now,
    )


def get_bucket(state: Optional[ReviewState]) -> RetentionBucket:
    """Classify a state into new / learning / review / mastered."""
    if state is None or (state.repetitions == 0 and state.last_reviewed_at is None):
        return RetentionBucket.NEW
    if state.interval_days >= MASTERED_INTERVAL_DAYS:
        return RetentionBucket.MASTERED
    if state.repetitions < 2:
        return RetentionBucket.LEARNING
    return RetentionBucket.REVIEW


def is_due(state: Optional[ReviewState], now: Optional[datetime] = None) -> bool:
    """New cards are always due; others once next_review_at has passed."""
    if state is None or state.next_review_at is None:
        return True
    if now is None:
        now = utcnow()
    return now >= state.next_review_at


def review_priority(state: Optional[ReviewState], now: datetime) -> tuple:
    """Sort key for the review queue (lower sorts first).

    Priority order:
    1. New cards (never reviewed)
    2. Overdue cards, most overdue first
    3. Cards with lower ease factors (struggling cards)
    """
    if state is None or state.next_review_at is None:
        return (0, 0.0, DEFAULT_EASE_FACTOR)
    overdue_seconds = (now - state.next_review_at).total_seconds()
    return (1, -overdue_seconds, state.ease_factor)


BUTTON_QUALITY = {
    "again": 0,
    "hard": 2,
    "good": 3,
    "easy": 5,
    # Binary know / don't-know study mode
    "unknown": 1,
    "known": 4,
}


def quality_from_button(button: str) -> int:
    """Convert a review button to an SM-2 quality rating.

    Raises:
        InvalidArgument: for a button name that has no mapping
    """
    key = button.strip().lower() if isinstance(button, str) else button
    if key not in BUTTON_QUALITY:
        raise InvalidArgument(f"Unknown review button: {button!r}")
    return BUTTON_QUALITY[key]


def quality_from_response(response_time_ms: float, is_correct: bool) -> int:
    """Infer quality from answer correctness and how long the user took.

    Quick wrong answers (under 2s) count as "recognized once shown" (1),
    slow wrong answers as a blackout (0). Correct answers grade 5/4/3 by
    speed.
    """
    if response_time_ms is None or response_time_ms < 0:
        raise InvalidArgument("response_time_ms must be a non-negative number")

    if not is_correct:
        return 1 if response_time_ms < 2000 else 0
    if response_time_ms < 1500:
        return 5
    if response_time_ms < 3000:
        return 4
    return 3
