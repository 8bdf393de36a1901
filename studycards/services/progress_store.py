"""Per-user flashcard progress: storage and study-session orchestration.

`ProgressStore` is the persistence boundary. Implementations:
- SqlAlchemyProgressStore: durable rows in the `flashcard_progress` table
- InMemoryProgressStore: process-local dict, for development and tests

`ProgressTracker` sits on top of a store (passed in, never global) and
wires the pure scheduler to it:

    tracker = ProgressTracker(SqlAlchemyProgressStore(db))
    deck = build_deck(generated_cards)
    cards = await tracker.reconcile(user_id, deck)
    state = await tracker.record_review(user_id, deck.card_ids[0], deck.content_hash, 4)

Rows are keyed by (user_id, card identity). Concurrent writes to the same
row are last-write-wins.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..database.models import FlashcardProgress, generate_uuid
from ..errors import InvalidArgument, StorageUnavailable
from .content_identity import Deck
from .spaced_repetition import (
    RetentionBucket,
    ReviewState,
    get_bucket,
    is_due,
    review_priority,
    schedule,
    utcnow,
    validate_quality,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredProgress:
    """A persisted ReviewState plus the fingerprint it was recorded under."""

    card_id: str
    content_hash: str
    state: ReviewState


@dataclass(frozen=True)
class CardProgress:
    """Progress view of one card in a live deck."""

    card_id: str
    ordinal: int
    state: Optional[ReviewState]
    bucket: RetentionBucket
    due: bool

    def to_dict(self) -> dict:
        return {
            "card_id": self.card_id,
            "ordinal": self.ordinal,
            "bucket": self.bucket.value,
            "due": self.due,
            "state": self.state.to_dict() if self.state else None,
        }


class ProgressStore(ABC):
    """Persistence boundary for review states.

    Every method raises StorageUnavailable when the backend fails.
    """

    @abstractmethod
    async def fetch_many(
        self, user_id: str, card_ids: Iterable[str]
    ) -> dict[str, StoredProgress]:
        """Load stored progress for many cards in one round trip.

        Cards with no row are simply missing from the result.
        """

    @abstractmethod
    async def fetch(self, user_id: str, card_id: str) -> Optional[StoredProgress]:
        """Load stored progress for a single card."""

    @abstractmethod
    async def save(
        self,
        user_id: str,
        card_id: str,
        content_hash: str,
        state: ReviewState,
    ) -> ReviewState:
        """Upsert the state for (user_id, card_id) and return what was stored."""

    @abstractmethod
    async def delete_by_content_hash(self, user_id: str, content_hash: str) -> int:
        """Delete a user's rows recorded under a deck fingerprint."""


class SqlAlchemyProgressStore(ProgressStore):
    """Progress store backed by a SQLAlchemy session.

    Session work is blocking, so each call runs on the event loop's default
    executor. One store wraps one session; do not share it across requests.
    """

    def __init__(self, db: Session):
        self.db = db

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._guarded, func, *args)

    def _guarded(self, func, *args):
        try:
            return func(*args)
        except SQLAlchemyError as e:
            logger.error(f"Progress store failure in {func.__name__}: {e}")
            try:
                self.db.rollback()
            except SQLAlchemyError:
                logger.exception("Rollback after store failure also failed")
            raise StorageUnavailable("Progress storage is unavailable") from e

    def _query(self, user_id: str):
        return self.db.query(FlashcardProgress).filter(
            FlashcardProgress.user_id == user_id
        )

    @staticmethod
    def _to_stored(row: FlashcardProgress) -> StoredProgress:
        return StoredProgress(
            card_id=row.flashcard_id,
            content_hash=row.content_hash,
            state=row.to_state(),
        )

    def _fetch_many_sync(self, user_id: str, card_ids: list[str]) -> dict[str, StoredProgress]:
        rows = self._query(user_id).filter(
            FlashcardProgress.flashcard_id.in_(card_ids)
        ).all()
        return {row.flashcard_id: self._to_stored(row) for row in rows}

    def _fetch_sync(self, user_id: str, card_id: str) -> Optional[StoredProgress]:
        row = self._query(user_id).filter(
            FlashcardProgress.flashcard_id == card_id
        ).first()
        return self._to_stored(row) if row else None

    def _save_sync(
        self,
        user_id: str,
        card_id: str,
        content_hash: str,
        state: ReviewState,
    ) -> ReviewState:
        row = self._query(user_id).filter(
            FlashcardProgress.flashcard_id == card_id
        ).first()

        if row is None:
            row = FlashcardProgress(
                id=generate_uuid(),
                user_id=user_id,
                flashcard_id=card_id,
                content_hash=content_hash,
                created_at=state.created_at or utcnow(),
            )
            row.apply_state(state)
            self.db.add(row)
        else:
            row.content_hash = content_hash
            row.apply_state(state)

        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent first review inserted the row; overwrite it
            self.db.rollback()
            row = self._query(user_id).filter(
                FlashcardProgress.flashcard_id == card_id
            ).one()
            row.content_hash = content_hash
            row.apply_state(state)
            self.db.commit()

        self.db.refresh(row)
        return row.to_state()

    def _delete_sync(self, user_id: str, content_hash: str) -> int:
        deleted = self._query(user_id).filter(
            FlashcardProgress.content_hash == content_hash
        ).delete(synchronize_session=False)
        self.db.commit()
        return deleted

    async def fetch_many(self, user_id, card_ids):
        card_ids = list(dict.fromkeys(card_ids))
        if not card_ids:
            return {}
        return await self._run(self._fetch_many_sync, user_id, card_ids)

    async def fetch(self, user_id, card_id):
        return await self._run(self._fetch_sync, user_id, card_id)

    async def save(self, user_id, card_id, content_hash, state):
        return await self._run(self._save_sync, user_id, card_id, content_hash, state)

    async def delete_by_content_hash(self, user_id, content_hash):
        return await self._run(self._delete_sync, user_id, content_hash)


class InMemoryProgressStore(ProgressStore):
    """Dict-backed store. Data is lost when the process exits."""

    def __init__(self):
        self._rows: dict[tuple[str, str], StoredProgress] = {}

    async def fetch_many(self, user_id, card_ids):
        found = {}
        for card_id in card_ids:
            stored = self._rows.get((user_id, card_id))
            if stored:
                found[card_id] = stored
        return found

    async def fetch(self, user_id, card_id):
        return self._rows.get((user_id, card_id))

    async def save(self, user_id, card_id, content_hash, state):
        existing = self._rows.get((user_id, card_id))
        if existing and existing.state.created_at:
            state = replace(state, created_at=existing.state.created_at)
        self._rows[(user_id, card_id)] = StoredProgress(card_id, content_hash, state)
        return state

    async def delete_by_content_hash(self, user_id, content_hash):
        doomed = [
            key for key, stored in self._rows.items()
            if key[0] == user_id and stored.content_hash == content_hash
        ]
        for key in doomed:
            del self._rows[key]
        return len(doomed)


def summarize(cards: list[CardProgress]) -> dict:
    """Count a reconciled deck's cards per bucket, plus total and due."""
    counts = {bucket.value: 0 for bucket in RetentionBucket}
    for card in cards:
        counts[card.bucket.value] += 1
    return {
        "total": len(cards),
        "due": sum(1 for c in cards if c.due),
        **counts,
    }


def _require_text(value, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidArgument(f"{name} must be a non-empty string")
    return value


class ProgressTracker:
    """Connects the SM-2 scheduler to a progress store for one service.

    Args:
        store: Where review states are persisted
        clock: Returns the current naive-UTC time; injectable for tests
        reuse_stale_history: Whether a row recorded under a different deck
            fingerprint still counts as the card's history. When False
            (default) such rows are treated as absent and the next review
            starts the card over, overwriting the row.
    """

    def __init__(
        self,
        store: ProgressStore,
        clock: Callable[[], datetime] = utcnow,
        reuse_stale_history: bool = False,
    ):
        self.store = store
        self.clock = clock
        self.reuse_stale_history = reuse_stale_history

    def _visible(
        self, stored: Optional[StoredProgress], content_hash: Optional[str]
    ) -> Optional[ReviewState]:
        if stored is None:
            return None
        if content_hash is None or self.reuse_stale_history:
            return stored.state
        if stored.content_hash != content_hash:
            return None
        return stored.state

    async def load_states(
        self,
        user_id: str,
        card_ids: Iterable[str],
        content_hash: Optional[str] = None,
    ) -> dict[str, ReviewState]:
        """Load review states for a set of cards with a single bulk fetch.

        Cards without a (visible) row are absent from the result; callers
        treat them as new. Passing `content_hash` hides rows recorded under
        another deck fingerprint unless `reuse_stale_history` is set.
        """
        _require_text(user_id, "user_id")
        if card_ids is None:
            raise InvalidArgument("card_ids must not be None")

        stored = await self.store.fetch_many(user_id, card_ids)
        states = {}
        for card_id, progress in stored.items():
            state = self._visible(progress, content_hash)
            if state is not None:
                states[card_id] = state
        return states

    async def record_review(
        self,
        user_id: str,
        card_id: str,
        content_hash: str,
        quality: int,
    ) -> ReviewState:
        """Schedule a card from its stored state and persist the result.

        Either the new state is stored and returned, or an error is raised;
        nothing is computed if the prior state could not be loaded.

        Raises:
            InvalidArgument: bad quality or identifiers (before any I/O)
            StorageUnavailable: the store failed to load or save
        """
        validate_quality(quality)
        _require_text(user_id, "user_id")
        _require_text(card_id, "card_id")
        _require_text(content_hash, "content_hash")

        stored = await self.store.fetch(user_id, card_id)
        prior = self._visible(stored, content_hash)
        if stored is not None and prior is None:
            logger.info(
                f"Card {card_id} for user {user_id} was last reviewed under "
                f"deck {stored.content_hash}; starting over for {content_hash}"
            )

        new_state = schedule(prior, quality, now=self.clock())
        saved = await self.store.save(user_id, card_id, content_hash, new_state)

        logger.debug(
            f"Recorded review user={user_id} card={card_id} quality={quality} "
            f"interval={saved.interval_days} bucket={get_bucket(saved).value}"
        )
        return saved

    @staticmethod
    def get_bucket(state: Optional[ReviewState]) -> RetentionBucket:
        return get_bucket(state)

    async def reconcile(self, user_id: str, deck: Deck) -> list[CardProgress]:
        """Progress for every card of a live deck, in deck order.

        Stored rows for cards no longer in the deck are ignored.
        """
        states = await self.load_states(user_id, deck.card_ids, deck.content_hash)
        now = self.clock()
        return [
            CardProgress(
                card_id=card_id,
                ordinal=ordinal,
                state=states.get(card_id),
                bucket=get_bucket(states.get(card_id)),
                due=is_due(states.get(card_id), now),
            )
            for ordinal, card_id in enumerate(deck.card_ids)
        ]

    async def due_cards(
        self,
        user_id: str,
        deck: Deck,
        limit: Optional[int] = None,
    ) -> list[CardProgress]:
        """Cards of the deck due for review, highest priority first."""
        if limit is not None and limit < 1:
            raise InvalidArgument("limit must be positive")

        now = self.clock()
        due = [c for c in await self.reconcile(user_id, deck) if c.due]
        due.sort(key=lambda c: review_priority(c.state, now))
        return due[:limit] if limit else due

    async def summary(self, user_id: str, deck: Deck) -> dict:
        """Bucket counts for a deck."""
        return summarize(await self.reconcile(user_id, deck))

    async def forget_deck(self, user_id: str, content_hash: str) -> int:
        """Delete the user's progress recorded under a deck fingerprint."""
        _require_text(user_id, "user_id")
        _require_text(content_hash, "content_hash")
        deleted = await self.store.delete_by_content_hash(user_id, content_hash)
        logger.info(f"Deleted {deleted} progress row(s) for user {user_id} deck {content_hash}")
        return deleted
