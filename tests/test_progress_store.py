"""Tests for the progress stores and the ProgressTracker orchestration."""

import asyncio

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from studycards.database.models import Base, FlashcardProgress
from studycards.errors import InvalidArgument, StorageUnavailable
from studycards.services.content_identity import build_deck
from studycards.services.progress_store import (
    InMemoryProgressStore,
    ProgressTracker,
    SqlAlchemyProgressStore,
)
from studycards.services.spaced_repetition import RetentionBucket

HASH_A = "aaaaaaaaaaaaaaaa"
HASH_B = "bbbbbbbbbbbbbbbb"


class RecordingStore(InMemoryProgressStore):
    """In-memory store that counts calls and can be switched off."""

    def __init__(self, fail_on=()):
        super().__init__()
        self.calls = []
        self.fail_on = set(fail_on)

    def _called(self, name):
        self.calls.append(name)
        if name in self.fail_on:
            raise StorageUnavailable(f"{name} failed")

    async def fetch_many(self, user_id, card_ids):
        self._called("fetch_many")
        return await super().fetch_many(user_id, card_ids)

    async def fetch(self, user_id, card_id):
        self._called("fetch")
        return await super().fetch(user_id, card_id)

    async def save(self, user_id, card_id, content_hash, state):
        self._called("save")
        return await super().save(user_id, card_id, content_hash, state)


@pytest.fixture(params=["sqlalchemy", "memory"])
def store(request, db_session):
    if request.param == "sqlalchemy":
        return SqlAlchemyProgressStore(db_session)
    return InMemoryProgressStore()


@pytest.fixture
def tracker(store, clock):
    return ProgressTracker(store, clock=clock)


def test_load_states_does_not_fabricate_rows(tracker):
    states = asyncio.run(tracker.load_states("u1", ["card-0-x", "card-1-y"]))
    assert states == {}


def test_record_review_creates_and_updates_state(tracker, clock):
    first = asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 5))
    assert (first.repetitions, first.interval_days) == (1, 1)
    assert first.last_reviewed_at == clock.now

    clock.advance(days=1)
    second = asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 5))
    assert (second.repetitions, second.interval_days) == (2, 6)
    assert second.ease_factor == pytest.approx(2.7)

    states = asyncio.run(tracker.load_states("u1", ["card-0-x"]))
    assert states["card-0-x"] == second


def test_record_review_scenario_through_store(tracker, clock):
    intervals = []
    for quality in [5, 5, 4, 2, 5]:
        intervals.append(
            asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, quality)).interval_days
        )
        clock.advance(days=1)

    assert intervals == [1, 6, 16, 1, 1]


def test_users_are_isolated(tracker):
    asyncio.run(tracker.record_review("alice", "card-0-x", HASH_A, 5))

    assert asyncio.run(tracker.load_states("bob", ["card-0-x"])) == {}


def test_stale_fingerprint_starts_card_over(tracker, clock):
    asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 5))
    clock.advance(days=1)

    state = asyncio.run(tracker.record_review("u1", "card-0-x", HASH_B, 5))

    assert state.repetitions == 1
    assert state.interval_days == 1


def test_stale_fingerprint_hidden_from_scoped_loads(tracker):
    asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 5))

    assert asyncio.run(tracker.load_states("u1", ["card-0-x"], HASH_B)) == {}
    assert "card-0-x" in asyncio.run(tracker.load_states("u1", ["card-0-x"], HASH_A))


def test_reuse_stale_history_continues_progress(store, clock):
    tracker = ProgressTracker(store, clock=clock, reuse_stale_history=True)
    asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 5))
    clock.advance(days=1)

    state = asyncio.run(tracker.record_review("u1", "card-0-x", HASH_B, 5))

    assert state.repetitions == 2
    assert state.interval_days == 6


def test_upsert_keeps_one_row_per_user_and_card(db_session, clock):
    tracker = ProgressTracker(SqlAlchemyProgressStore(db_session), clock=clock)

    asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 4))
    asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 4))
    asyncio.run(tracker.record_review("u1", "card-0-x", HASH_B, 2))

    rows = db_session.query(FlashcardProgress).filter_by(user_id="u1").all()
    assert len(rows) == 1
    assert rows[0].content_hash == HASH_B
    assert rows[0].repetitions == 0


def test_updated_at_follows_review_clock(db_session, clock):
    """Two reviews in the same instant keep the injected time, not wall-clock time."""
    tracker = ProgressTracker(SqlAlchemyProgressStore(db_session), clock=clock)

    asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 4))
    state = asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 4))

    row = db_session.query(FlashcardProgress).filter_by(user_id="u1").one()
    assert row.updated_at == clock.now
    assert state.updated_at == clock.now


def test_concurrent_first_review_overwrites_inserted_row(tmp_path, clock):
    """Another writer inserts the row between our lookup and our commit."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'progress.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    make_session = sessionmaker(bind=engine)
    session = make_session()

    def insert_from_other_writer(flushing, flush_context, instances):
        with make_session() as other:
            other.add(
                FlashcardProgress(
                    user_id="u1",
                    flashcard_id="card-0-x",
                    content_hash=HASH_B,
                    repetitions=5,
                    interval_days=30,
                    ease_factor=2.5,
                    next_review_at=clock.now,
                    last_reviewed_at=clock.now,
                )
            )
            other.commit()

    event.listen(session, "before_flush", insert_from_other_writer, once=True)
    tracker = ProgressTracker(SqlAlchemyProgressStore(session), clock=clock)

    try:
        state = asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 4))

        assert (state.repetitions, state.interval_days) == (1, 1)
        with make_session() as check:
            rows = check.query(FlashcardProgress).filter_by(user_id="u1").all()
        assert len(rows) == 1
        assert rows[0].content_hash == HASH_A
        assert (rows[0].repetitions, rows[0].interval_days) == (1, 1)
        assert rows[0].updated_at == clock.now
    finally:
        session.close()
        engine.dispose()


def test_invalid_quality_refused_before_io(clock):
    store = RecordingStore()
    tracker = ProgressTracker(store, clock=clock)

    with pytest.raises(InvalidArgument):
        asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 6))
    assert store.calls == []


@pytest.mark.parametrize(
    "user_id, card_id, content_hash",
    [("", "card-0-x", HASH_A), ("u1", None, HASH_A), ("u1", "card-0-x", "")],
)
def test_invalid_identifiers_refused(tracker, user_id, card_id, content_hash):
    with pytest.raises(InvalidArgument):
        asyncio.run(tracker.record_review(user_id, card_id, content_hash, 3))


def test_failed_load_never_schedules_or_saves(clock):
    store = RecordingStore(fail_on={"fetch"})
    tracker = ProgressTracker(store, clock=clock)

    with pytest.raises(StorageUnavailable):
        asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 5))
    assert "save" not in store.calls


def test_failed_save_returns_no_state(clock):
    store = RecordingStore(fail_on={"save"})
    tracker = ProgressTracker(store, clock=clock)

    with pytest.raises(StorageUnavailable):
        asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 5))
    assert asyncio.run(store.fetch("u1", "card-0-x")) is None


def test_unreachable_database_raises_storage_unavailable(broken_session, clock):
    tracker = ProgressTracker(SqlAlchemyProgressStore(broken_session), clock=clock)

    with pytest.raises(StorageUnavailable):
        asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 5))
    with pytest.raises(StorageUnavailable):
        asyncio.run(tracker.load_states("u1", ["card-0-x"]))


def test_storage_unavailable_chains_database_error(broken_session, clock):
    from sqlalchemy.exc import SQLAlchemyError

    tracker = ProgressTracker(SqlAlchemyProgressStore(broken_session), clock=clock)

    with pytest.raises(StorageUnavailable) as excinfo:
        asyncio.run(tracker.load_states("u1", ["card-0-x"]))
    assert isinstance(excinfo.value.__cause__, SQLAlchemyError)


def test_reconcile_uses_one_bulk_load(sample_cards, clock):
    store = RecordingStore()
    tracker = ProgressTracker(store, clock=clock)
    deck = build_deck(sample_cards)

    asyncio.run(tracker.reconcile("u1", deck))

    assert store.calls == ["fetch_many"]


def test_reconcile_reports_bucket_and_due(tracker, clock, sample_cards):
    deck = build_deck(sample_cards)
    asyncio.run(tracker.record_review("u1", deck.card_ids[0], deck.content_hash, 4))
    asyncio.run(tracker.record_review("u1", "card-9-orphan", deck.content_hash, 4))

    cards = asyncio.run(tracker.reconcile("u1", deck))

    assert [c.card_id for c in cards] == deck.card_ids
    assert [c.ordinal for c in cards] == [0, 1, 2]
    assert [c.bucket for c in cards] == [
        RetentionBucket.LEARNING,
        RetentionBucket.NEW,
        RetentionBucket.NEW,
    ]
    assert [c.due for c in cards] == [False, True, True]
    assert cards[1].state is None


def test_due_cards_orders_new_then_overdue(tracker, clock, sample_cards):
    deck = build_deck(sample_cards)
    first, second, third = deck.card_ids

    asyncio.run(tracker.record_review("u1", first, deck.content_hash, 3))
    clock.advance(days=1)
    asyncio.run(tracker.record_review("u1", second, deck.content_hash, 5))
    clock.advance(days=3)

    due = asyncio.run(tracker.due_cards("u1", deck))
    assert [c.card_id for c in due] == [third, first, second]

    limited = asyncio.run(tracker.due_cards("u1", deck, limit=1))
    assert [c.card_id for c in limited] == [third]


def test_due_cards_rejects_bad_limit(tracker, sample_cards):
    with pytest.raises(InvalidArgument):
        asyncio.run(tracker.due_cards("u1", build_deck(sample_cards), limit=0))


def test_summary_counts_buckets(tracker, clock, sample_cards):
    deck = build_deck(sample_cards)
    asyncio.run(tracker.record_review("u1", deck.card_ids[0], deck.content_hash, 5))

    summary = asyncio.run(tracker.summary("u1", deck))

    assert summary == {
        "total": 3,
        "due": 2,
        "new": 2,
        "learning": 1,
        "review": 0,
        "mastered": 0,
    }


def test_forget_deck_deletes_only_that_deck(tracker):
    asyncio.run(tracker.record_review("u1", "card-0-x", HASH_A, 5))
    asyncio.run(tracker.record_review("u1", "card-0-y", HASH_B, 5))
    asyncio.run(tracker.record_review("u2", "card-0-x", HASH_A, 5))

    deleted = asyncio.run(tracker.forget_deck("u1", HASH_A))

    assert deleted == 1
    assert asyncio.run(tracker.load_states("u1", ["card-0-x", "card-0-y"])).keys() == {"card-0-y"}
    assert "card-0-x" in asyncio.run(tracker.load_states("u2", ["card-0-x"]))
