"""StudyCards - Spaced Repetition API

FastAPI application with:
- Deck fingerprinting and card identities for generated flashcards
- SM-2 review scheduling with per-user progress storage
- Retention buckets (new / learning / review / mastered) and review queues
- JWT user identification and per-user rate limiting
- Health checks and Prometheus metrics
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, StrictBool, StrictInt
from sqlalchemy.orm import Session
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from dotenv import load_dotenv

load_dotenv()

from . import __version__
from .auth import get_current_user_id
from .database import init_database, get_db_dependency
from .errors import InvalidArgument, StorageUnavailable
from .rate_limit import limiter, REVIEW_RATE_LIMIT
from .services.content_identity import Deck, build_deck
from .services.monitoring import metrics, route_path
from .services.progress_store import (
    ProgressTracker,
    SqlAlchemyProgressStore,
    summarize,
)
from .services.spaced_repetition import (
    get_bucket,
    quality_from_button,
    quality_from_response,
)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

REUSE_STALE_PROGRESS = os.environ.get("REUSE_STALE_PROGRESS", "false").lower() in (
    "1",
    "true",
    "yes",
)
CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"
    ).split(",")
    if origin.strip()
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database()
    yield


# Create FastAPI app
app = FastAPI(
    title="StudyCards",
    description="Spaced repetition scheduling and progress tracking for generated flashcards",
    version=__version__,
    lifespan=lifespan,
)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Collect request metrics for every HTTP request."""
    metrics.increment_active()
    start_time = time.time()
    try:
        response = await call_next(request)
        duration = time.time() - start_time
        path = route_path(request.scope)
        metrics.record_request(request.method, path, response.status_code, duration)
        return response
    finally:
        metrics.decrement_active()


# ============== Dependencies ==============


def get_progress_tracker(db: Session = Depends(get_db_dependency)) -> ProgressTracker:
    """One tracker per request, bound to the request's database session."""
    return ProgressTracker(
        SqlAlchemyProgressStore(db),
        reuse_stale_history=REUSE_STALE_PROGRESS,
    )


# ============== Pydantic Models ==============


class DeckRequest(BaseModel):
    cards: list[Any]


class DueCardsRequest(BaseModel):
    cards: list[Any]
    limit: Optional[int] = Field(default=None, ge=1, le=200)


class ReviewRequest(BaseModel):
    card_id: str
    content_hash: str
    # Exactly one way of grading: quality, button, or response timing
    quality: Optional[StrictInt] = None  # no coercion from bool, str or float
    button: Optional[str] = None  # again, hard, good, easy, known, unknown
    response_time_ms: Optional[float] = None
    is_correct: Optional[StrictBool] = None


# ============== Helper Functions ==============


def resolve_quality(request_obj: ReviewRequest) -> int:
    """Work out the 0-5 quality from whichever grading the client sent."""
    has_timing = request_obj.response_time_ms is not None or request_obj.is_correct is not None
    given = sum(
        [request_obj.quality is not None, request_obj.button is not None, has_timing]
    )
    if given != 1:
        raise InvalidArgument(
            "Provide exactly one of quality, button, or response_time_ms with is_correct"
        )

    if request_obj.quality is not None:
        return request_obj.quality
    if request_obj.button is not None:
        return quality_from_button(request_obj.button)
    if request_obj.response_time_ms is None or request_obj.is_correct is None:
        raise InvalidArgument("response_time_ms and is_correct must be sent together")
    return quality_from_response(request_obj.response_time_ms, request_obj.is_correct)


def deck_or_400(cards: list) -> Deck:
    try:
        deck = build_deck(cards)
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not deck.cards:
        raise HTTPException(status_code=400, detail="Deck has no cards with front text")
    return deck


def storage_unavailable(operation: str, error: StorageUnavailable) -> HTTPException:
    metrics.record_storage_failure(operation)
    logger.error(f"{operation} failed: {error}")
    return HTTPException(
        status_code=503,
        detail="Progress storage is unavailable; nothing was saved. Please retry.",
    )


# ============== Deck Endpoints ==============


@app.post("/api/decks/fingerprint")
async def fingerprint_deck(
    request_obj: DeckRequest,
    user_id: str = Depends(get_current_user_id),
):
    """Normalize a generated deck and return its fingerprint and card ids."""
    deck = deck_or_400(request_obj.cards)

    return {
        "content_hash": deck.content_hash,
        "cards": [
            {"card_id": card_id, "ordinal": ordinal, **card.model_dump()}
            for ordinal, (card_id, card) in enumerate(zip(deck.card_ids, deck.cards))
        ],
    }


# ============== Progress Endpoints ==============


@app.post("/api/progress/load")
async def load_progress(
    request_obj: DeckRequest,
    user_id: str = Depends(get_current_user_id),
    tracker: ProgressTracker = Depends(get_progress_tracker),
):
    """Load the user's progress for every card of a deck."""
    deck = deck_or_400(request_obj.cards)

    try:
        cards = await tracker.reconcile(user_id, deck)
    except StorageUnavailable as e:
        raise storage_unavailable("load", e)

    return {
        "content_hash": deck.content_hash,
        "cards": [c.to_dict() for c in cards],
        "summary": summarize(cards),
    }


@app.post("/api/progress/review")
@limiter.limit(REVIEW_RATE_LIMIT)
async def review_card(
    request_obj: ReviewRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    tracker: ProgressTracker = Depends(get_progress_tracker),
):
    """Record a flashcard review and return the card's new schedule."""
    try:
        quality = resolve_quality(request_obj)
        state = await tracker.record_review(
            user_id, request_obj.card_id, request_obj.content_hash, quality
        )
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageUnavailable as e:
        raise storage_unavailable("review", e)

    bucket = get_bucket(state)
    metrics.record_review(bucket.value)

    return {
        "card_id": request_obj.card_id,
        "quality": quality,
        "state": state.to_dict(),
        "bucket": bucket.value,
    }


@app.post("/api/progress/due")
async def due_cards(
    request_obj: DueCardsRequest,
    user_id: str = Depends(get_current_user_id),
    tracker: ProgressTracker = Depends(get_progress_tracker),
):
    """Cards of a deck due for review, highest priority first."""
    deck = deck_or_400(request_obj.cards)

    try:
        due = await tracker.due_cards(user_id, deck, request_obj.limit)
    except StorageUnavailable as e:
        raise storage_unavailable("due", e)

    return {
        "content_hash": deck.content_hash,
        "cards": [c.to_dict() for c in due],
        "count": len(due),
        "total_cards": len(deck),
    }


@app.delete("/api/progress/decks/{content_hash}")
async def forget_deck(
    content_hash: str,
    user_id: str = Depends(get_current_user_id),
    tracker: ProgressTracker = Depends(get_progress_tracker),
):
    """Delete the user's review history for a deck."""
    try:
        deleted = await tracker.forget_deck(user_id, content_hash)
    except StorageUnavailable as e:
        raise storage_unavailable("forget", e)

    return {"status": "deleted", "content_hash": content_hash, "deleted": deleted}


# ============== Operations ==============


@app.get("/api/health")
def health_check():
    """Health check with database status."""
    from datetime import datetime, timezone
    from sqlalchemy import text as sa_text

    checks = {"api": "healthy"}

    try:
        from .database.connection import engine
        with engine.connect() as conn:
            conn.execute(sa_text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)}"

    overall = "healthy" if all(v == "healthy" for v in checks.values()) else "degraded"

    return {
        "status": overall,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


@app.get("/api/metrics")
def get_metrics():
    """Prometheus-compatible metrics endpoint."""
    return PlainTextResponse(
        content=metrics.to_prometheus(),
        media_type="text/plain; version=0.0.4",
    )
