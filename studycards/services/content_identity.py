"""Content-addressed identity for generated flashcard decks.

Two keys tie review history to the cards a user is looking at:

- Card identity: derived from one card's front text and its position in the
  deck. Used as the join key for progress rows.
- Content fingerprint: derived from every front text in deck order. Same
  wording, count and order = same fingerprint. Anything else = new material.

Neither is a security boundary, so a short BLAKE2b digest is enough. Both are
computed over UTF-8 bytes only, which keeps them stable across processes and
platforms.
"""

import hashlib
import logging
from collections.abc import Mapping, Sequence
from typing import Literal, Optional

from pydantic import BaseModel

from ..errors import InvalidArgument

logger = logging.getLogger(__name__)

FINGERPRINT_DIGEST_SIZE = 8  # 64-bit
CARD_ID_DIGEST_SIZE = 6

VALID_DIFFICULTIES = ("easy", "medium", "hard")


class Card(BaseModel):
    """A validated flashcard as produced by the deck generator."""

    front: str
    back: str = ""
    hint: Optional[str] = None
    difficulty: Optional[Literal["easy", "medium", "hard"]] = None
    category: Optional[str] = None


class Deck(BaseModel):
    """An ordered deck with its identity keys precomputed."""

    cards: list[Card]
    card_ids: list[str]
    content_hash: str

    def __len__(self) -> int:
        return len(self.cards)


def fingerprint(front_texts: Sequence[str]) -> str:
    """Compute the content fingerprint of an ordered list of front texts.

    Each text is length-prefixed before hashing so that ["ab", "c"] and
    ["a", "bc"] do not collide.

    Args:
        front_texts: Card front texts in deck order

    Returns:
        16-character hex string

    Raises:
        InvalidArgument: if the list or any element is not a string
    """
    if front_texts is None or isinstance(front_texts, (str, bytes)):
        raise InvalidArgument("front_texts must be a sequence of strings")

    hasher = hashlib.blake2b(digest_size=FINGERPRINT_DIGEST_SIZE)
    for text in front_texts:
        if not isinstance(text, str):
            raise InvalidArgument(f"front text must be a string, got {type(text).__name__}")
        encoded = text.encode("utf-8")
        hasher.update(f"{len(encoded)}:".encode("ascii"))
        hasher.update(encoded)
    return hasher.hexdigest()


def card_identity(front_text: str, ordinal: int) -> str:
    """Derive the stable identity of the card at `ordinal` with `front_text`."""
    if not isinstance(front_text, str):
        raise InvalidArgument("front_text must be a string")
    if isinstance(ordinal, bool) or not isinstance(ordinal, int) or ordinal < 0:
        raise InvalidArgument("ordinal must be a non-negative integer")

    digest = hashlib.blake2b(
        front_text.encode("utf-8"), digest_size=CARD_ID_DIGEST_SIZE
    ).hexdigest()
    return f"card-{ordinal}-{digest}"


def _clean_optional(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def normalize_cards(raw_cards) -> list[Card]:
    """Normalize loosely-typed generator output into `Card` objects.

    Items that are not mappings, or whose front text is missing or blank,
    are dropped. Unknown difficulty values are cleared rather than rejected.

    Raises:
        InvalidArgument: if `raw_cards` is not a list of items
    """
    if raw_cards is None or isinstance(raw_cards, (str, bytes, Mapping)):
        raise InvalidArgument("cards must be a list")
    if not isinstance(raw_cards, Sequence):
        raise InvalidArgument("cards must be a list")

    cards = []
    for index, raw in enumerate(raw_cards):
        if not isinstance(raw, Mapping):
            logger.warning(f"Dropping card {index}: not an object")
            continue

        front = raw.get("front")
        if not isinstance(front, str) or not front.strip():
            logger.warning(f"Dropping card {index}: missing front text")
            continue

        back = raw.get("back")
        difficulty = raw.get("difficulty")
        if isinstance(difficulty, str):
            difficulty = difficulty.strip().lower()
        if difficulty not in VALID_DIFFICULTIES:
            difficulty = None

        cards.append(
            Card(
                front=front.strip(),
                back=back.strip() if isinstance(back, str) else "",
                hint=_clean_optional(raw.get("hint")),
                difficulty=difficulty,
                category=_clean_optional(raw.get("category")),
            )
        )

    return cards


def build_deck(raw_cards) -> Deck:
    """Normalize cards and compute their identities and deck fingerprint."""
    cards = normalize_cards(raw_cards)
    fronts = [card.front for card in cards]
    return Deck(
        cards=cards,
        card_ids=[card_identity(front, i) for i, front in enumerate(fronts)],
        content_hash=fingerprint(fronts),
    )
