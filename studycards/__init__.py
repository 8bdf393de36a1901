"""StudyCards - spaced repetition progress tracking for generated flashcard decks."""

__version__ = "1.0.0"
