"""Error taxonomy shared by the scheduler, the identity resolver and the stores."""


class StudyCardsError(Exception):
    """Base class for all StudyCards errors."""


class InvalidArgument(StudyCardsError, ValueError):
    """A caller passed a value the operation refuses (e.g. quality outside 0-5)."""


class StorageUnavailable(StudyCardsError):
    """The progress store could not be reached or failed unexpectedly.

    Never recovered locally: the caller must treat the review as not recorded.
    """
