"""Error taxonomy shared by the study services."""

from __future__ import annotations


class TutorError(Exception):
    """Base class for every error raised by the study services."""


class ValidationError(TutorError, ValueError):
    """Raised when outline input or a request payload is malformed."""


class OutOfRangeError(TutorError, IndexError):
    """Raised when a path does not address a part of the current outline."""


class NotFoundError(TutorError, LookupError):
    """Raised when a session or part row does not exist."""


class MergeError(TutorError):
    """Raised when new material cannot be merged into a session outline."""


class EmptyFragmentError(MergeError):
    """Raised when a merge fragment has no topics; callers treat it as a no-op."""


class GenerationError(TutorError):
    """Raised when an external content-generation call fails."""


class GenerationCancelledError(GenerationError):
    """Raised to callers of a generation that was cancelled while in flight."""


class PersistenceError(TutorError):
    """Raised when the durable store fails to read or write."""
