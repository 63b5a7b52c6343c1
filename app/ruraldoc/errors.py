"""Exception types raised by the consultation core."""

from __future__ import annotations


class RuralDocError(Exception):
    pass


class InvalidSubmissionError(RuralDocError, ValueError):
    """Submission rejected before any oracle call or state change."""


class ConsultationBusyError(RuralDocError):
    """A turn for this conversation is already waiting on the oracle."""


class IllegalTransitionError(RuralDocError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal consultation transition: {current} -> {target}")
        self.current = current
        self.target = target


class PersistenceError(RuralDocError):
    """The storage medium failed; history or profile data may be lost."""


class ProfileNotFoundError(RuralDocError, KeyError):
    def __init__(self, profile_id: str):
        super().__init__(profile_id)
        self.profile_id = profile_id

    def __str__(self) -> str:
        return f"Unknown profile: {self.profile_id}"


class DuplicateProfileError(RuralDocError, ValueError):
    pass
