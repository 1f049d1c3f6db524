from __future__ import annotations


class ChallengeError(Exception):
    """Base class for errors surfaced to the user by the challenge core."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ChallengeConfigurationError(ChallengeError):
    """Challenge is missing its start date or day count."""


class ChallengeWindowError(ChallengeError):
    """Action attempted before the challenge started or after it ended."""


class AlreadyEnrolledError(ChallengeError):
    pass


class AlreadyCompletedTodayError(ChallengeError):
    pass


class InvalidTransitionError(ChallengeError):
    """A session action was requested in a stage that does not allow it."""


class ValidationError(ChallengeError):
    pass


class PersistenceError(ChallengeError):
    """A store write or read failed; prior durable state is untouched."""

    retryable = True

    def __init__(self, message: str, *, step: str | None = None):
        super().__init__(message)
        self.step = step
