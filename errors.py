class CoreError(Exception):
    """Base class for matchmaking and signaling failures."""


class ValidationError(CoreError):
    """A required field is missing or malformed. Always a caller bug."""


class InvalidEnvelope(ValidationError):
    pass


class NotConnected(CoreError):
    """The user has no active partner."""


class TransientIOError(CoreError):
    """Store or network failure. Safe to retry on the next tick."""


class MediaAccessDenied(CoreError):
    """Camera or microphone capture was refused or is unavailable."""
