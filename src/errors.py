class SessionError(Exception):
    """Base class for session lifecycle errors"""


class NotFoundError(SessionError):
    pass


class InvalidStateError(SessionError):
    pass


class SummarizationError(SessionError):
    """Any AI summarizer failure: HTTP error, quota, malformed or empty answer."""


class SessionConflictError(SessionError):
    """Storage rejected a second active session for the same room."""


class SummaryInFlightError(SessionError):
    """Storage rejected a second processing summary for the same session."""


class DuplicateMessageError(SessionError):
    """Storage rejected a message whose LINE message id is already stored."""
