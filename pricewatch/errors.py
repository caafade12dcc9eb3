from typing import Optional


class PricewatchError(Exception):
    """Base class for errors raised by the price tracking pipeline."""


class BrowserError(PricewatchError):
    """A navigation, fetch or capture failure in the browser session.

    Carries the HTTP status code when the failure came from a response, so the
    retry policy can refuse to retry permanent client errors.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionNotFoundError(BrowserError):
    """The requested browser session does not exist or was already closed."""


class AlertValidationError(PricewatchError, ValueError):
    """An alert definition is incomplete for its alert type."""


class NotFoundError(PricewatchError, LookupError):
    """A referenced row does not exist."""
