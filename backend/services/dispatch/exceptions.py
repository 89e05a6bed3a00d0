"""Custom exceptions for rider dispatch."""


class DispatchAlreadyActiveError(Exception):
    """Raised when a delivery already has an offer in flight."""
    pass


class TransportError(Exception):
    """Raised when the notification transport fails to deliver an offer."""
    pass


class RetryExhaustedError(Exception):
    """Raised when every attempt of a retried call has failed."""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
