"""Error taxonomy of the messaging core.

Each error carries the HTTP status it is rendered with by the exception
handlers registered in ``clinic_messaging.main``.
"""


class MessagingError(Exception):

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MessagingError):
    """Malformed input: empty content, bad participant ids."""

    status_code = 400


class Unauthorized(MessagingError):
    """Caller is not a participant of the target conversation."""

    status_code = 403


class NotFound(MessagingError):

    status_code = 404


class ConcurrencyConflict(MessagingError):
    """A transactional unit of work kept conflicting after retries.

    Raised only by the storage layer; rendered as a generic server error.
    """

    status_code = 500
