"""Error taxonomy shared by the store components.

Components raise these; the API layer turns them into HTTP responses
using ``status_code``.
"""


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFound(StoreError):
    status_code = 404


class Forbidden(StoreError):
    status_code = 403


class Unauthorized(StoreError):
    status_code = 401


class Conflict(StoreError):
    status_code = 400


class InvalidInput(StoreError):
    status_code = 400


class InvalidState(StoreError):
    status_code = 400


class UpstreamFailure(StoreError):
    """The image host or the push network rejected or failed a call."""

    status_code = 502
