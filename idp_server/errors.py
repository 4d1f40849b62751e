"""
Errors raised by the identity provider. "Not found" is never an error: lookups return None.
"""


class IdpError(Exception):
    """Base class for provider errors."""


class StoreIOError(IdpError):
    """The account store backend could not be reached or returned malformed data."""

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend


class SessionStateError(IdpError):
    """
    The engine refused an interaction call: unknown, expired or already finished uid,
    missing interaction cookie, or a result that does not fit the current prompt.
    """

    def __init__(self, message: str, uid: str | None = None):
        super().__init__(message)
        self.uid = uid
