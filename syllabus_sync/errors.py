from __future__ import annotations


class SyncError(Exception):
    pass


class AuthorizationError(SyncError):
    pass


class UserDenied(AuthorizationError):
    pass


class CallbackTimeout(AuthorizationError):
    pass


class TokenExchangeFailure(AuthorizationError):
    pass


class SyncAborted(TokenExchangeFailure):
    """Grant refresh failed before the batch could start.

    ``results`` holds a failed entry for every event that was pending.
    """

    def __init__(self, message: str, results: list | None = None):
        super().__init__(message)
        self.results = results or []


class MalformedExtractionOutput(SyncError):
    pass
