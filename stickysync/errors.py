from __future__ import annotations


class SyncError(Exception):
    """Base class for sync failures.

    ``status`` is the HTTP status the server answers with when the error is
    raised while handling a request.
    """

    status = 500
    retryable = False

    def __init__(self, message: str = "", *, status: int | None = None) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status

    @property
    def message(self) -> str:
        return str(self) or self.__class__.__name__


class ValidationError(SyncError):
    status = 400


class PayloadTooLarge(ValidationError):
    status = 413


class AuthError(SyncError):
    status = 401


class NotFoundError(SyncError):
    status = 404


class MethodError(SyncError):
    status = 405


class TransportError(SyncError):
    status = 502
    retryable = True


class StorageError(SyncError):
    status = 500


class SyncCancelled(SyncError):
    pass


class QuotaExceededError(StorageError):
    """Raised by a bounded local store when a write would exceed its quota."""
