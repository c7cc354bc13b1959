from typing import Optional


class LedgerError(Exception):
    """Base class for every failure the ledger reports to its callers."""

    retryable = False

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class NotAuthenticated(LedgerError):
    pass


class Forbidden(LedgerError):
    pass


class NotFound(LedgerError, ValueError):
    pass


class InvalidInput(LedgerError, ValueError):
    pass


class PreconditionFailed(LedgerError):
    pass


class Conflict(LedgerError):
    pass


class StoreUnavailable(LedgerError):
    """Transient store failure. The caller may retry with backoff."""

    retryable = True
