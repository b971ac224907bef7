class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be initialized."""


class LedgerError(Exception):
    """Base class for errors a ledger operation reports back to the caller."""

    status_code = 400

    def __init__(self, message, payload=None):
        super().__init__(message)
        self.message = message
        self.payload = payload or {}


class NotFound(LedgerError):
    """The record does not exist or belongs to another user.

    Both cases are reported identically so callers cannot discover ids
    owned by someone else.
    """

    status_code = 404


class InvalidArgument(LedgerError):
    status_code = 400


class Conflict(LedgerError):
    """Storage kept reporting contention after the bounded retries."""

    status_code = 409


class PartialFailure(LedgerError):
    """Upstream records were committed but the transaction import was not.

    This is a warning rather than a hard failure: the caller made forward
    progress and nothing half-imported is left in the ledger.
    """

    status_code = 200

    def __init__(self, message, error=None, payload=None):
        super().__init__(message, payload=payload)
        self.error = error
