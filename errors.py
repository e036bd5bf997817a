class LedgerError(Exception):
    """Base class for every error the ledger surfaces to its callers.

    ``kind`` is a stable identifier the boundary layer maps to a status.
    """

    kind = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError, ValueError):
    kind = "validation"


class NotFoundError(LedgerError, ValueError):
    kind = "not_found"


class AuthorizationError(LedgerError, PermissionError):
    kind = "forbidden"


class ConflictError(LedgerError):
    kind = "conflict"


class InternalError(LedgerError):
    kind = "internal"
