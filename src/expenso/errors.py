"""
Error taxonomy shared by the repository, the sync engine and the API.

Repository errors (validation and business rules) are raised to the caller
before any state changes. Remote errors are raised by RemoteAdapter
implementations and are caught by the SyncEngine, which never lets them
escape a sync cycle.
"""


class ExpensoError(RuntimeError):
    """Base class for all expected, user-facing failures."""

    code = "error"


class ValidationError(ExpensoError):
    """Raised when user input is malformed (bad amount, empty purpose, ...)."""

    code = "validation_error"


class ProtectedEntityError(ExpensoError):
    """Raised when deleting an entity that must always exist (the default category)."""

    code = "protected_entity"


class DuplicateNameError(ExpensoError):
    """Raised when a sheet or category name already exists (case-insensitive)."""

    code = "duplicate_name"


class NotFoundError(ExpensoError):
    """Raised when a sheet, transaction or category id/name is unknown."""

    code = "not_found"


class OfflineError(ExpensoError):
    """Raised when waiting for connectivity times out."""

    code = "offline"


class RemoteError(ExpensoError):
    """Base class for failures reported by a RemoteAdapter."""

    code = "remote_error"


class TransientRemoteError(RemoteError):
    """Network, timeout, rate-limit or server failure. Eligible for retry."""

    code = "transient_remote_failure"


class AuthRequiredError(RemoteError):
    """Credentials are missing, expired or lack permission. Never retried automatically."""

    code = "auth_required"


class RetryExhaustedError(ExpensoError):
    """An operation failed max_retries times and was dropped."""

    code = "retry_exhausted"

    def __init__(self, operation_id: str, retry_count: int, last_error: str = ""):
        self.operation_id = operation_id
        self.retry_count = retry_count
        self.last_error = last_error
        super().__init__(
            f"Operation {operation_id} failed after {retry_count} attempts"
            + (f": {last_error}" if last_error else "")
        )
