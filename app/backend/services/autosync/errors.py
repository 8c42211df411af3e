"""Exception taxonomy for the auto-sync engine.

Every exception that can reach the HTTP layer carries a `status_code` and a
human-readable `message`. `PersistenceError` keeps its technical detail in
`detail` for logging only; it is never returned to callers.
"""

from __future__ import annotations

from typing import Optional


class AutoSyncError(Exception):
    """Base class for auto-sync errors."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(AutoSyncError):
    """Malformed input, invalid schedule or unmet activation precondition."""

    status_code = 400
    error_code = "validation_error"


class CredentialError(AutoSyncError):
    """Credential missing, invalid or bound to a different account."""

    status_code = 400
    error_code = "credential_error"


class MissingFieldError(CredentialError):
    """A required credential field is absent or empty."""

    error_code = "missing_field"

    def __init__(self, field: str, connector_type: str = ""):
        suffix = f" for {connector_type}" if connector_type else ""
        super().__init__(f"{field} is required in input_data{suffix}")
        self.field = field


class IdentityMismatchError(CredentialError):
    """The credential belongs to a different account than the job."""

    error_code = "identity_mismatch"

    def __init__(self, expected: str, actual: str):
        super().__init__("email id mismatch", detail=f"expected={expected} actual={actual}")
        self.expected = expected
        self.actual = actual


class ConflictError(AutoSyncError):
    """A job for the same owner and account identity already exists."""

    status_code = 400
    error_code = "conflict"


class NotFoundError(AutoSyncError):
    """The record does not exist or is not owned by the caller."""

    status_code = 404
    error_code = "not_found"


class PersistenceError(AutoSyncError):
    """A database operation failed."""

    status_code = 500
    error_code = "persistence_error"

    def __init__(self, detail: str):
        super().__init__("internal server error", detail=detail)


class TransferSetupError(AutoSyncError):
    """A batch transfer could not start (no item was attempted)."""

    status_code = 500
    error_code = "transfer_setup_error"


class BlobStoreError(AutoSyncError):
    """The destination object store failed."""

    status_code = 500
    error_code = "blob_store_error"


class BlobNotFoundError(BlobStoreError):
    """The requested namespace or object does not exist."""

    status_code = 404
    error_code = "blob_not_found"


class ConnectorError(AutoSyncError):
    """The source connector failed while fetching or checking the account."""

    status_code = 502
    error_code = "connector_error"
