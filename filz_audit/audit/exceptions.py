"""Audit chain errors.

A broken chain found by verification is a result, not an error, so it
has no exception here.
"""


class AuditError(Exception):
    """Base class for audit chain failures."""

    def __init__(self, message: str, code: str = "audit_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class ImmutabilityViolation(AuditError):
    """Raised when something tries to overwrite, update or delete a persisted entry."""

    def __init__(self, entry_id: int | None, operation: str = "modify"):
        self.entry_id = entry_id
        self.operation = operation
        super().__init__(
            f"Audit log entries are immutable and cannot be modified or deleted "
            f"(attempted {operation} on entry {entry_id})",
            "immutable",
        )


class StorageFailure(AuditError):
    """Raised when the audit store cannot be read or written.

    Never retried internally; the caller decides what to do with it.
    """

    def __init__(self, message: str, cause: BaseException | None = None):
        self.cause = cause
        super().__init__(message, "storage_failure")


class AppendInvariantViolation(AuditError):
    """Raised when an append would fork the chain or break its base case.

    This means a linearization bug or a foreign writer; it must be
    surfaced, never corrected.
    """

    def __init__(self, message: str):
        super().__init__(message, "append_invariant")
