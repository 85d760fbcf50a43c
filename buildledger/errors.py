"""
Error taxonomy for BuildLedger.

Every error carries a stable ``code`` and the HTTP status the API layer maps it
to.  Transient errors are the only ones worth retrying.
"""

from __future__ import annotations


class BuildLedgerError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(BuildLedgerError):
    """Malformed input.  Raised before anything is persisted."""

    code = "validation_error"
    status_code = 400


class NotFoundError(BuildLedgerError):
    code = "not_found"
    status_code = 404


class AuthorizationError(BuildLedgerError):
    """Owner mismatch on a scoped operation.

    The message is for logs only; callers outside the process get a generic
    denial.
    """

    code = "forbidden"
    status_code = 403
    public_message = "access denied"

    def __init__(self, message: str = "", **context: str) -> None:
        super().__init__(message)
        self.context = context


class InvalidTransitionError(BuildLedgerError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, kind: str, current: str, target: str) -> None:
        super().__init__(f"{kind} cannot move from {current!r} to {target!r}")
        self.kind = kind
        self.current = current
        self.target = target


class DuplicateExternalIdError(BuildLedgerError):
    """A ledger row with this external id already exists."""

    code = "duplicate_external_id"
    status_code = 409

    def __init__(self, external_id: str) -> None:
        super().__init__(f"payment {external_id!r} already recorded")
        self.external_id = external_id


class InvalidSignatureError(BuildLedgerError):
    code = "invalid_signature"
    status_code = 400


class TransientError(BuildLedgerError):
    """Base for failures that are safe to retry."""

    code = "temporarily_unavailable"
    status_code = 503


class TransientStoreError(TransientError):
    pass


class TransientNetworkError(TransientError):
    pass


class ConcurrentModificationError(TransientError):
    """Another writer updated the row first (optimistic version check failed)."""

    code = "concurrent_modification"


__all__ = [
    "BuildLedgerError",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "InvalidTransitionError",
    "DuplicateExternalIdError",
    "InvalidSignatureError",
    "TransientError",
    "TransientStoreError",
    "TransientNetworkError",
    "ConcurrentModificationError",
]
