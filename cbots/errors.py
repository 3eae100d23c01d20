# cbots/errors.py
"""Typed failures raised by the ledger, lifecycle and accrual code.

Every business-rule violation is one of these. They are raised before or
inside the unit of work, so the transaction rolls back and nothing partial
is left behind. The HTTP layer maps each class to a status code.
"""
from __future__ import annotations


class LedgerError(Exception):
    status_code = 400
    code = "ledger_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(LedgerError):
    """Missing or malformed input. Rejected before any mutation."""

    code = "validation_error"


class NotFound(LedgerError):
    status_code = 404
    code = "not_found"


class AlreadyProcessed(LedgerError):
    """The request left `pending` already; terminal states never change."""

    status_code = 409
    code = "already_processed"


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"


class AccountBlocked(LedgerError):
    status_code = 403
    code = "account_blocked"


class ConflictRetryable(LedgerError):
    """A concurrent writer won. Nothing was applied; the caller may retry."""

    status_code = 409
    code = "conflict_retryable"


class StorageUnavailable(LedgerError):
    status_code = 503
    code = "storage_unavailable"


class AuthenticationError(LedgerError):
    """The caller could not be mapped to an account handle."""

    status_code = 401
    code = "authentication_failed"
