"""
Error hierarchy for the lending engine.

Every error carries a ``context`` dict with the identifiers and amounts the
caller needs to retry or display the failure.
"""

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base exception for all lending engine errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class ValidationError(LendingError):
    """Raised for invalid amortization or operation inputs. No state changes."""


class NotFoundError(LendingError):
    """Raised when a referenced record does not exist or is soft-deleted."""


class LoanNotFound(NotFoundError):
    """Raised when a loan id cannot be resolved."""


class InstallmentNotFound(NotFoundError):
    """Raised when an installment id cannot be resolved."""


class ExpenseNotFound(NotFoundError):
    """Raised when an expense id cannot be resolved."""


class AlreadyPaid(LendingError):
    """Raised when paying an installment that is no longer payable."""


class DuplicateExpenseKind(LendingError):
    """Raised when a loan already has an active expense of the same kind."""


class ExpenseLocked(LendingError):
    """Raised when mutating an expense that has been collected."""


class CurrencyLockedError(LendingError):
    """Raised when changing a loan's currency after an installment was paid."""


class NothingToRecalculate(LendingError):
    """Raised when a recalculation would leave no pending installment."""


class ConfirmationRequired(LendingError):
    """Raised when a destructive operation is attempted without acknowledgement."""


class StalePreviewError(LendingError):
    """Raised when committing a preview whose loan changed after it was taken."""


class PersistenceError(LendingError):
    """Storage layer failure. The transaction was rolled back; safe to retry."""

    retryable = True


class LedgerAppendFailure(LendingError):
    """Raised when the ledger sink rejects an entry. The operation is rolled back."""
