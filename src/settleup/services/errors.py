"""
Domain errors for the ledger and settlement services.

Validation errors are caller mistakes and are raised before anything is
written. Invariant violations mean the bookkeeping itself is broken and are
never corrected silently.
"""

from __future__ import annotations

from typing import Any


class SettleUpError(Exception):
    """Base exception for all ledger and settlement errors."""


class ValidationError(SettleUpError):
    """Raised for caller errors; no state has been written."""


class InvalidSplit(ValidationError):
    """Raised when a split declaration or computed share is unusable."""


class SplitMismatch(ValidationError):
    """Raised when declared exact amounts or percentages do not reconcile."""


class EmptyParticipants(ValidationError):
    """Raised when an expense names no participants."""


class CurrencyMismatch(ValidationError):
    """Raised when two amounts in different currencies are combined."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"currency mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class NoRateProvided(ValidationError):
    """Raised when a cross-currency conversion has no matching rate."""

    def __init__(self, from_currency: str, to_currency: str) -> None:
        super().__init__(f"no exchange rate from {from_currency} to {to_currency}")
        self.from_currency = from_currency
        self.to_currency = to_currency


class OverpaymentRejected(ValidationError):
    """Raised when a payment exceeds what is outstanding on a transaction."""


class InvariantViolation(SettleUpError):
    """Raised when an invariant the system guarantees does not hold."""

    def __init__(self, message: str, vector: dict[Any, Any] | None = None) -> None:
        super().__init__(message)
        self.vector = vector or {}


class ImbalanceDetected(InvariantViolation):
    """Raised when a scope's balances do not sum to zero."""


class NonZeroSumInput(InvariantViolation):
    """Raised when the optimizer receives a balance vector that does not sum to zero."""


class ConcurrentModification(SettleUpError):
    """Raised when a write was based on a stale scope version."""

    def __init__(self, scope_id: Any, expected: int, actual: int) -> None:
        super().__init__(f"scope {scope_id} is at version {actual}, write expected {expected}")
        self.scope_id = scope_id
        self.expected = expected
        self.actual = actual


class DuplicatePayment(SettleUpError):
    """Raised when an idempotency key has already been applied."""

    def __init__(self, key: str, transaction_id: str, conflicting: bool = False) -> None:
        reason = "reused with different parameters" if conflicting else "already applied"
        super().__init__(f"idempotency key {key!r} {reason} (transaction {transaction_id})")
        self.key = key
        self.transaction_id = transaction_id
        self.conflicting = conflicting


class ExpenseNotFound(SettleUpError):
    """Raised when an expense id is unknown."""


class SettlementNotFound(SettleUpError):
    """Raised when a settlement transaction id is unknown."""


class InvalidTransition(SettleUpError):
    """Raised for a status change the settlement lifecycle does not allow."""
