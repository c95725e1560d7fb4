"""
Typed exception hierarchy for cartera.

Every error carries a machine-readable ``code`` (used verbatim in API error
payloads) and a ``details`` dict with structured context, so callers catch
by type and never parse messages.

    CarteraError
    +-- ValidationError (also a ValueError)
    |   +-- InvalidFinancingTermsError
    +-- NotFoundError
    |   +-- InvoiceNotFoundError
    +-- FinancingLockedError
    +-- AllocationError
    |   +-- InvalidAmountError
    |   +-- NothingToAllocateError
    |   +-- OverpaymentError
    |   +-- DistributionMismatchError
    |   +-- ExceedsInstallmentBalanceError
    |   +-- UnknownInstallmentError
    +-- ConcurrencyError
        +-- StaleRecordError
        +-- ConcurrencyConflictError
"""

from typing import Any, Dict


class CarteraError(Exception):
    """Base exception for all cartera errors."""

    code = "cartera_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "detail": self.message}
        payload.update({k: str(v) for k, v in self.details.items()})
        return payload


class ValidationError(CarteraError, ValueError):
    """Raised when input is rejected before any computation."""

    code = "validation_error"


class InvalidFinancingTermsError(ValidationError):
    """Installment count, rate or principal outside the accepted range."""

    code = "invalid_financing_terms"


class NotFoundError(CarteraError):
    """Raised when a referenced record does not exist."""

    code = "not_found"


class InvoiceNotFoundError(NotFoundError):
    code = "invoice_not_found"


class FinancingLockedError(CarteraError):
    """Financing cannot be reconfigured once payments were allocated."""

    code = "financing_locked"


class AllocationError(CarteraError):
    """Base class for payment allocation rejections. Nothing is persisted."""

    code = "allocation_error"


class InvalidAmountError(AllocationError):
    code = "invalid_amount"


class NothingToAllocateError(AllocationError):
    code = "nothing_to_allocate"


class OverpaymentError(AllocationError):
    code = "overpayment"


class DistributionMismatchError(AllocationError):
    code = "distribution_mismatch"


class ExceedsInstallmentBalanceError(AllocationError):
    code = "exceeds_installment_balance"


class UnknownInstallmentError(AllocationError):
    code = "unknown_installment"


class ConcurrencyError(CarteraError):
    code = "concurrency_error"


class StaleRecordError(ConcurrencyError):
    """A versioned record changed between read and write."""

    code = "stale_record"


class ConcurrencyConflictError(ConcurrencyError):
    """Retries of a read-allocate-write cycle were exhausted."""

    code = "concurrency_conflict"
