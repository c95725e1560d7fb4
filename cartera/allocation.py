"""
Payment Allocation Module

Plans how an incoming payment is distributed over the open installments of
an invoice. ``allocate`` is pure: it takes an immutable ledger snapshot and
returns an immutable plan, or raises an AllocationError before anything is
written.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Sequence, Tuple, Union

from .currency import Money
from .exceptions import (
    InvalidAmountError, NothingToAllocateError, OverpaymentError,
    DistributionMismatchError, ExceedsInstallmentBalanceError,
    UnknownInstallmentError
)
from .ledger import InstallmentView, InstallmentStatus


logger = logging.getLogger("cartera.allocation")

DEFAULT_TOLERANCE = Decimal('0.01')


class AllocationMode(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


@dataclass(frozen=True)
class ManualEntry:
    installment_id: str
    amount: Money


@dataclass(frozen=True)
class AutomaticDistribution:
    """Overdue installments first, then by due date"""

    @property
    def mode(self) -> AllocationMode:
        return AllocationMode.AUTOMATIC


@dataclass(frozen=True)
class ManualDistribution:
    """Caller-chosen amount per installment"""
    entries: Tuple[ManualEntry, ...]

    def __post_init__(self):
        object.__setattr__(self, 'entries', tuple(self.entries))

    @property
    def mode(self) -> AllocationMode:
        return AllocationMode.MANUAL


AllocationRequest = Union[AutomaticDistribution, ManualDistribution]


@dataclass(frozen=True)
class AllocationLine:
    installment_id: str
    amount: Money


@dataclass(frozen=True)
class AllocationPlan:
    mode: AllocationMode
    lines: Tuple[AllocationLine, ...]

    @property
    def total(self) -> Money:
        if not self.lines:
            raise ValueError("Empty allocation plan has no currency")
        return Money.sum((line.amount for line in self.lines), self.lines[0].amount.currency)

    def amount_for(self, installment_id: str) -> Money:
        for line in self.lines:
            if line.installment_id == installment_id:
                return line.amount
        raise KeyError(installment_id)


def automatic_order(ledger: Sequence[InstallmentView]) -> List[InstallmentView]:
    """Open installments, overdue ones first, then ascending due date"""
    open_views = [v for v in ledger if v.is_open]
    return sorted(
        open_views,
        key=lambda v: (v.status != InstallmentStatus.OVERDUE, v.due_date, v.sequence)
    )


def _allocate_automatic(amount: Money, ledger: Sequence[InstallmentView]) -> AllocationPlan:
    remaining = amount
    lines = []
    for view in automatic_order(ledger):
        if remaining.is_zero():
            break
        applied = min(remaining, view.remaining_balance)
        lines.append(AllocationLine(view.installment_id, applied))
        remaining = remaining - applied

    if remaining.is_positive():
        outstanding = Money.sum((v.remaining_balance for v in ledger), amount.currency)
        raise OverpaymentError(
            f"Payment of {amount.to_string()} exceeds outstanding balance of {outstanding.to_string()}",
            amount=amount.amount, outstanding=outstanding.amount
        )

    return AllocationPlan(AllocationMode.AUTOMATIC, tuple(lines))


def _allocate_manual(
    amount: Money,
    distribution: ManualDistribution,
    ledger: Sequence[InstallmentView],
    tolerance: Decimal
) -> AllocationPlan:
    views = {v.installment_id: v for v in ledger}
    requested: Dict[str, Money] = {}

    for entry in distribution.entries:
        if entry.installment_id not in views:
            raise UnknownInstallmentError(
                "Installment not found on this invoice", installment_id=entry.installment_id
            )
        if entry.amount.currency != amount.currency:
            raise DistributionMismatchError(
                "Entry currency differs from payment currency",
                installment_id=entry.installment_id
            )
        if entry.amount.is_negative():
            raise DistributionMismatchError(
                "Entry amounts cannot be negative",
                installment_id=entry.installment_id, amount=entry.amount.amount
            )
        # Entries targeting the same installment add up
        previous = requested.get(entry.installment_id, Money.zero(amount.currency))
        requested[entry.installment_id] = previous + entry.amount

    for installment_id, requested_amount in requested.items():
        view = views[installment_id]
        if requested_amount > view.remaining_balance:
            raise ExceedsInstallmentBalanceError(
                f"Installment {view.sequence} has {view.remaining_balance.to_string()} remaining, "
                f"{requested_amount.to_string()} requested",
                installment_id=installment_id,
                requested=requested_amount.amount,
                remaining=view.remaining_balance.amount
            )

    total = Money.sum(requested.values(), amount.currency)
    if abs(total.amount - amount.amount) > tolerance:
        raise DistributionMismatchError(
            f"Distribution total {total.to_string()} does not match payment {amount.to_string()}",
            distributed=total.amount, amount=amount.amount
        )

    lines = tuple(
        AllocationLine(installment_id, requested_amount)
        for installment_id, requested_amount in requested.items()
        if requested_amount.is_positive()
    )
    if not lines:
        raise DistributionMismatchError(
            "Manual distribution assigns nothing to any installment", amount=amount.amount
        )
    return AllocationPlan(AllocationMode.MANUAL, lines)


def allocate(
    amount: Money,
    request: AllocationRequest,
    ledger: Sequence[InstallmentView],
    tolerance: Decimal = DEFAULT_TOLERANCE
) -> AllocationPlan:
    """
    Distribute a payment over a ledger snapshot.

    Args:
        amount: Payment amount
        request: AutomaticDistribution or ManualDistribution
        ledger: Current views of the invoice's installments
        tolerance: Max gap between a manual distribution total and the amount

    Returns:
        AllocationPlan with one line per installment receiving money

    Raises:
        InvalidAmountError: amount is zero or negative
        NothingToAllocateError: no installment has a remaining balance
        OverpaymentError: automatic mode, amount exceeds total outstanding
        UnknownInstallmentError: manual entry for an installment not in the ledger
        ExceedsInstallmentBalanceError: manual entries exceed an installment's balance
        DistributionMismatchError: manual entries negative, all zero or not summing to amount
    """
    if not amount.is_positive():
        raise InvalidAmountError("Payment amount must be positive", amount=amount.amount)

    if not any(v.is_open for v in ledger):
        raise NothingToAllocateError("Invoice has no outstanding installments")

    if isinstance(request, AutomaticDistribution):
        plan = _allocate_automatic(amount, ledger)
    elif isinstance(request, ManualDistribution):
        plan = _allocate_manual(amount, request, ledger, tolerance)
    else:
        raise TypeError(f"Unsupported allocation request: {type(request).__name__}")

    logger.debug("Planned %s allocation of %s over %d installments",
                 plan.mode.value, amount.to_string(), len(plan.lines))
    return plan
