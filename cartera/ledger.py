"""
Installment Ledger Module

Installment and allocation records plus the read-time derivation of each
installment's live state (paid amount, remaining balance, status, days
overdue). Status is never stored: it depends on the clock and is recomputed
on every read.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from .currency import Money, Currency
from .storage import StorageRecord


class InstallmentStatus(Enum):
    PAID = "paid"
    OVERDUE = "overdue"
    PARTIAL = "partial"
    PENDING = "pending"


@dataclass
class Installment(StorageRecord):
    """A persisted schedule row of a financed invoice"""
    invoice_id: str
    sequence: int
    due_date: date
    scheduled_amount: Money
    capital: Money
    interest: Money
    balance_after: Money
    paid_date: Optional[date] = None
    note: Optional[str] = None


@dataclass
class Allocation(StorageRecord):
    """Portion of one payment applied to one installment"""
    payment_id: str
    installment_id: str
    amount: Money
    applied_at: datetime
    note: Optional[str] = None


@dataclass(frozen=True)
class InstallmentView:
    """Installment plus its derived state at a point in time"""
    installment_id: str
    sequence: int
    due_date: date
    scheduled_amount: Money
    capital: Money
    interest: Money
    paid_amount: Money
    remaining_balance: Money
    status: InstallmentStatus
    days_overdue: int
    paid_date: Optional[date] = None

    @property
    def is_open(self) -> bool:
        return self.remaining_balance.is_positive()


@dataclass(frozen=True)
class LedgerSummary:
    """Invoice-level totals over a ledger"""
    total_scheduled: Money
    total_paid: Money
    total_outstanding: Money
    overdue_amount: Money
    paid_count: int
    overdue_count: int
    partial_count: int
    pending_count: int
    progress_percent: Decimal
    max_days_overdue: int
    next_due: Optional[InstallmentView]

    @property
    def installment_count(self) -> int:
        return self.paid_count + self.overdue_count + self.partial_count + self.pending_count


def view_installment(
    installment: Installment,
    allocations: Iterable[Allocation],
    as_of: date
) -> InstallmentView:
    """
    Derive the live state of one installment.

    Precedence: PAID when nothing remains, OVERDUE when the due date is
    before ``as_of``, PARTIAL when something was paid, PENDING otherwise.
    """
    currency = installment.scheduled_amount.currency
    paid = Money.sum((a.amount for a in allocations), currency)
    remaining = installment.scheduled_amount - paid
    if remaining.is_negative():
        remaining = Money.zero(currency)

    days_overdue = 0
    if remaining.is_zero():
        status = InstallmentStatus.PAID
    elif installment.due_date < as_of:
        status = InstallmentStatus.OVERDUE
        days_overdue = (as_of - installment.due_date).days
    elif paid.is_positive():
        status = InstallmentStatus.PARTIAL
    else:
        status = InstallmentStatus.PENDING

    return InstallmentView(
        installment_id=installment.id,
        sequence=installment.sequence,
        due_date=installment.due_date,
        scheduled_amount=installment.scheduled_amount,
        capital=installment.capital,
        interest=installment.interest,
        paid_amount=paid,
        remaining_balance=remaining,
        status=status,
        days_overdue=days_overdue,
        paid_date=installment.paid_date
    )


def build_ledger(
    installments: Iterable[Installment],
    allocations: Iterable[Allocation],
    as_of: date
) -> List[InstallmentView]:
    """Views for all installments of an invoice, ordered by sequence"""
    by_installment: Dict[str, List[Allocation]] = {}
    for allocation in allocations:
        by_installment.setdefault(allocation.installment_id, []).append(allocation)

    return [
        view_installment(installment, by_installment.get(installment.id, []), as_of)
        for installment in sorted(installments, key=lambda i: i.sequence)
    ]


def summarize_ledger(views: Sequence[InstallmentView], currency: Currency) -> LedgerSummary:
    counts = {status: 0 for status in InstallmentStatus}
    for view in views:
        counts[view.status] += 1

    total_scheduled = Money.sum((v.scheduled_amount for v in views), currency)
    total_paid = Money.sum((v.paid_amount for v in views), currency)
    total_outstanding = Money.sum((v.remaining_balance for v in views), currency)
    overdue_amount = Money.sum(
        (v.remaining_balance for v in views if v.status == InstallmentStatus.OVERDUE), currency
    )

    if total_scheduled.is_positive():
        progress = (total_paid.amount / total_scheduled.amount * Decimal('100')).quantize(Decimal('0.01'))
    else:
        progress = Decimal('0.00')

    open_views = [v for v in views if v.is_open]
    next_due = min(open_views, key=lambda v: (v.due_date, v.sequence)) if open_views else None

    return LedgerSummary(
        total_scheduled=total_scheduled,
        total_paid=total_paid,
        total_outstanding=total_outstanding,
        overdue_amount=overdue_amount,
        paid_count=counts[InstallmentStatus.PAID],
        overdue_count=counts[InstallmentStatus.OVERDUE],
        partial_count=counts[InstallmentStatus.PARTIAL],
        pending_count=counts[InstallmentStatus.PENDING],
        progress_percent=progress,
        max_days_overdue=max((v.days_overdue for v in views), default=0),
        next_due=next_due
    )
