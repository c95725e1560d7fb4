"""
Payment Application Module

Records incoming payments against financed invoices. Each payment is
planned against a fresh ledger snapshot and written together with its
allocations in one atomic block, under the invoice lock, with a version
check on the invoice so a stale snapshot is retried instead of committed.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .allocation import AllocationMode, AllocationPlan, AllocationRequest, allocate
from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money
from .exceptions import AllocationError, ValidationError
from .invoices import Invoice, InvoiceStore
from .ledger import (
    Allocation, Installment, InstallmentView, LedgerSummary,
    build_ledger, summarize_ledger
)
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord, retry_on_stale


logger = logging.getLogger("cartera.payments")


class PaymentMethod(Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    DEPOSIT = "deposit"
    CHECK = "check"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"


ALLOCATION_NOTES = {
    AllocationMode.AUTOMATIC: "Automatic allocation",
    AllocationMode.MANUAL: "Manual allocation",
}


@dataclass
class Payment(StorageRecord):
    """A received payment. Never mutated after creation."""
    invoice_id: str
    amount: Money
    payment_date: date
    method: PaymentMethod
    mode: AllocationMode
    reference: Optional[str] = None
    note: Optional[str] = None
    recorded_by: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class PaymentResult:
    payment: Payment
    allocations: Tuple[Allocation, ...]
    ledger: List[InstallmentView]
    replayed: bool = False


@dataclass(frozen=True)
class PaymentHistoryEntry:
    payment: Payment
    allocations: Tuple[Allocation, ...]


@dataclass(frozen=True)
class InvoiceTracking:
    """Everything the collections screen shows for one invoice"""
    invoice: Invoice
    ledger: List[InstallmentView]
    summary: LedgerSummary
    payments: List[PaymentHistoryEntry]


class PaymentStore:
    """Repository for payments and their allocations"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.payments_table = "payments"
        self.allocations_table = "allocations"

    def save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def save_allocation(self, allocation: Allocation, invoice_id: str) -> None:
        self.storage.save(
            self.allocations_table, allocation.id, self._allocation_to_dict(allocation, invoice_id)
        )

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        data = self.storage.load(self.payments_table, payment_id)
        if data:
            return self._payment_from_dict(data)
        return None

    def get_payments_for_invoice(self, invoice_id: str) -> List[Payment]:
        payments = [
            self._payment_from_dict(data)
            for data in self.storage.find(self.payments_table, {'invoice_id': invoice_id})
        ]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def find_by_idempotency_key(self, invoice_id: str, key: str) -> Optional[Payment]:
        matches = self.storage.find(
            self.payments_table, {'invoice_id': invoice_id, 'idempotency_key': key}
        )
        if matches:
            return self._payment_from_dict(matches[0])
        return None

    def get_allocations_for_payment(self, payment_id: str) -> List[Allocation]:
        allocations = [
            self._allocation_from_dict(data)
            for data in self.storage.find(self.allocations_table, {'payment_id': payment_id})
        ]
        allocations.sort(key=lambda a: (a.applied_at, a.id))
        return allocations

    def get_allocations_for_invoice(self, invoice_id: str) -> List[Allocation]:
        return [
            self._allocation_from_dict(data)
            for data in self.storage.find(self.allocations_table, {'invoice_id': invoice_id})
        ]

    def has_allocations(self, invoice_id: str) -> bool:
        return bool(self.storage.find(self.allocations_table, {'invoice_id': invoice_id}))

    def _payment_to_dict(self, payment: Payment) -> Dict[str, Any]:
        return {
            'id': payment.id,
            'created_at': payment.created_at.isoformat(),
            'updated_at': payment.updated_at.isoformat(),
            'invoice_id': payment.invoice_id,
            'amount': str(payment.amount.amount),
            'currency': payment.amount.currency.code,
            'payment_date': payment.payment_date.isoformat(),
            'method': payment.method.value,
            'mode': payment.mode.value,
            'reference': payment.reference,
            'note': payment.note,
            'recorded_by': payment.recorded_by,
            'idempotency_key': payment.idempotency_key,
        }

    def _payment_from_dict(self, data: Dict[str, Any]) -> Payment:
        return Payment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            invoice_id=data['invoice_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            payment_date=date.fromisoformat(data['payment_date']),
            method=PaymentMethod(data['method']),
            mode=AllocationMode(data['mode']),
            reference=data.get('reference'),
            note=data.get('note'),
            recorded_by=data.get('recorded_by'),
            idempotency_key=data.get('idempotency_key')
        )

    def _allocation_to_dict(self, allocation: Allocation, invoice_id: str) -> Dict[str, Any]:
        return {
            'id': allocation.id,
            'created_at': allocation.created_at.isoformat(),
            'updated_at': allocation.updated_at.isoformat(),
            # Denormalized so an invoice's allocations load with one query
            'invoice_id': invoice_id,
            'payment_id': allocation.payment_id,
            'installment_id': allocation.installment_id,
            'amount': str(allocation.amount.amount),
            'currency': allocation.amount.currency.code,
            'applied_at': allocation.applied_at.isoformat(),
            'note': allocation.note,
        }

    def _allocation_from_dict(self, data: Dict[str, Any]) -> Allocation:
        return Allocation(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            payment_id=data['payment_id'],
            installment_id=data['installment_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            applied_at=datetime.fromisoformat(data['applied_at']),
            note=data.get('note')
        )


class PaymentManager:
    """
    Applies payments to financed invoices
    """

    def __init__(
        self,
        invoice_store: InvoiceStore,
        payment_store: PaymentStore,
        audit_trail: Optional[AuditTrail] = None,
        tolerance: Decimal = Decimal('0.01'),
        max_retries: int = 3
    ):
        self.invoice_store = invoice_store
        self.payment_store = payment_store
        self.storage = invoice_store.storage
        self.audit_trail = audit_trail
        self.tolerance = tolerance
        self.max_retries = max_retries

    def apply_payment(
        self,
        invoice_id: str,
        amount: Money,
        method: PaymentMethod,
        distribution: AllocationRequest,
        reference: Optional[str] = None,
        note: Optional[str] = None,
        recorded_by: Optional[str] = None,
        payment_date: Optional[date] = None,
        idempotency_key: Optional[str] = None,
        as_of: Optional[date] = None
    ) -> PaymentResult:
        """
        Apply a payment to an invoice's installments

        Args:
            invoice_id: Invoice receiving the payment
            amount: Payment amount in the invoice currency
            method: How the money was received
            distribution: AutomaticDistribution or ManualDistribution
            reference: Bank or receipt reference
            note: Free-text note
            recorded_by: User recording the payment
            payment_date: Date the money was received (defaults to as_of)
            idempotency_key: Client key; a repeat returns the original payment
            as_of: Date used for overdue classification (defaults to today)

        Returns:
            PaymentResult with the payment, its allocations and the refreshed ledger

        Raises:
            InvoiceNotFoundError: If the invoice does not exist
            ValidationError: If the method or currency is wrong
            AllocationError: If the payment cannot be distributed
            ConcurrencyConflictError: If retries on stale snapshots ran out
        """
        if not isinstance(method, PaymentMethod):
            raise ValidationError(f"Unsupported payment method: {method}", method=method)

        as_of = as_of or date.today()
        payment_date = payment_date or as_of

        with self.invoice_store.with_invoice_lock(invoice_id):
            return retry_on_stale(
                lambda: self._apply_once(
                    invoice_id, amount, method, distribution, reference, note,
                    recorded_by, payment_date, idempotency_key, as_of
                ),
                self.max_retries,
                f"payment on invoice {invoice_id}"
            )

    def _apply_once(
        self,
        invoice_id: str,
        amount: Money,
        method: PaymentMethod,
        distribution: AllocationRequest,
        reference: Optional[str],
        note: Optional[str],
        recorded_by: Optional[str],
        payment_date: date,
        idempotency_key: Optional[str],
        as_of: date
    ) -> PaymentResult:
        invoice = self.invoice_store.require_invoice(invoice_id)

        if idempotency_key:
            existing = self.payment_store.find_by_idempotency_key(invoice_id, idempotency_key)
            if existing:
                logger.info("Replaying payment %s for idempotency key %s", existing.id, idempotency_key)
                return self._replay(existing, as_of)

        if amount.currency != invoice.currency:
            raise ValidationError(
                f"Payment currency {amount.currency.code} differs from invoice currency {invoice.currency.code}",
                invoice_id=invoice_id
            )

        installments = self.invoice_store.get_installments(invoice_id)
        prior_allocations = self.payment_store.get_allocations_for_invoice(invoice_id)
        ledger = build_ledger(installments, prior_allocations, as_of)

        try:
            plan = allocate(amount, distribution, ledger, self.tolerance)
        except AllocationError as e:
            log_action(
                logger, "warning", f"Payment rejected: {e.message}",
                user_id=recorded_by, action="apply_payment", invoice_id=invoice_id,
                extra={"error": e.code, "amount": str(amount.amount)}
            )
            raise

        payment, new_allocations = self._write(
            invoice, installments, ledger, plan, amount, method,
            reference, note, recorded_by, payment_date, idempotency_key
        )

        refreshed = build_ledger(
            self.invoice_store.get_installments(invoice_id),
            prior_allocations + list(new_allocations),
            as_of
        )

        log_action(
            logger, "info", f"Applied payment of {amount.to_string()} to invoice {invoice.number}",
            user_id=recorded_by, action="apply_payment", invoice_id=invoice_id,
            payment_id=payment.id,
            extra={
                "mode": plan.mode.value,
                "installments": len(new_allocations),
            }
        )
        return PaymentResult(payment=payment, allocations=new_allocations, ledger=refreshed)

    def _write(
        self,
        invoice: Invoice,
        installments: Sequence[Installment],
        ledger: Sequence[InstallmentView],
        plan: AllocationPlan,
        amount: Money,
        method: PaymentMethod,
        reference: Optional[str],
        note: Optional[str],
        recorded_by: Optional[str],
        payment_date: date,
        idempotency_key: Optional[str]
    ) -> Tuple[Payment, Tuple[Allocation, ...]]:
        now = datetime.now(timezone.utc)
        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            invoice_id=invoice.id,
            amount=amount,
            payment_date=payment_date,
            method=method,
            mode=plan.mode,
            reference=reference,
            note=note,
            recorded_by=recorded_by,
            idempotency_key=idempotency_key
        )
        allocations = tuple(
            Allocation(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                payment_id=payment.id,
                installment_id=line.installment_id,
                amount=line.amount,
                applied_at=now,
                note=ALLOCATION_NOTES[plan.mode]
            )
            for line in plan.lines
        )

        views = {v.installment_id: v for v in ledger}
        by_id = {i.id: i for i in installments}

        with self.storage.atomic():
            self.payment_store.save_payment(payment)
            for allocation in allocations:
                self.payment_store.save_allocation(allocation, invoice.id)

                view = views[allocation.installment_id]
                if allocation.amount >= view.remaining_balance:
                    installment = by_id[allocation.installment_id]
                    installment.paid_date = payment_date
                    self.invoice_store.save_installment(installment)

            self.invoice_store.save_invoice(invoice, expected_version=invoice.version)

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_APPLIED,
                    entity_type="invoice",
                    entity_id=invoice.id,
                    metadata={
                        "payment_id": payment.id,
                        "amount": amount.amount,
                        "method": method,
                        "mode": plan.mode,
                        "allocations": [
                            {"installment_id": a.installment_id, "amount": a.amount.amount}
                            for a in allocations
                        ],
                    },
                    user_id=recorded_by
                )

        return payment, allocations

    def _replay(self, payment: Payment, as_of: date) -> PaymentResult:
        ledger = build_ledger(
            self.invoice_store.get_installments(payment.invoice_id),
            self.payment_store.get_allocations_for_invoice(payment.invoice_id),
            as_of
        )
        return PaymentResult(
            payment=payment,
            allocations=tuple(self.payment_store.get_allocations_for_payment(payment.id)),
            ledger=ledger,
            replayed=True
        )

    def get_invoice_tracking(self, invoice_id: str, as_of: Optional[date] = None) -> InvoiceTracking:
        """
        Ledger, totals and payment history of one invoice

        Raises:
            InvoiceNotFoundError: If the invoice does not exist
        """
        as_of = as_of or date.today()
        invoice = self.invoice_store.require_invoice(invoice_id)
        allocations = self.payment_store.get_allocations_for_invoice(invoice_id)
        ledger = build_ledger(self.invoice_store.get_installments(invoice_id), allocations, as_of)

        by_payment: Dict[str, List[Allocation]] = {}
        for allocation in allocations:
            by_payment.setdefault(allocation.payment_id, []).append(allocation)

        history = [
            PaymentHistoryEntry(
                payment=payment,
                allocations=tuple(sorted(by_payment.get(payment.id, []), key=lambda a: a.applied_at))
            )
            for payment in reversed(self.payment_store.get_payments_for_invoice(invoice_id))
        ]

        return InvoiceTracking(
            invoice=invoice,
            ledger=ledger,
            summary=summarize_ledger(ledger, invoice.currency),
            payments=history
        )
