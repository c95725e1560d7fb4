"""
Invoice Persistence Module

Invoice records, their installments, and the per-invoice lock that
serializes every read-modify-write cycle on an invoice's ledger.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .audit import AuditTrail, AuditEventType
from .currency import Currency, Money
from .exceptions import InvoiceNotFoundError, StaleRecordError, ValidationError
from .ledger import Installment
from .storage import StorageInterface, StorageRecord, retry_on_stale


logger = logging.getLogger("cartera.invoices")


class PaymentModality(Enum):
    CASH = "cash"
    FINANCED = "financed"


@dataclass
class Invoice(StorageRecord):
    """Invoice as supplied by billing, plus its financing terms"""
    number: str
    total_amount: Money
    issue_date: date
    due_date: date
    payment_modality: PaymentModality = PaymentModality.CASH
    installment_count: Optional[int] = None
    monthly_rate_percent: Optional[Decimal] = None
    financing_start_date: Optional[date] = None
    financed_principal: Optional[Money] = None
    client_name: Optional[str] = None
    case_number: Optional[str] = None
    version: int = 0

    @property
    def currency(self) -> Currency:
        return self.total_amount.currency

    @property
    def is_financed(self) -> bool:
        return self.payment_modality == PaymentModality.FINANCED


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


class InvoiceStore:
    """
    Repository for invoices and installments.

    Invoice writes go through ``save_invoice`` which compares the stored
    ``version`` with the one the caller read and bumps it, so a writer holding
    a stale snapshot gets a StaleRecordError instead of overwriting.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        max_retries: int = 3
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.max_retries = max_retries
        self.invoices_table = "invoices"
        self.installments_table = "installments"

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def register_invoice(
        self,
        number: str,
        total_amount: Money,
        issue_date: date,
        due_date: date,
        client_name: Optional[str] = None,
        case_number: Optional[str] = None,
        recorded_by: Optional[str] = None
    ) -> Invoice:
        """
        Register an invoice issued by billing

        Raises:
            ValidationError: If the amount is not positive or dates are inverted
        """
        if not total_amount.is_positive():
            raise ValidationError("Invoice total must be positive", total_amount=total_amount.amount)
        if due_date < issue_date:
            raise ValidationError("Due date cannot precede issue date",
                                  issue_date=issue_date, due_date=due_date)
        if not number or not number.strip():
            raise ValidationError("Invoice number is required")

        now = datetime.now(timezone.utc)
        invoice = Invoice(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            number=number.strip(),
            total_amount=total_amount,
            issue_date=issue_date,
            due_date=due_date,
            client_name=client_name,
            case_number=case_number
        )

        def write() -> None:
            with self.storage.atomic():
                self.save_invoice(invoice, expected_version=None)
                if self.audit_trail:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.INVOICE_REGISTERED,
                        entity_type="invoice",
                        entity_id=invoice.id,
                        metadata={
                            "number": invoice.number,
                            "total_amount": invoice.total_amount.amount,
                            "currency": invoice.currency.code,
                        },
                        user_id=recorded_by
                    )

        retry_on_stale(write, self.max_retries, "invoice registration")

        logger.info("Registered invoice %s (%s)", invoice.number, invoice.total_amount.to_string())
        return invoice

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        data = self.storage.load(self.invoices_table, invoice_id)
        if data:
            return self._invoice_from_dict(data)
        return None

    def require_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
        return invoice

    def list_invoices(self, modality: Optional[PaymentModality] = None) -> List[Invoice]:
        if modality is None:
            records = self.storage.load_all(self.invoices_table)
        else:
            records = self.storage.find(self.invoices_table, {'payment_modality': modality.value})
        invoices = [self._invoice_from_dict(data) for data in records]
        invoices.sort(key=lambda i: (i.issue_date, i.number))
        return invoices

    def save_invoice(self, invoice: Invoice, expected_version: Optional[int]) -> Invoice:
        """
        Persist an invoice if its stored version is still ``expected_version``.
        On success ``invoice.version`` is bumped in place.

        Raises:
            StaleRecordError: If the stored version differs
        """
        new_version = 1 if expected_version is None else expected_version + 1
        invoice.updated_at = datetime.now(timezone.utc)
        data = self._invoice_to_dict(invoice)
        data['version'] = new_version

        if not self.storage.compare_and_save(self.invoices_table, invoice.id, data, expected_version):
            raise StaleRecordError(
                f"Invoice {invoice.id} changed since version {expected_version}",
                invoice_id=invoice.id, expected_version=expected_version
            )

        invoice.version = new_version
        return invoice

    @contextmanager
    def with_invoice_lock(self, invoice_id: str) -> Iterator[None]:
        """Serialize work on one invoice; other invoices are unaffected"""
        with self._locks_guard:
            lock = self._locks.get(invoice_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[invoice_id] = lock
        with lock:
            yield

    def get_installments(self, invoice_id: str) -> List[Installment]:
        records = self.storage.find(self.installments_table, {'invoice_id': invoice_id})
        installments = [self._installment_from_dict(data) for data in records]
        installments.sort(key=lambda i: i.sequence)
        return installments

    def replace_installments(self, invoice_id: str, installments: Sequence[Installment]) -> None:
        for existing in self.storage.find(self.installments_table, {'invoice_id': invoice_id}):
            self.storage.delete(self.installments_table, existing['id'])
        for installment in installments:
            self.save_installment(installment)

    def save_installment(self, installment: Installment) -> None:
        installment.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.installments_table, installment.id, self._installment_to_dict(installment))

    def _invoice_to_dict(self, invoice: Invoice) -> Dict[str, Any]:
        return {
            'id': invoice.id,
            'created_at': invoice.created_at.isoformat(),
            'updated_at': invoice.updated_at.isoformat(),
            'number': invoice.number,
            'currency': invoice.currency.code,
            'total_amount': str(invoice.total_amount.amount),
            'issue_date': invoice.issue_date.isoformat(),
            'due_date': invoice.due_date.isoformat(),
            'payment_modality': invoice.payment_modality.value,
            'installment_count': invoice.installment_count,
            'monthly_rate_percent': (
                str(invoice.monthly_rate_percent) if invoice.monthly_rate_percent is not None else None
            ),
            'financing_start_date': _iso(invoice.financing_start_date),
            'financed_principal': (
                str(invoice.financed_principal.amount) if invoice.financed_principal else None
            ),
            'client_name': invoice.client_name,
            'case_number': invoice.case_number,
            'version': invoice.version,
        }

    def _invoice_from_dict(self, data: Dict[str, Any]) -> Invoice:
        currency = Currency[data['currency']]
        rate = data.get('monthly_rate_percent')
        principal = data.get('financed_principal')
        return Invoice(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            number=data['number'],
            total_amount=Money(Decimal(data['total_amount']), currency),
            issue_date=date.fromisoformat(data['issue_date']),
            due_date=date.fromisoformat(data['due_date']),
            payment_modality=PaymentModality(data['payment_modality']),
            installment_count=data.get('installment_count'),
            monthly_rate_percent=Decimal(rate) if rate is not None else None,
            financing_start_date=_parse_date(data.get('financing_start_date')),
            financed_principal=Money(Decimal(principal), currency) if principal is not None else None,
            client_name=data.get('client_name'),
            case_number=data.get('case_number'),
            version=data.get('version', 0)
        )

    def _installment_to_dict(self, installment: Installment) -> Dict[str, Any]:
        return {
            'id': installment.id,
            'created_at': installment.created_at.isoformat(),
            'updated_at': installment.updated_at.isoformat(),
            'invoice_id': installment.invoice_id,
            'sequence': installment.sequence,
            'due_date': installment.due_date.isoformat(),
            'currency': installment.scheduled_amount.currency.code,
            'scheduled_amount': str(installment.scheduled_amount.amount),
            'capital': str(installment.capital.amount),
            'interest': str(installment.interest.amount),
            'balance_after': str(installment.balance_after.amount),
            'paid_date': _iso(installment.paid_date),
            'note': installment.note,
        }

    def _installment_from_dict(self, data: Dict[str, Any]) -> Installment:
        currency = Currency[data['currency']]
        return Installment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            invoice_id=data['invoice_id'],
            sequence=data['sequence'],
            due_date=date.fromisoformat(data['due_date']),
            scheduled_amount=Money(Decimal(data['scheduled_amount']), currency),
            capital=Money(Decimal(data['capital']), currency),
            interest=Money(Decimal(data['interest']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            paid_date=_parse_date(data.get('paid_date')),
            note=data.get('note')
        )
