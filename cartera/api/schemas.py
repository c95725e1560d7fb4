"""
Pydantic schemas for API requests and responses

Request bodies reject unknown fields. Monetary amounts are accepted as JSON
numbers or strings and always returned as decimal strings.
"""

from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..allocation import AutomaticDistribution, ManualDistribution, ManualEntry
from ..currency import Currency, Money, money_to_str
from ..exceptions import ValidationError
from ..invoices import Invoice
from ..ledger import Allocation, Installment, InstallmentView, LedgerSummary
from ..payments import InvoiceTracking, Payment, PaymentMethod, PaymentResult
from ..reporting import PortfolioEntry, PortfolioStatistics


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


def parse_currency(code: str) -> Currency:
    try:
        return Currency[code.upper()]
    except KeyError:
        raise ValidationError(f"Unsupported currency: {code}", currency=code)


def to_money(value: Decimal, currency: Currency, field: str) -> Money:
    try:
        return Money.exact(value, currency)
    except (ValueError, ArithmeticError) as e:
        raise ValidationError(f"Invalid amount for {field}: {e}", field=field)


# Invoice schemas
class RegisterInvoiceRequest(StrictModel):
    number: str = Field(..., min_length=1, max_length=64)
    total_amount: Decimal
    currency: Optional[str] = Field(None, description="Currency code, defaults to the configured one")
    issue_date: date
    due_date: date
    client_name: Optional[str] = None
    case_number: Optional[str] = None
    recorded_by: Optional[str] = None


class ConfigureFinancingRequest(StrictModel):
    installment_count: int
    monthly_rate_percent: Decimal
    start_date: date
    recorded_by: Optional[str] = None


# Payment schemas
class ManualEntryModel(StrictModel):
    installment_id: str
    amount: Decimal


class AutomaticDistributionModel(StrictModel):
    mode: Literal["automatic"]

    def to_request(self, currency: Currency) -> AutomaticDistribution:
        return AutomaticDistribution()


class ManualDistributionModel(StrictModel):
    mode: Literal["manual"]
    entries: List[ManualEntryModel] = Field(..., min_length=1)

    def to_request(self, currency: Currency) -> ManualDistribution:
        return ManualDistribution(tuple(
            ManualEntry(entry.installment_id, to_money(entry.amount, currency, "entries.amount"))
            for entry in self.entries
        ))


DistributionModel = Annotated[
    Union[AutomaticDistributionModel, ManualDistributionModel],
    Field(discriminator="mode")
]


class ApplyPaymentRequest(StrictModel):
    amount: Decimal
    method: PaymentMethod
    distribution: DistributionModel
    reference: Optional[str] = None
    note: Optional[str] = None
    recorded_by: Optional[str] = None
    payment_date: Optional[date] = None
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=128)


# Response serialization
def invoice_to_dict(invoice: Invoice) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "number": invoice.number,
        "currency": invoice.currency.code,
        "total_amount": money_to_str(invoice.total_amount),
        "issue_date": invoice.issue_date.isoformat(),
        "due_date": invoice.due_date.isoformat(),
        "payment_modality": invoice.payment_modality.value,
        "installment_count": invoice.installment_count,
        "monthly_rate_percent": (
            str(invoice.monthly_rate_percent) if invoice.monthly_rate_percent is not None else None
        ),
        "financing_start_date": (
            invoice.financing_start_date.isoformat() if invoice.financing_start_date else None
        ),
        "client_name": invoice.client_name,
        "case_number": invoice.case_number,
        "version": invoice.version,
    }


def installment_to_dict(installment: Installment) -> Dict[str, Any]:
    return {
        "id": installment.id,
        "sequence": installment.sequence,
        "due_date": installment.due_date.isoformat(),
        "scheduled_amount": money_to_str(installment.scheduled_amount),
        "capital": money_to_str(installment.capital),
        "interest": money_to_str(installment.interest),
        "balance_after": money_to_str(installment.balance_after),
        "paid_date": installment.paid_date.isoformat() if installment.paid_date else None,
    }


def view_to_dict(view: InstallmentView) -> Dict[str, Any]:
    return {
        "installment_id": view.installment_id,
        "sequence": view.sequence,
        "due_date": view.due_date.isoformat(),
        "scheduled_amount": money_to_str(view.scheduled_amount),
        "paid_amount": money_to_str(view.paid_amount),
        "remaining_balance": money_to_str(view.remaining_balance),
        "status": view.status.value,
        "days_overdue": view.days_overdue,
        "paid_date": view.paid_date.isoformat() if view.paid_date else None,
    }


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "invoice_id": payment.invoice_id,
        "amount": money_to_str(payment.amount),
        "payment_date": payment.payment_date.isoformat(),
        "method": payment.method.value,
        "mode": payment.mode.value,
        "reference": payment.reference,
        "note": payment.note,
        "recorded_by": payment.recorded_by,
        "idempotency_key": payment.idempotency_key,
    }


def allocation_to_dict(allocation: Allocation) -> Dict[str, Any]:
    return {
        "installment_id": allocation.installment_id,
        "amount": money_to_str(allocation.amount),
    }


def payment_result_to_dict(result: PaymentResult) -> Dict[str, Any]:
    return {
        "payment": payment_to_dict(result.payment),
        "allocations": [allocation_to_dict(a) for a in result.allocations],
        "ledger": [view_to_dict(v) for v in result.ledger],
        "replayed": result.replayed,
    }


def summary_to_dict(summary: LedgerSummary) -> Dict[str, Any]:
    return {
        "total_scheduled": money_to_str(summary.total_scheduled),
        "total_paid": money_to_str(summary.total_paid),
        "total_outstanding": money_to_str(summary.total_outstanding),
        "overdue_amount": money_to_str(summary.overdue_amount),
        "paid_count": summary.paid_count,
        "overdue_count": summary.overdue_count,
        "partial_count": summary.partial_count,
        "pending_count": summary.pending_count,
        "progress_percent": str(summary.progress_percent),
        "max_days_overdue": summary.max_days_overdue,
        "next_due_date": summary.next_due.due_date.isoformat() if summary.next_due else None,
    }


def tracking_to_dict(tracking: InvoiceTracking) -> Dict[str, Any]:
    return {
        "invoice": invoice_to_dict(tracking.invoice),
        "summary": summary_to_dict(tracking.summary),
        "ledger": [view_to_dict(v) for v in tracking.ledger],
        "payments": [
            {
                **payment_to_dict(entry.payment),
                "allocations": [allocation_to_dict(a) for a in entry.allocations],
            }
            for entry in tracking.payments
        ],
    }


def portfolio_entry_to_dict(entry: PortfolioEntry) -> Dict[str, Any]:
    invoice = entry.invoice
    return {
        "invoice_id": invoice.id,
        "number": invoice.number,
        "client_name": invoice.client_name,
        "case_number": invoice.case_number,
        "issue_date": invoice.issue_date.isoformat(),
        "total_amount": money_to_str(invoice.total_amount),
        "outstanding": money_to_str(entry.outstanding),
        "installment_count": invoice.installment_count,
        "max_days_overdue": entry.max_days_overdue,
        "status": entry.status.value,
        "next_due_date": (
            entry.summary.next_due.due_date.isoformat() if entry.summary.next_due else None
        ),
    }


def statistics_to_dict(stats: PortfolioStatistics) -> Dict[str, Any]:
    return {
        "currency": stats.currency.code,
        "invoices_with_balance": stats.invoices_with_balance,
        "total_outstanding": money_to_str(stats.total_outstanding),
        "overdue_outstanding": money_to_str(stats.overdue_outstanding),
        "seriously_overdue_count": stats.seriously_overdue_count,
    }
