"""
Portfolio Reporting Module

Accounts-receivable listing of financed invoices with search, status
filters and headline statistics. Everything is derived from the live
ledgers at ``as_of``.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import List, Optional

from .currency import Currency, Money
from .invoices import Invoice, InvoiceStore, PaymentModality
from .ledger import LedgerSummary, build_ledger, summarize_ledger
from .payments import PaymentStore


class PortfolioStatus(Enum):
    ALL = "all"
    OVERDUE = "overdue"
    UPCOMING = "upcoming"
    PAID = "paid"


@dataclass(frozen=True)
class PortfolioEntry:
    invoice: Invoice
    summary: LedgerSummary
    status: PortfolioStatus

    @property
    def outstanding(self) -> Money:
        return self.summary.total_outstanding

    @property
    def max_days_overdue(self) -> int:
        return self.summary.max_days_overdue


@dataclass(frozen=True)
class PortfolioStatistics:
    currency: Currency
    invoices_with_balance: int
    total_outstanding: Money
    overdue_outstanding: Money
    seriously_overdue_count: int  # Invoices overdue beyond the report threshold


def classify(summary: LedgerSummary) -> PortfolioStatus:
    if summary.total_outstanding.is_zero():
        return PortfolioStatus.PAID
    if summary.overdue_count > 0:
        return PortfolioStatus.OVERDUE
    return PortfolioStatus.UPCOMING


def _matches_search(invoice: Invoice, search: str) -> bool:
    needle = search.strip().lower()
    if not needle:
        return True
    haystack = [invoice.number, invoice.client_name or "", invoice.case_number or ""]
    return any(needle in value.lower() for value in haystack)


class PortfolioReport:
    """
    Portfolio of financed invoices
    """

    def __init__(
        self,
        invoice_store: InvoiceStore,
        payment_store: PaymentStore,
        currency: Currency = Currency.COP,
        overdue_report_days: int = 30
    ):
        self.invoice_store = invoice_store
        self.payment_store = payment_store
        self.currency = currency
        self.overdue_report_days = overdue_report_days

    def _entries(self, as_of: date) -> List[PortfolioEntry]:
        entries = []
        for invoice in self.invoice_store.list_invoices(PaymentModality.FINANCED):
            ledger = build_ledger(
                self.invoice_store.get_installments(invoice.id),
                self.payment_store.get_allocations_for_invoice(invoice.id),
                as_of
            )
            summary = summarize_ledger(ledger, invoice.currency)
            entries.append(PortfolioEntry(invoice=invoice, summary=summary, status=classify(summary)))
        return entries

    def list_portfolio(
        self,
        search: Optional[str] = None,
        status_filter: PortfolioStatus = PortfolioStatus.ALL,
        as_of: Optional[date] = None
    ) -> List[PortfolioEntry]:
        """
        Financed invoices, newest first

        Args:
            search: Case-insensitive match on invoice number, client or case number
            status_filter: Keep only OVERDUE, UPCOMING or PAID invoices
            as_of: Date used for overdue classification (defaults to today)
        """
        as_of = as_of or date.today()
        entries = [
            entry for entry in self._entries(as_of)
            if (status_filter == PortfolioStatus.ALL or entry.status == status_filter)
            and (not search or _matches_search(entry.invoice, search))
        ]
        entries.sort(key=lambda e: e.invoice.created_at, reverse=True)
        return entries

    def portfolio_statistics(
        self,
        as_of: Optional[date] = None,
        currency: Optional[Currency] = None
    ) -> PortfolioStatistics:
        """
        Headline figures for the invoices held in one currency

        Amounts are never converted: invoices in other currencies are left
        out. ``currency`` defaults to the report currency.
        """
        as_of = as_of or date.today()
        currency = currency or self.currency
        open_entries = [
            e for e in self._entries(as_of)
            if e.status != PortfolioStatus.PAID and e.invoice.currency == currency
        ]

        return PortfolioStatistics(
            currency=currency,
            invoices_with_balance=len(open_entries),
            total_outstanding=Money.sum((e.outstanding for e in open_entries), currency),
            overdue_outstanding=Money.sum((e.summary.overdue_amount for e in open_entries), currency),
            seriously_overdue_count=sum(
                1 for e in open_entries if e.max_days_overdue > self.overdue_report_days
            )
        )
