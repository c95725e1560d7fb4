"""
Shared fixtures: an in-memory portfolio engine wired like the API wires it
"""

import pytest
from decimal import Decimal
from datetime import date

from cartera.currency import Money, Currency
from cartera.storage import InMemoryStorage
from cartera.audit import AuditTrail
from cartera.invoices import InvoiceStore
from cartera.payments import PaymentStore, PaymentManager
from cartera.financing import FinancingManager
from cartera.reporting import PortfolioReport


def cop(value) -> Money:
    return Money(Decimal(str(value)), Currency.COP)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def invoice_store(storage, audit_trail):
    return InvoiceStore(storage, audit_trail)


@pytest.fixture
def payment_store(storage):
    return PaymentStore(storage)


@pytest.fixture
def financing_manager(invoice_store, payment_store, audit_trail):
    return FinancingManager(invoice_store, payment_store, audit_trail)


@pytest.fixture
def payment_manager(invoice_store, payment_store, audit_trail):
    return PaymentManager(invoice_store, payment_store, audit_trail)


@pytest.fixture
def portfolio_report(invoice_store, payment_store):
    return PortfolioReport(invoice_store, payment_store)


@pytest.fixture
def invoice(invoice_store):
    return invoice_store.register_invoice(
        number="FAC-0001",
        total_amount=cop(1000000),
        issue_date=date(2024, 3, 1),
        due_date=date(2024, 3, 31),
        client_name="Laura Gómez",
        case_number="CASO-2024-015"
    )


@pytest.fixture
def financed_invoice(invoice, financing_manager, invoice_store):
    """FAC-0001 financed over 6 months at 2.5% starting 2024-03-01"""
    financing_manager.configure_financing(invoice.id, 6, Decimal('2.5'), date(2024, 3, 1))
    return invoice_store.require_invoice(invoice.id)
