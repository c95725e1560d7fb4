"""
Service wiring and FastAPI dependencies
"""

import threading
from decimal import Decimal
from typing import Optional

from ..audit import AuditTrail
from ..config import CarteraConfig, get_config
from ..currency import Currency
from ..financing import FinancingManager
from ..invoices import InvoiceStore
from ..payments import PaymentManager, PaymentStore
from ..reporting import PortfolioReport
from ..storage import StorageInterface, create_storage


class CarteraSystem:
    """Portfolio engine with all components initialized over one storage"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 settings: Optional[CarteraConfig] = None):
        self.config = settings or get_config()
        self.storage = storage or create_storage(self.config.storage_backend, self.config.database_path)
        self.currency = Currency[self.config.default_currency]

        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        retries = self.config.allocation_max_retries

        self.invoice_store = InvoiceStore(self.storage, self.audit_trail, max_retries=retries)
        self.payment_store = PaymentStore(self.storage)
        self.financing_manager = FinancingManager(
            self.invoice_store, self.payment_store, self.audit_trail,
            min_installments=self.config.min_installments,
            max_installments=self.config.max_installments,
            max_monthly_rate_percent=Decimal(self.config.max_monthly_rate_percent),
            max_retries=retries
        )
        self.payment_manager = PaymentManager(
            self.invoice_store, self.payment_store, self.audit_trail,
            tolerance=Decimal(self.config.payment_tolerance),
            max_retries=retries
        )
        self.portfolio_report = PortfolioReport(
            self.invoice_store, self.payment_store,
            currency=self.currency,
            overdue_report_days=self.config.overdue_report_days
        )

    def close(self) -> None:
        self.storage.close()


# Global system instance, created on first request
cartera_system: Optional[CarteraSystem] = None
_system_lock = threading.Lock()


def get_cartera_system() -> CarteraSystem:
    global cartera_system
    if cartera_system is None:
        # Endpoints run in a threadpool; only one system may own the invoice locks
        with _system_lock:
            if cartera_system is None:
                cartera_system = CarteraSystem()
    return cartera_system
