"""
Financing Module

Turns an invoice into a financed invoice: generates its amortization
schedule and persists the rows as installments.
"""

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional, Union

from .amortization import (
    DEFAULT_MAX_INSTALLMENTS, DEFAULT_MAX_MONTHLY_RATE, DEFAULT_MIN_INSTALLMENTS,
    generate_schedule
)
from .audit import AuditTrail, AuditEventType
from .exceptions import FinancingLockedError, InvalidFinancingTermsError
from .invoices import InvoiceStore, PaymentModality
from .ledger import Installment
from .logging_config import log_action
from .payments import PaymentStore
from .storage import retry_on_stale


logger = logging.getLogger("cartera.financing")


class FinancingManager:
    """
    Configures installment financing on invoices
    """

    def __init__(
        self,
        invoice_store: InvoiceStore,
        payment_store: PaymentStore,
        audit_trail: Optional[AuditTrail] = None,
        min_installments: int = DEFAULT_MIN_INSTALLMENTS,
        max_installments: int = DEFAULT_MAX_INSTALLMENTS,
        max_monthly_rate_percent: Decimal = DEFAULT_MAX_MONTHLY_RATE,
        max_retries: int = 3
    ):
        self.invoice_store = invoice_store
        self.payment_store = payment_store
        self.storage = invoice_store.storage
        self.audit_trail = audit_trail
        self.min_installments = min_installments
        self.max_installments = max_installments
        self.max_monthly_rate_percent = max_monthly_rate_percent
        self.max_retries = max_retries

    def configure_financing(
        self,
        invoice_id: str,
        installment_count: int,
        monthly_rate_percent: Union[Decimal, str, int],
        start_date: date,
        recorded_by: Optional[str] = None
    ) -> List[Installment]:
        """
        Finance an invoice over ``installment_count`` monthly installments.

        The whole invoice total is financed. Reconfiguring replaces the
        previous schedule, which is only allowed while no payment has been
        allocated to it.

        Args:
            invoice_id: Invoice to finance
            installment_count: Number of installments
            monthly_rate_percent: Monthly interest rate in percent
            start_date: Installment i falls due i months after this date
            recorded_by: User configuring the financing

        Returns:
            Persisted installments ordered by sequence

        Raises:
            InvoiceNotFoundError: If the invoice does not exist
            InvalidFinancingTermsError: If the terms are out of range
            FinancingLockedError: If payments were already allocated
        """
        if not isinstance(monthly_rate_percent, Decimal):
            try:
                monthly_rate_percent = Decimal(str(monthly_rate_percent))
            except ArithmeticError:
                raise InvalidFinancingTermsError(
                    "Monthly rate is not a number", monthly_rate_percent=monthly_rate_percent
                )

        with self.invoice_store.with_invoice_lock(invoice_id):
            return retry_on_stale(
                lambda: self._configure_once(
                    invoice_id, installment_count, monthly_rate_percent, start_date, recorded_by
                ),
                self.max_retries,
                f"financing of invoice {invoice_id}"
            )

    def _configure_once(
        self,
        invoice_id: str,
        installment_count: int,
        monthly_rate_percent: Decimal,
        start_date: date,
        recorded_by: Optional[str]
    ) -> List[Installment]:
        invoice = self.invoice_store.require_invoice(invoice_id)

        if self.payment_store.has_allocations(invoice_id):
            raise FinancingLockedError(
                f"Invoice {invoice.number} already has allocated payments",
                invoice_id=invoice_id
            )

        rows = generate_schedule(
            invoice.total_amount,
            installment_count,
            monthly_rate_percent,
            start_date,
            min_installments=self.min_installments,
            max_installments=self.max_installments,
            max_monthly_rate_percent=self.max_monthly_rate_percent
        )

        now = datetime.now(timezone.utc)
        installments = [
            Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                invoice_id=invoice_id,
                sequence=row.sequence,
                due_date=row.due_date,
                scheduled_amount=row.scheduled_amount,
                capital=row.capital,
                interest=row.interest,
                balance_after=row.balance_after
            )
            for row in rows
        ]

        invoice.payment_modality = PaymentModality.FINANCED
        invoice.installment_count = installment_count
        invoice.monthly_rate_percent = monthly_rate_percent
        invoice.financing_start_date = start_date
        invoice.financed_principal = invoice.total_amount

        with self.storage.atomic():
            self.invoice_store.replace_installments(invoice_id, installments)
            self.invoice_store.save_invoice(invoice, expected_version=invoice.version)

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.FINANCING_CONFIGURED,
                    entity_type="invoice",
                    entity_id=invoice_id,
                    metadata={
                        "installment_count": installment_count,
                        "monthly_rate_percent": monthly_rate_percent,
                        "start_date": start_date.isoformat(),
                        "principal": invoice.total_amount.amount,
                        "scheduled_payment": rows[0].scheduled_amount.amount,
                    },
                    user_id=recorded_by
                )

        log_action(
            logger, "info",
            f"Financed invoice {invoice.number}: {installment_count} installments "
            f"at {monthly_rate_percent}% monthly from {start_date.isoformat()}",
            user_id=recorded_by, action="configure_financing", invoice_id=invoice_id
        )
        return installments

    def get_schedule(self, invoice_id: str) -> List[Installment]:
        """
        Persisted installments of an invoice, ordered by sequence

        Raises:
            InvoiceNotFoundError: If the invoice does not exist
        """
        self.invoice_store.require_invoice(invoice_id)
        return self.invoice_store.get_installments(invoice_id)
