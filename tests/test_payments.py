"""
Test suite for payment application

Tests the read-allocate-write cycle end to end: persisted payments and
allocations, all-or-nothing failures, stale snapshot retries, idempotent
resubmission, concurrent payments and the tracking view.
"""

import pytest
import tempfile
import threading
from decimal import Decimal
from datetime import date
from pathlib import Path

from cartera.currency import Money, Currency
from cartera.storage import InMemoryStorage, SQLiteStorage
from cartera.audit import AuditTrail, AuditEventType
from cartera.invoices import InvoiceStore
from cartera.financing import FinancingManager
from cartera.ledger import InstallmentStatus
from cartera.allocation import AutomaticDistribution, ManualDistribution, ManualEntry, AllocationMode
from cartera.payments import PaymentManager, PaymentMethod, PaymentStore
from cartera.exceptions import (
    AllocationError, ConcurrencyConflictError, DistributionMismatchError,
    InvalidAmountError, InvoiceNotFoundError, NothingToAllocateError,
    OverpaymentError, ValidationError
)


AS_OF = date(2024, 5, 15)  # Installments 1 (Apr 1) and 2 (May 1) are overdue


def cop(value) -> Money:
    return Money(Decimal(str(value)), Currency.COP)


def snapshot(storage):
    return {
        table: sorted(str(r) for r in storage.load_all(table))
        for table in ("invoices", "installments", "payments", "allocations", "audit_events")
    }


class TestApplyPayment:

    def test_automatic_payment_fills_overdue_first(self, payment_manager, financed_invoice):
        result = payment_manager.apply_payment(
            financed_invoice.id, cop(200000), PaymentMethod.TRANSFER, AutomaticDistribution(),
            reference="TRX-77", recorded_by="ana", as_of=AS_OF
        )

        assert result.payment.amount == cop(200000)
        assert result.payment.mode == AllocationMode.AUTOMATIC
        assert result.payment.payment_date == AS_OF
        assert [(a.amount, a.note) for a in result.allocations] == [
            (cop(181550), "Automatic allocation"),
            (cop(18450), "Automatic allocation"),
        ]
        assert result.ledger[0].status == InstallmentStatus.PAID
        assert result.ledger[0].paid_date == AS_OF
        assert result.ledger[1].status == InstallmentStatus.OVERDUE
        assert result.ledger[1].remaining_balance == cop(163100)
        assert result.ledger[2].status == InstallmentStatus.PENDING
        assert not result.replayed

    def test_persists_payment_allocations_and_version(self, payment_manager, payment_store,
                                                      invoice_store, financed_invoice):
        result = payment_manager.apply_payment(
            financed_invoice.id, cop(100000), PaymentMethod.CASH, AutomaticDistribution(), as_of=AS_OF
        )

        stored = payment_store.get_payment(result.payment.id)
        assert stored.amount == cop(100000)
        assert stored.method == PaymentMethod.CASH
        allocations = payment_store.get_allocations_for_payment(result.payment.id)
        assert Money.sum((a.amount for a in allocations), Currency.COP) == stored.amount
        assert invoice_store.require_invoice(financed_invoice.id).version == financed_invoice.version + 1

    def test_manual_payment(self, payment_manager, invoice_store, financed_invoice):
        installments = invoice_store.get_installments(financed_invoice.id)
        request = ManualDistribution((
            ManualEntry(installments[3].id, cop(50000)),
            ManualEntry(installments[4].id, cop(25000)),
        ))

        result = payment_manager.apply_payment(
            financed_invoice.id, cop(75000), PaymentMethod.CHECK, request, as_of=AS_OF
        )

        assert result.payment.mode == AllocationMode.MANUAL
        assert {a.installment_id: a.amount for a in result.allocations} == {
            installments[3].id: cop(50000),
            installments[4].id: cop(25000),
        }
        assert all(a.note == "Manual allocation" for a in result.allocations)
        assert result.ledger[3].status == InstallmentStatus.PARTIAL

    def test_payment_is_audited(self, payment_manager, audit_trail, financed_invoice):
        result = payment_manager.apply_payment(
            financed_invoice.id, cop(100000), PaymentMethod.DEPOSIT, AutomaticDistribution(),
            recorded_by="ana", as_of=AS_OF
        )

        event = audit_trail.get_events_for_entity("invoice", financed_invoice.id)[-1]
        assert event.event_type == AuditEventType.PAYMENT_APPLIED
        assert event.user_id == "ana"
        assert event.metadata["payment_id"] == result.payment.id
        assert event.metadata["method"] == "deposit"
        assert event.metadata["allocations"][0]["amount"] == "100000"
        assert audit_trail.verify_integrity()["valid"]

    def test_pays_off_invoice_in_full(self, payment_manager, financed_invoice):
        total = Decimal('181550') * 5 + Decimal('181550')
        result = payment_manager.apply_payment(
            financed_invoice.id, cop(total), PaymentMethod.TRANSFER, AutomaticDistribution(), as_of=AS_OF
        )

        assert all(v.status == InstallmentStatus.PAID for v in result.ledger)
        with pytest.raises(NothingToAllocateError):
            payment_manager.apply_payment(
                financed_invoice.id, cop(1), PaymentMethod.CASH, AutomaticDistribution(), as_of=AS_OF
            )

    def test_never_over_allocates_an_installment(self, payment_manager, invoice_store,
                                                 payment_store, financed_invoice):
        for amount in (50000, 150000, 300000, 20000, 181550):
            payment_manager.apply_payment(
                financed_invoice.id, cop(amount), PaymentMethod.CASH, AutomaticDistribution(), as_of=AS_OF
            )

        allocations = payment_store.get_allocations_for_invoice(financed_invoice.id)
        for installment in invoice_store.get_installments(financed_invoice.id):
            paid = Money.sum(
                (a.amount for a in allocations if a.installment_id == installment.id), Currency.COP
            )
            assert paid <= installment.scheduled_amount


class TestRejections:

    def test_rejections_change_nothing(self, payment_manager, storage, invoice_store, financed_invoice):
        installments = invoice_store.get_installments(financed_invoice.id)
        before = snapshot(storage)

        attempts = [
            (cop(0), AutomaticDistribution(), InvalidAmountError),
            (cop(2000000), AutomaticDistribution(), OverpaymentError),
            (cop(100000), ManualDistribution((ManualEntry(installments[0].id, cop(99000)),)),
             DistributionMismatchError),
        ]
        for amount, request, error in attempts:
            with pytest.raises(error):
                payment_manager.apply_payment(
                    financed_invoice.id, amount, PaymentMethod.CASH, request, as_of=AS_OF
                )

        assert snapshot(storage) == before

    def test_zero_manual_distribution_records_nothing(self, payment_manager, financing_manager,
                                                      invoice_store, storage):
        usd = Currency.USD
        invoice = invoice_store.register_invoice(
            "INV-USD", Money(Decimal('1000.00'), usd), date(2024, 1, 1), date(2024, 1, 31)
        )
        financing_manager.configure_financing(invoice.id, 3, Decimal('1'), date(2024, 1, 1))
        first = invoice_store.get_installments(invoice.id)[0]
        before = snapshot(storage)

        with pytest.raises(DistributionMismatchError):
            payment_manager.apply_payment(
                invoice.id, Money(Decimal('0.01'), usd), PaymentMethod.CASH,
                ManualDistribution((ManualEntry(first.id, Money.zero(usd)),)), as_of=AS_OF
            )

        assert snapshot(storage) == before

    def test_cash_invoice_has_nothing_to_allocate(self, payment_manager, invoice):
        with pytest.raises(NothingToAllocateError):
            payment_manager.apply_payment(
                invoice.id, cop(1000), PaymentMethod.CASH, AutomaticDistribution(), as_of=AS_OF
            )

    def test_unknown_invoice(self, payment_manager):
        with pytest.raises(InvoiceNotFoundError):
            payment_manager.apply_payment(
                "nope", cop(1000), PaymentMethod.CASH, AutomaticDistribution(), as_of=AS_OF
            )

    def test_currency_mismatch(self, payment_manager, financed_invoice):
        with pytest.raises(ValidationError):
            payment_manager.apply_payment(
                financed_invoice.id, Money(Decimal('10.00'), Currency.USD), PaymentMethod.CASH,
                AutomaticDistribution(), as_of=AS_OF
            )

    def test_method_must_be_enum(self, payment_manager, financed_invoice):
        with pytest.raises(ValidationError):
            payment_manager.apply_payment(
                financed_invoice.id, cop(1000), "bitcoin", AutomaticDistribution(), as_of=AS_OF
            )

    def test_failure_mid_write_rolls_back(self, payment_manager, payment_store, storage,
                                          audit_trail, financed_invoice, monkeypatch):
        before = snapshot(storage)
        original = payment_store.save_allocation
        calls = []

        def flaky_save(allocation, invoice_id):
            calls.append(allocation)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            original(allocation, invoice_id)

        monkeypatch.setattr(payment_store, "save_allocation", flaky_save)

        with pytest.raises(RuntimeError):
            payment_manager.apply_payment(
                financed_invoice.id, cop(300000), PaymentMethod.CASH, AutomaticDistribution(), as_of=AS_OF
            )

        assert snapshot(storage) == before
        assert audit_trail.verify_integrity()["valid"]


class TestConcurrency:

    class FlakyInvoiceStorage(InMemoryStorage):
        """Reports a concurrent invoice update for the first N version checks"""

        def __init__(self, conflicts):
            super().__init__()
            self.conflicts = conflicts

        def compare_and_save(self, table, record_id, data, expected_version):
            if table == "invoices" and expected_version is not None and self.conflicts > 0:
                self.conflicts -= 1
                return False
            return super().compare_and_save(table, record_id, data, expected_version)

    def build(self, storage, max_retries=3):
        audit = AuditTrail(storage)
        invoices = InvoiceStore(storage, audit)
        payments = PaymentStore(storage)
        invoice = invoices.register_invoice("FAC-9", cop(300000), date(2024, 1, 1), date(2024, 1, 31))
        FinancingManager(invoices, payments, audit).configure_financing(
            invoice.id, 3, Decimal('0'), date(2024, 1, 1)
        )
        manager = PaymentManager(invoices, payments, audit, max_retries=max_retries)
        return manager, payments, invoice

    def test_stale_snapshot_is_retried(self):
        storage = self.FlakyInvoiceStorage(conflicts=0)
        manager, payments, invoice = self.build(storage)
        storage.conflicts = 2

        result = manager.apply_payment(
            invoice.id, cop(50000), PaymentMethod.CASH, AutomaticDistribution(), as_of=date(2024, 1, 15)
        )

        assert result.payment.amount == cop(50000)
        assert len(payments.get_payments_for_invoice(invoice.id)) == 1

    def test_retries_exhausted(self):
        storage = self.FlakyInvoiceStorage(conflicts=0)
        manager, payments, invoice = self.build(storage, max_retries=2)
        storage.conflicts = 5

        with pytest.raises(ConcurrencyConflictError):
            manager.apply_payment(
                invoice.id, cop(50000), PaymentMethod.CASH, AutomaticDistribution(), as_of=date(2024, 1, 15)
            )
        assert payments.get_payments_for_invoice(invoice.id) == []

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_concurrent_payments_never_over_allocate(self, backend):
        with tempfile.TemporaryDirectory() as temp_dir:
            if backend == "memory":
                storage = InMemoryStorage()
            else:
                storage = SQLiteStorage(Path(temp_dir) / "concurrency.db")
            manager, payments, invoice = self.build(storage)

            successes, rejections, unexpected = [], [], []

            def pay():
                try:
                    successes.append(manager.apply_payment(
                        invoice.id, cop(50000), PaymentMethod.TRANSFER, AutomaticDistribution(),
                        as_of=date(2024, 1, 15)
                    ))
                except AllocationError as e:
                    rejections.append(e)
                except Exception as e:
                    unexpected.append(e)

            threads = [threading.Thread(target=pay) for _ in range(10)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert unexpected == []
            assert len(successes) == 6
            assert len(rejections) == 4
            assert all(isinstance(e, (OverpaymentError, NothingToAllocateError)) for e in rejections)

            allocations = payments.get_allocations_for_invoice(invoice.id)
            assert Money.sum((a.amount for a in allocations), Currency.COP) == cop(300000)
            per_installment = {}
            for a in allocations:
                per_installment[a.installment_id] = per_installment.get(a.installment_id, 0) + a.amount.amount
            assert sorted(per_installment.values()) == [Decimal('100000')] * 3
            storage.close()

    def test_payments_on_different_invoices(self, audit_trail, invoice_store, payment_store,
                                            financing_manager, payment_manager):
        invoices = []
        for n in range(4):
            inv = invoice_store.register_invoice(
                f"FAC-1{n}", cop(200000), date(2024, 1, 1), date(2024, 1, 31)
            )
            financing_manager.configure_financing(inv.id, 2, Decimal('0'), date(2024, 1, 1))
            invoices.append(inv)

        errors = []

        def pay(invoice_id):
            try:
                payment_manager.apply_payment(
                    invoice_id, cop(100000), PaymentMethod.CASH, AutomaticDistribution(),
                    as_of=date(2024, 1, 15)
                )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=pay, args=(inv.id,)) for inv in invoices]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        for inv in invoices:
            assert len(payment_store.get_payments_for_invoice(inv.id)) == 1
        assert audit_trail.verify_integrity()["valid"]


class TestIdempotency:

    def test_resubmission_returns_original(self, payment_manager, payment_store, financed_invoice):
        first = payment_manager.apply_payment(
            financed_invoice.id, cop(100000), PaymentMethod.CASH, AutomaticDistribution(),
            idempotency_key="form-123", as_of=AS_OF
        )
        second = payment_manager.apply_payment(
            financed_invoice.id, cop(100000), PaymentMethod.CASH, AutomaticDistribution(),
            idempotency_key="form-123", as_of=AS_OF
        )

        assert second.replayed
        assert second.payment.id == first.payment.id
        assert [a.id for a in second.allocations] == [a.id for a in first.allocations]
        assert len(payment_store.get_payments_for_invoice(financed_invoice.id)) == 1

    def test_different_keys_create_payments(self, payment_manager, payment_store, financed_invoice):
        for key in ("a", "b"):
            payment_manager.apply_payment(
                financed_invoice.id, cop(1000), PaymentMethod.CASH, AutomaticDistribution(),
                idempotency_key=key, as_of=AS_OF
            )
        assert len(payment_store.get_payments_for_invoice(financed_invoice.id)) == 2


class TestTracking:

    def test_tracking_view(self, payment_manager, invoice_store, financed_invoice):
        payment_manager.apply_payment(
            financed_invoice.id, cop(181550), PaymentMethod.CASH, AutomaticDistribution(),
            payment_date=date(2024, 4, 1), as_of=date(2024, 4, 1)
        )
        payment_manager.apply_payment(
            financed_invoice.id, cop(50000), PaymentMethod.TRANSFER, AutomaticDistribution(),
            payment_date=date(2024, 4, 20), as_of=date(2024, 4, 20)
        )

        tracking = payment_manager.get_invoice_tracking(financed_invoice.id, as_of=AS_OF)

        assert tracking.invoice.id == financed_invoice.id
        assert tracking.summary.paid_count == 1
        assert tracking.summary.overdue_count == 1
        assert tracking.summary.pending_count == 4
        assert tracking.summary.total_paid == cop(231550)
        assert tracking.summary.max_days_overdue == 14
        assert tracking.summary.overdue_amount == cop(131550)
        assert tracking.ledger[0].paid_date == date(2024, 4, 1)

        # Most recent payment first, each with its distribution
        assert [p.payment.amount for p in tracking.payments] == [cop(50000), cop(181550)]
        assert len(tracking.payments[0].allocations) == 1
        assert tracking.payments[0].allocations[0].installment_id == tracking.ledger[1].installment_id

    def test_unknown_invoice(self, payment_manager):
        with pytest.raises(InvoiceNotFoundError):
            payment_manager.get_invoice_tracking("nope")
