"""
Cartera

Accounts-receivable engine for financed invoices: French-system amortization
schedules, live installment ledgers and payment allocation with audit trails.
"""

__version__ = "1.0.0"
