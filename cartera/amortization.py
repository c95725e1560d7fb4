"""
Amortization Schedule Module

French (constant payment) amortization schedule generation for financed
invoices. Pure computation: no storage, no clock.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Union

from .currency import Money
from .exceptions import InvalidFinancingTermsError


logger = logging.getLogger("cartera.amortization")

DEFAULT_MIN_INSTALLMENTS = 2
DEFAULT_MAX_INSTALLMENTS = 60
DEFAULT_MAX_MONTHLY_RATE = Decimal('10')


@dataclass(frozen=True)
class ScheduleRow:
    """One period of a generated schedule"""
    sequence: int
    due_date: date
    scheduled_amount: Money
    capital: Money
    interest: Money
    balance_after: Money


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def constant_payment(principal: Money, installments: int, monthly_rate: Decimal) -> Money:
    """
    Constant periodic payment: P * r * f / (f - 1) with f = (1 + r)^n,
    or P / n when the rate is zero. Rounded to the currency minor unit.
    """
    if monthly_rate == Decimal('0'):
        return principal / Decimal(installments)

    factor = (Decimal('1') + monthly_rate) ** installments
    return principal * (monthly_rate * factor / (factor - Decimal('1')))


def validate_terms(
    principal: Money,
    installments: int,
    monthly_rate_percent: Decimal,
    min_installments: int = DEFAULT_MIN_INSTALLMENTS,
    max_installments: int = DEFAULT_MAX_INSTALLMENTS,
    max_monthly_rate_percent: Decimal = DEFAULT_MAX_MONTHLY_RATE
) -> None:
    """
    Raises:
        InvalidFinancingTermsError: If any financing term is out of range
    """
    if not principal.is_positive():
        raise InvalidFinancingTermsError(
            "Financed principal must be positive", principal=principal.amount
        )
    if isinstance(installments, bool) or not isinstance(installments, int):
        raise InvalidFinancingTermsError(
            "Installment count must be an integer", installment_count=installments
        )
    if installments < min_installments or installments > max_installments:
        raise InvalidFinancingTermsError(
            f"Installment count must be between {min_installments} and {max_installments}",
            installment_count=installments
        )
    if (not monthly_rate_percent.is_finite()
            or monthly_rate_percent < Decimal('0')
            or monthly_rate_percent > max_monthly_rate_percent):
        raise InvalidFinancingTermsError(
            f"Monthly rate must be between 0 and {max_monthly_rate_percent} percent",
            monthly_rate_percent=monthly_rate_percent
        )


def generate_schedule(
    principal: Money,
    installments: int,
    monthly_rate_percent: Union[Decimal, str, int],
    start_date: date,
    min_installments: int = DEFAULT_MIN_INSTALLMENTS,
    max_installments: int = DEFAULT_MAX_INSTALLMENTS,
    max_monthly_rate_percent: Decimal = DEFAULT_MAX_MONTHLY_RATE
) -> List[ScheduleRow]:
    """
    Generate a French amortization schedule.

    Each period charges interest on the rounded balance left by the previous
    period. The last period amortizes whatever balance remains, so capital
    always sums to the principal and the final balance is exactly zero.

    Args:
        principal: Amount being financed
        installments: Number of monthly periods
        monthly_rate_percent: Monthly interest rate, e.g. Decimal('2.5')
        start_date: Period i falls due i calendar months after this date

    Returns:
        Rows ordered by sequence, 1..installments

    Raises:
        InvalidFinancingTermsError: If the terms are out of range
    """
    if not isinstance(monthly_rate_percent, Decimal):
        monthly_rate_percent = Decimal(str(monthly_rate_percent))

    validate_terms(
        principal, installments, monthly_rate_percent,
        min_installments, max_installments, max_monthly_rate_percent
    )

    currency = principal.currency
    rate = monthly_rate_percent / Decimal('100')
    payment = constant_payment(principal, installments, rate)
    balance = principal
    rows: List[ScheduleRow] = []

    for sequence in range(1, installments + 1):
        interest = balance * rate
        if sequence == installments:
            capital = balance
        else:
            capital = payment - interest
            if capital > balance:
                capital = balance
            if capital.is_negative():
                capital = Money.zero(currency)
        balance = balance - capital

        rows.append(ScheduleRow(
            sequence=sequence,
            due_date=add_months(start_date, sequence),
            scheduled_amount=capital + interest,
            capital=capital,
            interest=interest,
            balance_after=balance
        ))

    # Rounding can exhaust the balance early on tiny principals
    if any(row.scheduled_amount.is_zero() for row in rows):
        raise InvalidFinancingTermsError(
            f"Principal of {principal.to_string()} is too small for {installments} installments",
            principal=principal.amount, installment_count=installments
        )

    logger.debug(
        "Generated %d-period schedule for %s at %s%% monthly, payment %s",
        installments, principal.to_string(), monthly_rate_percent, payment.to_string()
    )
    return rows
