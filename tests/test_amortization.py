"""
Test suite for amortization module

Tests French schedule generation: constant payment, per-period interest on
the running balance, month arithmetic and the zero final balance.
"""

import pytest
from decimal import Decimal, ROUND_HALF_UP
from datetime import date

from cartera.currency import Money, Currency
from cartera.amortization import generate_schedule, add_months, constant_payment, ScheduleRow
from cartera.exceptions import InvalidFinancingTermsError, ValidationError


def cop(value) -> Money:
    return Money(Decimal(str(value)), Currency.COP)


class TestAddMonths:

    def test_simple_increment(self):
        assert add_months(date(2024, 3, 1), 1) == date(2024, 4, 1)
        assert add_months(date(2024, 3, 1), 10) == date(2025, 1, 1)

    def test_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 1, 31), 3) == date(2024, 4, 30)


class TestScenario:
    """One million pesos over six months at 2.5% monthly"""

    @pytest.fixture
    def schedule(self):
        return generate_schedule(cop(1000000), 6, Decimal('2.5'), date(2024, 3, 1))

    def test_first_period(self, schedule):
        f = Decimal('1.025') ** 6
        expected_payment = (Decimal('1000000') * Decimal('0.025') * f / (f - 1)).quantize(
            Decimal('1'), rounding=ROUND_HALF_UP
        )
        assert expected_payment == Decimal('181550')

        first = schedule[0]
        assert first.sequence == 1
        assert first.interest == cop(25000)
        assert first.scheduled_amount == cop(expected_payment)
        assert first.capital == cop(expected_payment - 25000)
        assert first.balance_after == cop(843450)

    def test_rows_match_hand_computation(self, schedule):
        interest = [row.interest.amount for row in schedule]
        balances = [row.balance_after.amount for row in schedule]

        assert interest == [Decimal(v) for v in ('25000', '21086', '17075', '12963', '8748', '4428')]
        assert balances == [Decimal(v) for v in ('843450', '682986', '518511', '349924', '177122', '0')]

    def test_last_period_closes_balance(self, schedule):
        last = schedule[-1]
        assert last.sequence == 6
        assert last.balance_after.is_zero()
        assert last.capital == cop(177122)
        assert last.scheduled_amount == cop(181550)

    def test_due_dates(self, schedule):
        assert [row.due_date for row in schedule] == [
            date(2024, 4, 1), date(2024, 5, 1), date(2024, 6, 1),
            date(2024, 7, 1), date(2024, 8, 1), date(2024, 9, 1)
        ]

    def test_rows_are_immutable(self, schedule):
        assert isinstance(schedule[0], ScheduleRow)
        with pytest.raises(Exception):
            schedule[0].capital = cop(1)


class TestScheduleProperties:

    @pytest.mark.parametrize("principal", ["100000", "1000000", "12345679"])
    @pytest.mark.parametrize("installments", [2, 7, 60])
    @pytest.mark.parametrize("rate", ["0", "0.5", "2.5", "10"])
    def test_invariants(self, principal, installments, rate):
        principal_money = cop(principal)
        r = Decimal(rate) / 100
        schedule = generate_schedule(principal_money, installments, Decimal(rate), date(2024, 1, 15))

        assert len(schedule) == installments
        assert [row.sequence for row in schedule] == list(range(1, installments + 1))
        assert Money.sum((row.capital for row in schedule), Currency.COP) == principal_money
        assert schedule[-1].balance_after.is_zero()

        balance = principal_money
        for row in schedule:
            assert row.scheduled_amount == row.capital + row.interest
            assert row.interest == balance * r
            assert not row.capital.is_negative()
            assert not row.balance_after.is_negative()
            balance = balance - row.capital
            assert row.balance_after == balance

    def test_zero_rate_splits_principal(self):
        schedule = generate_schedule(cop(1000000), 3, Decimal('0'), date(2024, 1, 1))

        assert all(row.interest.is_zero() for row in schedule)
        assert [row.capital.amount for row in schedule] == [
            Decimal('333333'), Decimal('333333'), Decimal('333334')
        ]

    def test_dollar_schedule(self):
        principal = Money(Decimal('10000.00'), Currency.USD)
        schedule = generate_schedule(principal, 12, Decimal('1.5'), date(2024, 1, 1))

        assert Money.sum((row.capital for row in schedule), Currency.USD) == principal
        assert schedule[-1].balance_after.is_zero()
        assert schedule[0].interest == Money(Decimal('150.00'), Currency.USD)

    def test_rate_given_as_string(self):
        schedule = generate_schedule(cop(500000), 2, "1", date(2024, 1, 1))
        assert schedule[0].interest == cop(5000)

    def test_constant_payment_zero_rate(self):
        assert constant_payment(cop(900), 3, Decimal('0')) == cop(300)


class TestScheduleRejections:

    @pytest.mark.parametrize("installments", [0, 1, 61, 120])
    def test_installment_count_out_of_range(self, installments):
        with pytest.raises(InvalidFinancingTermsError):
            generate_schedule(cop(1000000), installments, Decimal('2'), date(2024, 1, 1))

    @pytest.mark.parametrize("rate", ["-0.1", "10.01", "25"])
    def test_rate_out_of_range(self, rate):
        with pytest.raises(InvalidFinancingTermsError):
            generate_schedule(cop(1000000), 6, Decimal(rate), date(2024, 1, 1))

    @pytest.mark.parametrize("principal", ["0", "-1000"])
    def test_non_positive_principal(self, principal):
        with pytest.raises(InvalidFinancingTermsError):
            generate_schedule(cop(principal), 6, Decimal('2'), date(2024, 1, 1))

    @pytest.mark.parametrize("principal, installments", [
        ("10", 60),   # Payment rounds to zero
        ("1", 2),     # Payment rounds to 1, nothing left for the last row
        ("999", 60),  # Payment of 17 exhausts the balance at row 59
    ])
    def test_principal_too_small_for_term(self, principal, installments):
        with pytest.raises(InvalidFinancingTermsError):
            generate_schedule(cop(principal), installments, Decimal('0'), date(2024, 1, 1))

    def test_smallest_principal_for_term(self):
        schedule = generate_schedule(cop(2), 2, Decimal('0'), date(2024, 1, 1))
        assert [row.scheduled_amount for row in schedule] == [cop(1), cop(1)]

    def test_custom_limits(self):
        with pytest.raises(InvalidFinancingTermsError):
            generate_schedule(cop(1000000), 30, Decimal('2'), date(2024, 1, 1), max_installments=24)

    def test_terms_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            generate_schedule(cop(1000000), 1, Decimal('2'), date(2024, 1, 1))
        assert issubclass(InvalidFinancingTermsError, ValidationError)
