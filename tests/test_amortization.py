"""
Test suite for amortization module

Tests French schedule generation, the zero-rate fallback, due date anchoring
and the rounding rule that lets the final installment absorb the residual.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.amortization import (
    AmortizationCalculator, PaymentFrequency, add_months, due_date_for,
    split_evenly, split_with_residual
)
from lending_core.currency import Currency, round_amount
from lending_core.exceptions import ValidationError


class TestScheduleGeneration:
    """Test compute_schedule"""

    def setup_method(self):
        """Set up test fixtures"""
        self.calculator = AmortizationCalculator()

    def test_reference_loan(self):
        """Test 120000 at 65% over 12 months with 21% tax"""
        schedule = self.calculator.compute_schedule(
            principal=Decimal('120000'),
            annual_rate_percent=Decimal('65'),
            periods=12,
            frequency=PaymentFrequency.MONTHLY,
            tax_on_interest_percent=Decimal('21'),
            start_date=date(2024, 1, 1)
        )

        assert len(schedule.lines) == 12
        assert schedule.lines[0].due_date == date(2024, 2, 1)
        assert schedule.lines[-1].due_date == date(2025, 1, 1)

        first = schedule.lines[0]
        assert round_amount(first.interest, Currency.PESOS) == Decimal('6500.00')
        assert round_amount(first.tax, Currency.PESOS) == Decimal('1365.00')
        assert first.total == first.principal + first.interest + first.tax

        # Cumulative principal equals the amount lent
        assert sum(schedule.rounded_principals(Currency.PESOS)) == Decimal('120000.00')
        assert schedule.lines[-1].closing_balance == Decimal('0')

    def test_schedule_sum_invariant(self):
        """Test rounded installments add up to the rounded total payable"""
        schedule = self.calculator.compute_schedule(
            principal=Decimal('87654.32'),
            annual_rate_percent=Decimal('47.5'),
            periods=36,
            tax_on_interest_percent=Decimal('10.5'),
            start_date=date(2024, 3, 15)
        )

        totals = schedule.rounded_totals(Currency.PESOS)
        assert sum(totals) == round_amount(schedule.total_payable, Currency.PESOS)
        assert all(t == round_amount(t, Currency.PESOS) for t in totals)
        assert sum(schedule.rounded_principals(Currency.PESOS)) == Decimal('87654.32')

    def test_constant_base_payment(self):
        """Test principal plus interest equals the base payment in every period"""
        schedule = self.calculator.compute_schedule(
            principal=Decimal('50000'), annual_rate_percent=Decimal('30'), periods=24,
            start_date=date(2024, 1, 1)
        )

        payment = round_amount(schedule.periodic_payment, Currency.PESOS)
        for line in schedule.lines:
            assert round_amount(line.principal + line.interest, Currency.PESOS) == payment
            assert line.tax == Decimal('0')

    def test_zero_rate_fallback(self):
        """Test zero interest divides the principal evenly"""
        schedule = self.calculator.compute_schedule(
            principal=Decimal('12000'), annual_rate_percent=Decimal('0'), periods=12,
            start_date=date(2024, 1, 1)
        )

        assert schedule.periodic_payment == Decimal('1000')
        assert all(line.interest == 0 for line in schedule.lines)
        assert schedule.rounded_totals(Currency.PESOS) == [Decimal('1000.00')] * 12

    def test_last_installment_absorbs_residual(self):
        """Test 100 over 3 periods rounds to 33.33, 33.33, 33.34"""
        schedule = self.calculator.compute_schedule(
            principal=Decimal('100'), annual_rate_percent=Decimal('0'), periods=3,
            start_date=date(2024, 1, 1)
        )

        assert schedule.rounded_totals(Currency.PESOS) == [
            Decimal('33.33'), Decimal('33.33'), Decimal('33.34')
        ]

    def test_semiannual_frequency(self):
        """Test semiannual periods use half the annual rate and six-month steps"""
        schedule = self.calculator.compute_schedule(
            principal=Decimal('10000'), annual_rate_percent=Decimal('20'), periods=2,
            frequency="semestral", start_date=date(2024, 1, 15)
        )

        assert schedule.frequency == PaymentFrequency.SEMIANNUAL
        assert [line.due_date for line in schedule.lines] == [date(2024, 7, 15), date(2025, 1, 15)]
        assert schedule.lines[0].interest == Decimal('1000')

    def test_export_rows(self):
        """Test export tuples carry sequence, ISO date, amount and currency"""
        schedule = self.calculator.compute_schedule(
            principal=Decimal('3000'), annual_rate_percent=Decimal('0'), periods=3,
            start_date=date(2024, 1, 1)
        )

        rows = schedule.export_rows(Currency.DOLAR)
        assert rows[0] == (1, "2024-02-01", Decimal('1000.00'), "Dolar")
        assert len(rows) == 3

    @pytest.mark.parametrize("kwargs", [
        {"principal": "0", "annual_rate_percent": "10", "periods": 12},
        {"principal": "-5", "annual_rate_percent": "10", "periods": 12},
        {"principal": "1000", "annual_rate_percent": "-1", "periods": 12},
        {"principal": "1000", "annual_rate_percent": "10", "periods": 0},
        {"principal": "1000", "annual_rate_percent": "10", "periods": 12, "tax_on_interest_percent": "-21"},
    ])
    def test_invalid_inputs(self, kwargs):
        """Test invalid inputs raise ValidationError"""
        with pytest.raises(ValidationError):
            self.calculator.compute_schedule(**kwargs)

    def test_unknown_frequency(self):
        """Test unsupported frequencies are rejected"""
        with pytest.raises(ValidationError):
            self.calculator.compute_schedule(Decimal('1000'), Decimal('10'), 12, frequency="weekly")

    def test_payable_totals_reject_zero_installments(self):
        """Test a principal too small for the term cannot be stored"""
        schedule = self.calculator.compute_schedule("0.05", "0", 12, start_date=date(2024, 1, 1))

        with pytest.raises(ValidationError) as exc_info:
            schedule.payable_totals(Currency.PESOS)
        assert exc_info.value.context["periods"] == 12
        assert exc_info.value.context["unpayable_sequences"] == list(range(1, 12))

    def test_payable_totals(self):
        """Test one cent per installment is the smallest payable schedule"""
        schedule = self.calculator.compute_schedule("0.12", "0", 12, start_date=date(2024, 1, 1))
        assert schedule.payable_totals(Currency.PESOS) == [Decimal('0.01')] * 12


class TestDueDates:
    """Test due date helpers"""

    def test_month_end_clamping(self):
        """Test the 31st maps to the last day of shorter months"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)

    def test_dates_anchor_to_start(self):
        """Test clamping in one month does not drift the following ones"""
        start = date(2024, 1, 31)
        dates = [due_date_for(start, i, PaymentFrequency.MONTHLY) for i in range(1, 4)]
        assert dates == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]


class TestRoundingHelpers:
    """Test residual-absorbing splits"""

    def test_split_with_residual(self):
        """Test the last value makes the sum exact"""
        values = [Decimal('10.004'), Decimal('10.004'), Decimal('10.004')]
        result = split_with_residual(values, Decimal('30.012'), Currency.PESOS)
        assert result == [Decimal('10.00'), Decimal('10.00'), Decimal('10.01')]

    def test_split_evenly(self):
        """Test even split of 70000 over 9 installments"""
        shares = split_evenly(Decimal('70000'), 9, Currency.PESOS)
        assert shares[:8] == [Decimal('7777.78')] * 8
        assert shares[-1] == Decimal('7777.76')
        assert sum(shares) == Decimal('70000.00')

    def test_split_empty(self):
        """Test splitting into nothing"""
        assert split_evenly(Decimal('100'), 0, Currency.PESOS) == []


class TestTermOptions:
    """Test term options and conversion between frequencies"""

    def test_term_options(self):
        """Test offered terms per frequency"""
        assert AmortizationCalculator.term_options("monthly") == (12, 24, 36, 48, 60)
        assert AmortizationCalculator.term_options(PaymentFrequency.SEMIANNUAL) == (2, 4, 6, 8, 10)

    def test_convert_term(self):
        """Test converting a term keeps the loan duration"""
        assert AmortizationCalculator.convert_term(24, "monthly", "semiannual") == 4
        assert AmortizationCalculator.convert_term(6, "semiannual", "monthly") == 36
        assert AmortizationCalculator.convert_term(36, "monthly", "monthly") == 36

    def test_convert_term_picks_closest_offer(self):
        """Test a duration between two offers goes to the shorter one"""
        assert AmortizationCalculator.convert_term(18, "monthly", "semiannual") == 2
        assert AmortizationCalculator.convert_term(1, "semiannual", "monthly") == 12
