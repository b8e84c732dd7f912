"""
Amortization Module

French (constant annuity) amortization schedules. The calculator is pure: it
keeps full Decimal precision across periods and rounds only when a caller asks
for persisted or displayed amounts, at which point the final period absorbs
the rounding residual.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union
from enum import Enum
import calendar

from .currency import Currency, round_amount, to_decimal
from .exceptions import ValidationError


Number = Union[Decimal, int, str]

HUNDRED = Decimal('100')


class PaymentFrequency(Enum):
    """Installment frequency"""
    MONTHLY = "monthly"
    SEMIANNUAL = "semiannual"

    @property
    def periods_per_year(self) -> int:
        return {PaymentFrequency.MONTHLY: 12, PaymentFrequency.SEMIANNUAL: 2}[self]

    @property
    def months_per_period(self) -> int:
        return 12 // self.periods_per_year

    @classmethod
    def parse(cls, value: Union['PaymentFrequency', str]) -> 'PaymentFrequency':
        if isinstance(value, cls):
            return value
        aliases = {"mensual": cls.MONTHLY, "semestral": cls.SEMIANNUAL}
        key = str(value).strip().lower()
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            raise ValidationError(f"Unsupported frequency '{value}'", {"frequency": value})


TERM_OPTIONS = {
    PaymentFrequency.MONTHLY: (12, 24, 36, 48, 60),
    PaymentFrequency.SEMIANNUAL: (2, 4, 6, 8, 10),
}


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(start_date: date, sequence: int, frequency: PaymentFrequency) -> date:
    """Due date of installment ``sequence``, always measured from the start date"""
    return add_months(start_date, sequence * frequency.months_per_period)


def split_with_residual(values: List[Decimal], target: Decimal, currency: Currency) -> List[Decimal]:
    """
    Round every value but the last to the minor unit; the last one takes
    whatever makes the list sum to ``target`` exactly.
    """
    if not values:
        return []
    rounded = [round_amount(v, currency) for v in values[:-1]]
    rounded.append(round_amount(target, currency) - sum(rounded, Decimal('0')))
    return rounded


def split_evenly(amount: Decimal, count: int, currency: Currency) -> List[Decimal]:
    """Split ``amount`` into ``count`` rounded shares summing to it exactly"""
    if count <= 0:
        return []
    share = amount / Decimal(count)
    return split_with_residual([share] * count, amount, currency)


@dataclass
class ScheduleLine:
    """One period of an amortization schedule, unrounded"""
    sequence: int
    due_date: date
    opening_balance: Decimal
    principal: Decimal
    interest: Decimal
    tax: Decimal
    total: Decimal
    closing_balance: Decimal


@dataclass
class AmortizationSchedule:
    """Ordered schedule plus summary figures"""
    principal: Decimal
    annual_rate_percent: Decimal
    periods: int
    frequency: PaymentFrequency
    tax_on_interest_percent: Optional[Decimal]
    start_date: date
    periodic_payment: Decimal  # base payment before tax
    total_payable: Decimal
    lines: List[ScheduleLine] = field(default_factory=list)

    @property
    def total_interest(self) -> Decimal:
        return sum((line.interest for line in self.lines), Decimal('0'))

    @property
    def total_tax(self) -> Decimal:
        return sum((line.tax for line in self.lines), Decimal('0'))

    def rounded_totals(self, currency: Currency) -> List[Decimal]:
        """Installment totals; ``sum(result) == round(total_payable)`` exactly"""
        return split_with_residual([line.total for line in self.lines], self.total_payable, currency)

    def payable_totals(self, currency: Currency) -> List[Decimal]:
        """
        Rounded installment totals for a schedule that is about to be stored.

        Raises:
            ValidationError: If rounding leaves any installment at zero or
                below, which could never be paid
        """
        totals = self.rounded_totals(currency)
        unpayable = [line.sequence for line, total in zip(self.lines, totals) if total <= 0]
        if unpayable:
            raise ValidationError(
                f"Principal {self.principal} is too small for {self.periods} installments "
                f"in {currency.code}",
                {"principal": self.principal, "annual_rate_percent": self.annual_rate_percent,
                 "periods": self.periods, "frequency": self.frequency.value,
                 "unpayable_sequences": unpayable}
            )
        return totals

    def rounded_principals(self, currency: Currency) -> List[Decimal]:
        """Principal portions; they sum to the principal exactly"""
        return split_with_residual([line.principal for line in self.lines], self.principal, currency)

    def rounded_interest(self, currency: Currency) -> List[Decimal]:
        return split_with_residual([line.interest for line in self.lines], self.total_interest, currency)

    def rounded_tax(self, currency: Currency) -> List[Decimal]:
        return split_with_residual([line.tax for line in self.lines], self.total_tax, currency)

    def export_rows(self, currency: Currency) -> List[Tuple[int, str, Decimal, str]]:
        """``(sequence, due date ISO-8601, amount, currency)`` tuples for reporting tools"""
        return [
            (line.sequence, line.due_date.isoformat(), amount, currency.code)
            for line, amount in zip(self.lines, self.rounded_totals(currency))
        ]


class AmortizationCalculator:
    """
    Stateless schedule calculator; safe to share between threads
    """

    def compute_schedule(
        self,
        principal: Number,
        annual_rate_percent: Number,
        periods: int,
        frequency: Union[PaymentFrequency, str] = PaymentFrequency.MONTHLY,
        tax_on_interest_percent: Optional[Number] = None,
        start_date: Optional[date] = None
    ) -> AmortizationSchedule:
        """
        Compute a constant-annuity schedule.

        Args:
            principal: Amount lent, > 0
            annual_rate_percent: Nominal annual rate in percent (65 for 65%)
            periods: Number of installments, > 0
            frequency: monthly or semiannual
            tax_on_interest_percent: Tax charged on each interest portion (21 for 21%)
            start_date: Anchor date; installment i falls due i periods later

        Returns:
            AmortizationSchedule with unrounded lines

        Raises:
            ValidationError: For non-positive principal or periods, or negative rates
        """
        frequency = PaymentFrequency.parse(frequency)
        principal = to_decimal(principal)
        annual_rate = to_decimal(annual_rate_percent)
        tax_rate = to_decimal(tax_on_interest_percent) if tax_on_interest_percent is not None else None

        if isinstance(periods, bool) or not isinstance(periods, int) or periods <= 0:
            raise ValidationError(f"Periods must be a positive integer, got {periods}", {"periods": periods})
        if principal <= 0:
            raise ValidationError(f"Principal must be positive, got {principal}", {"principal": principal})
        if annual_rate < 0:
            raise ValidationError(f"Interest rate cannot be negative, got {annual_rate}",
                                  {"annual_rate_percent": annual_rate})
        if tax_rate is not None and tax_rate < 0:
            raise ValidationError(f"Tax rate cannot be negative, got {tax_rate}",
                                  {"tax_on_interest_percent": tax_rate})
        if start_date is None:
            start_date = date.today()

        periodic_rate = annual_rate / Decimal(frequency.periods_per_year) / HUNDRED
        tax_factor = (tax_rate / HUNDRED) if tax_rate is not None else Decimal('0')
        payment = self.periodic_payment(principal, periodic_rate, periods)

        lines = []
        remaining = principal
        for sequence in range(1, periods + 1):
            opening = remaining
            interest = remaining * periodic_rate
            tax = interest * tax_factor
            # The final period clears whatever balance is left
            principal_part = remaining if sequence == periods else payment - interest
            remaining = remaining - principal_part
            lines.append(ScheduleLine(
                sequence=sequence,
                due_date=due_date_for(start_date, sequence, frequency),
                opening_balance=opening,
                principal=principal_part,
                interest=interest,
                tax=tax,
                total=principal_part + interest + tax,
                closing_balance=remaining
            ))

        return AmortizationSchedule(
            principal=principal,
            annual_rate_percent=annual_rate,
            periods=periods,
            frequency=frequency,
            tax_on_interest_percent=tax_rate,
            start_date=start_date,
            periodic_payment=payment,
            total_payable=sum((line.total for line in lines), Decimal('0')),
            lines=lines
        )

    @staticmethod
    def periodic_payment(principal: Decimal, periodic_rate: Decimal, periods: int) -> Decimal:
        """P * r(1+r)^n / ((1+r)^n - 1), or P / n for a zero rate"""
        if periodic_rate == 0:
            return principal / Decimal(periods)
        factor = (Decimal('1') + periodic_rate) ** periods
        return principal * periodic_rate * factor / (factor - Decimal('1'))

    @staticmethod
    def term_options(frequency: Union[PaymentFrequency, str]) -> Tuple[int, ...]:
        """Terms offered for a frequency (one to five years)"""
        return TERM_OPTIONS[PaymentFrequency.parse(frequency)]

    @staticmethod
    def convert_term(periods: int, from_frequency: Union[PaymentFrequency, str],
                     to_frequency: Union[PaymentFrequency, str]) -> int:
        """Closest offered term in ``to_frequency`` for the same loan duration"""
        source = PaymentFrequency.parse(from_frequency)
        target = PaymentFrequency.parse(to_frequency)
        if source == target:
            return periods
        months = Decimal(periods * source.months_per_period)
        converted = int((months / Decimal(target.months_per_period)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
        # Ties go to the shorter term
        return min(TERM_OPTIONS[target], key=lambda option: (abs(option - converted), option))
