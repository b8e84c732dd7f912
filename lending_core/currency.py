"""
Currency Module

Currencies the lending book operates in and the Money value type. Amounts are
Decimal throughout; rounding to the minor unit happens only when a value is
wrapped in Money, which is done at persistence and display time.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union
import re

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """Loan currencies, keyed by the code stored on every record"""
    PESOS = ("Pesos", 2, "$")
    DOLAR = ("Dolar", 2, "US$")

    def __init__(self, code: str, precision: int, symbol: str):
        self.code = code
        self.precision = precision
        self.symbol = symbol

    @property
    def minor_unit(self) -> Decimal:
        return Decimal('0.1') ** self.precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Resolve a stored code ('Pesos', 'Dolar') or enum name ('PESOS')"""
        for currency in cls:
            if currency.code.lower() == str(code).lower() or currency.name == str(code).upper():
                return currency
        raise ValidationError(f"Unknown currency '{code}'", {"currency": code})


def round_amount(value: Decimal, currency: Currency) -> Decimal:
    """Round a Decimal half-up to the currency minor unit"""
    return value.quantize(currency.minor_unit, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation rounded to the currency precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))
        object.__setattr__(self, 'amount', round_amount(self.amount, self.currency))

    def _check(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValidationError(
                f"Cannot {verb} {self.currency.code} and {other.currency.code}",
                {"left": self.currency.code, "right": other.currency.code}
            )

    def __add__(self, other: 'Money') -> 'Money':
        self._check(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount < other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount > other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def to_string(self) -> str:
        """Format for ledger concepts and display, e.g. '$ 120,000.00'"""
        return f"{self.currency.symbol} {self.amount:,.{self.currency.precision}f}"


def to_decimal(value: Union[Decimal, int, str, float]) -> Decimal:
    """
    Convert user input to Decimal without passing through binary floats.

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, Decimal):
        result = value
    else:
        text = str(value).strip()
        if isinstance(value, str):
            text = re.sub(r'[^\d.,\-+eE]', '', text)
            if ',' in text and '.' in text:
                text = text.replace(',', '')
            elif text.count(',') == 1:
                text = text.replace(',', '.')
        try:
            result = Decimal(text)
        except InvalidOperation:
            raise ValidationError(f"Cannot convert '{value}' to Decimal", {"value": value})
    if not result.is_finite():
        raise ValidationError(f"Amount must be finite, got {value}", {"value": value})
    return result
