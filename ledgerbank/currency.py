"""
Currency Support Module

Handles ISO 4217 currency codes and proper Decimal precision for
financial calculations. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .exceptions import InvalidAmountError, ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

# Inbound amounts stay well inside the context precision
MAX_AMOUNT = Decimal("1000000000000000")


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its ISO code"""
        try:
            return cls[code.upper()]
        except (KeyError, AttributeError):
            raise ValidationError(f"Unsupported currency: {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        try:
            rounded = self.amount.quantize(
                Decimal('0.1') ** self.currency.precision,
                rounding=ROUND_HALF_UP
            )
        except InvalidOperation:
            raise InvalidAmountError(f"Amount out of range: {self.amount}")
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def to_decimal(value: Union[Decimal, str, int, float, Any]) -> Decimal:
    """
    Convert an inbound value to Decimal without going through binary float

    Raises:
        InvalidAmountError: If the value is not a finite number or is too large
    """
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidAmountError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if abs(result) >= MAX_AMOUNT:
        raise InvalidAmountError(f"Amount must be less than {MAX_AMOUNT:,}")
    return result


def validate_amount(value: Union[Decimal, str, int, float], currency: Currency) -> Money:
    """
    Validate a movement amount: strictly positive and no finer than the
    currency's precision.

    Raises:
        InvalidAmountError: If the amount is zero, negative or over-precise
    """
    amount = to_decimal(value)
    if amount <= Decimal('0'):
        raise InvalidAmountError("Amount must be greater than 0")

    quantum = Decimal('0.1') ** currency.precision
    if amount != amount.quantize(quantum, rounding=ROUND_HALF_UP):
        raise InvalidAmountError(
            f"Amount must have at most {currency.precision} decimal places"
        )
    return Money(amount, currency)
