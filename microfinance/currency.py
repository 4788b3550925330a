"""
Currency and Money Module

Decimal-only money for loan principals, installments and collections.
NEVER uses float for monetary values: request payloads are converted with
decimal_from_value before they reach any manager.
"""

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List
from enum import Enum

# Set global decimal context for financial precision
getcontext().prec = 28

# Largest amount accepted from callers
MAX_AMOUNT = Decimal('1000000000000')


class Currency(Enum):
    """ISO 4217 currency codes with display symbol and precision"""
    INR = ("INR", "₹", 2)   # Indian Rupee
    BDT = ("BDT", "৳", 2)   # Bangladeshi Taka
    KES = ("KES", "KSh", 2)  # Kenyan Shilling
    UGX = ("UGX", "USh", 0)  # Ugandan Shilling, no minor unit
    USD = ("USD", "$", 2)   # US Dollar

    def __init__(self, code: str, symbol: str, precision: int):
        self.code = code
        self.symbol = symbol
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money value rounded to its currency's precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def split(self, parts: int) -> List['Money']:
        """
        Split into `parts` amounts that sum exactly to this amount.

        Every part is the even share truncated to the currency precision; the
        remainder goes to the last part, so no part is smaller than the share.
        """
        if parts < 1:
            raise ValueError("Cannot split into fewer than one part")

        share = Money(
            (self.amount / Decimal(parts)).quantize(self.currency.quantum, rounding=ROUND_DOWN),
            self.currency
        )
        shares = [share] * (parts - 1)
        last = Money(self.amount - share.amount * (parts - 1), self.currency)
        return shares + [last]

    def to_string(self) -> str:
        """Format for display, e.g. '₹10,000.00'"""
        return f"{self.currency.symbol}{self.amount:,.{self.currency.precision}f}"

    def to_fields(self, prefix: str) -> Dict[str, str]:
        """Storage representation: '<prefix>_amount' and '<prefix>_currency'"""
        return {
            f'{prefix}_amount': str(self.amount),
            f'{prefix}_currency': self.currency.code,
        }

    @classmethod
    def from_fields(cls, data: Dict[str, Any], prefix: str) -> 'Money':
        return cls(Decimal(data[f'{prefix}_amount']), Currency[data[f'{prefix}_currency']])


def sum_money(values: Iterable[Money], currency: Currency) -> Money:
    """Sum money values, returning zero for an empty iterable"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


def decimal_from_value(value: Any) -> Decimal:
    """
    Convert request input (str, int, Decimal or float) to Decimal.

    Floats go through str() so 0.1 becomes Decimal('0.1'), not its binary
    expansion.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Cannot convert {value!r} to Decimal")

    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Cannot convert {value!r} to Decimal")

    if not result.is_finite():
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    return result
