"""
Currency and Money Module

Currencies of the markets the lenders operate in and an immutable Money
value. Amounts are Decimal end to end; floats are only accepted at the edge
(gateway payloads) and converted through their string form.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from functools import total_ordering
from typing import Union
from enum import Enum
import re

getcontext().prec = 28

# Half of the smallest currency unit: two amounts closer than this are the
# same amount. Shared by the allocator, the loan book and the ledger poster.
MONEY_EPSILON = Decimal("0.005")

_NON_NUMERIC = re.compile(r"[^\d.,\-+]")


class Currency(Enum):
    """ISO 4217 code and number of minor-unit digits"""
    KES = ("KES", 2)
    UGX = ("UGX", 0)
    TZS = ("TZS", 2)
    RWF = ("RWF", 0)
    USD = ("USD", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.precision)


@total_ordering
@dataclass(frozen=True)
class Money:
    """
    Amount in one currency, rounded half-up to the currency's minor unit.
    Mixing currencies in arithmetic or comparison raises ValueError.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        value = self.amount if isinstance(self.amount, Decimal) else Decimal(str(self.amount))
        object.__setattr__(self, 'amount', value.quantize(self.currency.quantum, rounding=ROUND_HALF_UP))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal(0), currency)

    def _same_currency(self, other: 'Money', operation: str) -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot {operation} {self.currency.code} and {other.currency.code}")
        return other

    def __add__(self, other: 'Money') -> 'Money':
        return Money(self.amount + self._same_currency(other, "add").amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        return Money(self.amount - self._same_currency(other, "subtract").amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        return (isinstance(other, Money)
                and self.currency == other.currency
                and self.amount == other.amount)

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        return self.amount < self._same_currency(other, "compare").amount

    def is_zero(self) -> bool:
        return abs(self.amount) < MONEY_EPSILON

    def is_positive(self) -> bool:
        return self.amount >= MONEY_EPSILON

    def is_negative(self) -> bool:
        return self.amount <= -MONEY_EPSILON

    def to_string(self) -> str:
        """``KES 1,250.50``, ``UGX 1,500``"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def to_dict(self) -> dict:
        return {"amount": str(self.amount), "currency": self.currency.code}

    @classmethod
    def from_dict(cls, data: dict) -> 'Money':
        return cls(Decimal(data["amount"]), Currency[data["currency"]])


def amounts_equal(a: Union[Money, Decimal], b: Union[Money, Decimal]) -> bool:
    left = a.amount if isinstance(a, Money) else a
    right = b.amount if isinstance(b, Money) else b
    return abs(left - right) < MONEY_EPSILON


def _drop_separators(text: str) -> str:
    if ',' not in text:
        return text
    if '.' in text:
        # 1,250.50
        return text.replace(',', '')
    whole, _, fraction = text.partition(',')
    if ',' not in fraction and len(fraction) <= 2:
        # 12,5 written with a decimal comma
        return f"{whole}.{fraction}"
    return text.replace(',', '')


def decimal_from_string(value: Union[str, int, float, Decimal]) -> Decimal:
    """
    Convert an inbound amount (gateway payload, spreadsheet cell) to Decimal

    Currency symbols, spaces and thousands separators are ignored.

    Raises:
        ValueError: If the value cannot be converted
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return Decimal(str(value))
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string or number")

    text = _drop_separators(_NON_NUMERIC.sub('', value.strip()))
    try:
        return Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
