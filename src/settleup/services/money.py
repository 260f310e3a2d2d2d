from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from fractions import Fraction
from typing import Iterable, Sequence, Union

from settleup.services.errors import CurrencyMismatch

Rational = Union[int, Fraction, Decimal, str]

CURRENCY_EXPONENTS = {
    "BHD": 3,
    "CLP": 0,
    "ISK": 0,
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
    "OMR": 3,
    "VND": 0,
}
DEFAULT_EXPONENT = 2

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def minor_unit_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency, DEFAULT_EXPONENT)


def normalize_currency(code: str) -> str:
    clean = code.strip().upper()
    if not _CURRENCY_RE.match(clean):
        raise ValueError(f"invalid currency code: {code!r}")
    return clean


def to_fraction(value: Rational) -> Fraction:
    """Exact rational from an int, Fraction, Decimal or numeric string.

    Floats are refused: a binary float cannot carry a monetary ratio exactly.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"expected an exact number, got {type(value).__name__}")
    if isinstance(value, (int, Fraction)):
        return Fraction(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"not a finite number: {value}")
        return Fraction(value)
    if isinstance(value, str):
        return Fraction(value.strip())
    raise TypeError(f"expected an exact number, got {type(value).__name__}")


@dataclass(frozen=True, slots=True)
class Money:
    amount: int
    currency: str

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise TypeError("Money.amount must be an int number of minor units")
        object.__setattr__(self, "currency", normalize_currency(self.currency))

    @classmethod
    def zero(cls, currency: str) -> Money:
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, value: Decimal | str | int, currency: str) -> Money:
        currency = normalize_currency(currency)
        exponent = minor_unit_exponent(currency)
        minor = to_fraction(value) * 10**exponent
        if minor.denominator != 1:
            raise ValueError(f"{value} has more precision than {currency} allows")
        return cls(int(minor), currency)

    def to_decimal(self) -> Decimal:
        return Decimal(self.amount).scaleb(-minor_unit_exponent(self.currency))

    def __str__(self) -> str:
        exponent = minor_unit_exponent(self.currency)
        return f"{self.to_decimal():.{exponent}f} {self.currency}"

    def _check(self, other: object) -> Money:
        if not isinstance(other, Money):
            raise TypeError(f"unsupported operand: {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatch(self.currency, other.currency)
        return other

    def __add__(self, other: Money) -> Money:
        other = self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: Money) -> Money:
        other = self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> Money:
        return Money(-self.amount, self.currency)

    def __abs__(self) -> Money:
        return Money(abs(self.amount), self.currency)

    def __lt__(self, other: Money) -> bool:
        return self.amount < self._check(other).amount

    def __le__(self, other: Money) -> bool:
        return self.amount <= self._check(other).amount

    def __gt__(self, other: Money) -> bool:
        return self.amount > self._check(other).amount

    def __ge__(self, other: Money) -> bool:
        return self.amount >= self._check(other).amount

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def scale(self, factor: Rational) -> Money:
        """Multiply by an exact ratio, rounding half to even to a whole minor unit."""
        return Money(round(self.amount * to_fraction(factor)), self.currency)

    def split_evenly(self, n: int) -> list[Money]:
        """Split into ``n`` parts differing by at most one minor unit.

        The remainder goes one unit at a time to the leading parts, so callers
        that order their participants get a deterministic assignment.
        """
        if n <= 0:
            raise ValueError("n must be positive")
        base, remainder = divmod(self.amount, n)
        return [Money(base + (1 if i < remainder else 0), self.currency) for i in range(n)]

    def allocate(self, weights: Sequence[Rational]) -> list[Money]:
        """Split proportionally to ``weights``.

        Every part but the last is rounded half to even; the last part absorbs
        the residual so the parts always sum to ``self`` exactly.
        """
        if not weights:
            raise ValueError("weights must not be empty")
        exact = [to_fraction(w) for w in weights]
        total_weight = sum(exact, Fraction(0))
        if total_weight == 0:
            raise ValueError("weights must not sum to zero")

        parts: list[Money] = []
        allocated = 0
        for weight in exact[:-1]:
            share = round(self.amount * weight / total_weight)
            parts.append(Money(share, self.currency))
            allocated += share
        parts.append(Money(self.amount - allocated, self.currency))
        return parts


def total(values: Iterable[Money], currency: str) -> Money:
    result = Money.zero(currency)
    for value in values:
        result = result + value
    return result
