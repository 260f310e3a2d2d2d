from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from fractions import Fraction
from typing import Mapping, Optional, Protocol

from settleup.services.errors import NoRateProvided
from settleup.services.money import Money, Rational, minor_unit_exponent, normalize_currency, to_fraction


@dataclass(frozen=True, slots=True)
class ExchangeRate:
    """One unit of ``from_currency`` is worth ``rate`` units of ``to_currency``."""

    from_currency: str
    to_currency: str
    rate: Fraction
    as_of: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "from_currency", normalize_currency(self.from_currency))
        object.__setattr__(self, "to_currency", normalize_currency(self.to_currency))
        rate = to_fraction(self.rate)
        if rate <= 0:
            raise ValueError("exchange rate must be positive")
        object.__setattr__(self, "rate", rate)

    def inverse(self) -> ExchangeRate:
        return ExchangeRate(self.to_currency, self.from_currency, 1 / self.rate, self.as_of)


@dataclass(frozen=True, slots=True)
class Conversion:
    source: Money
    money: Money
    rate: Optional[ExchangeRate] = None

    @property
    def crossed_currency(self) -> bool:
        return self.rate is not None


class RateProvider(Protocol):
    def get_rate(self, from_currency: str, to_currency: str) -> Optional[ExchangeRate]: ...


def convert_exact(money: Money, rate: ExchangeRate) -> Fraction:
    """Converted value in target minor units, before rounding."""
    scale = Fraction(10) ** (minor_unit_exponent(rate.to_currency) - minor_unit_exponent(rate.from_currency))
    return money.amount * rate.rate * scale


def normalize(money: Money, target_currency: str, rate: Optional[ExchangeRate] = None) -> Conversion:
    """Express ``money`` in ``target_currency`` using a caller-supplied rate.

    Same-currency input passes through untouched. Otherwise ``rate`` must go
    from the amount's currency to the target; the result is rounded half to
    even to the target's minor unit and carries the rate that produced it.
    """
    target_currency = normalize_currency(target_currency)
    if money.currency == target_currency:
        return Conversion(source=money, money=money)
    if rate is None or rate.from_currency != money.currency or rate.to_currency != target_currency:
        raise NoRateProvided(money.currency, target_currency)
    converted = Money(round(convert_exact(money, rate)), target_currency)
    return Conversion(source=money, money=converted, rate=rate)


class StaticRateProvider:
    """Rates quoted against a base currency, e.g. ``{"USD": 1, "EUR": "0.85"}``.

    Direct, inverse and cross rates are derived through the base: converting
    ``A`` to ``B`` uses ``quote[B] / quote[A]``.
    """

    def __init__(self, base: str, quotes: Mapping[str, Rational], as_of: datetime) -> None:
        self.base = normalize_currency(base)
        self.as_of = as_of
        self._quotes: dict[str, Fraction] = {normalize_currency(code): to_fraction(v) for code, v in quotes.items()}
        self._quotes.setdefault(self.base, Fraction(1))
        if self._quotes[self.base] != 1:
            raise ValueError("the base currency must be quoted at 1")
        for code, quote in self._quotes.items():
            if quote <= 0:
                raise ValueError(f"quote for {code} must be positive")

    def currencies(self) -> list[str]:
        return sorted(self._quotes)

    def get_rate(self, from_currency: str, to_currency: str) -> Optional[ExchangeRate]:
        from_currency = normalize_currency(from_currency)
        to_currency = normalize_currency(to_currency)
        if from_currency not in self._quotes or to_currency not in self._quotes:
            return None
        return ExchangeRate(
            from_currency,
            to_currency,
            self._quotes[to_currency] / self._quotes[from_currency],
            self.as_of,
        )


def lookup_rate(provider: Optional[RateProvider], from_currency: str, to_currency: str) -> ExchangeRate:
    if from_currency == to_currency:
        raise ValueError("no rate is needed between identical currencies")
    rate = provider.get_rate(from_currency, to_currency) if provider is not None else None
    if rate is None:
        raise NoRateProvided(from_currency, to_currency)
    return rate
