from datetime import datetime, timezone
from fractions import Fraction

import pytest

from settleup.services.currency import ExchangeRate, StaticRateProvider, lookup_rate, normalize
from settleup.services.errors import NoRateProvided
from settleup.services.money import Money

AS_OF = datetime(2025, 3, 1, tzinfo=timezone.utc)


def test_same_currency_passes_through():
    conversion = normalize(Money(1000, "USD"), "usd")
    assert conversion.money == Money(1000, "USD")
    assert conversion.rate is None
    assert not conversion.crossed_currency


def test_conversion_records_rate():
    rate = ExchangeRate("USD", "EUR", "0.85", AS_OF)
    conversion = normalize(Money(1000, "USD"), "EUR", rate)

    assert conversion.money == Money(850, "EUR")
    assert conversion.source == Money(1000, "USD")
    assert conversion.rate is rate


def test_conversion_rounds_half_to_even():
    rate = ExchangeRate("USD", "EUR", Fraction(1, 2), AS_OF)
    assert normalize(Money(1, "USD"), "EUR", rate).money == Money(0, "EUR")
    assert normalize(Money(3, "USD"), "EUR", rate).money == Money(2, "EUR")


def test_conversion_respects_minor_units():
    rate = ExchangeRate("USD", "JPY", 150, AS_OF)
    assert normalize(Money(1234, "USD"), "JPY", rate).money == Money(1851, "JPY")


def test_missing_or_mismatched_rate():
    with pytest.raises(NoRateProvided):
        normalize(Money(100, "USD"), "EUR")
    with pytest.raises(NoRateProvided):
        normalize(Money(100, "USD"), "EUR", ExchangeRate("EUR", "USD", 1, AS_OF))


def test_rate_must_be_exact_and_positive():
    with pytest.raises(TypeError):
        ExchangeRate("USD", "EUR", 0.85, AS_OF)  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        ExchangeRate("USD", "EUR", 0, AS_OF)


def test_inverse_rate():
    rate = ExchangeRate("USD", "EUR", "0.8", AS_OF).inverse()
    assert (rate.from_currency, rate.to_currency, rate.rate) == ("EUR", "USD", Fraction(5, 4))


def test_static_provider_derives_cross_rates():
    provider = StaticRateProvider("USD", {"EUR": "0.85", "GBP": "0.73"}, AS_OF)

    rate = provider.get_rate("EUR", "GBP")
    assert rate is not None
    assert rate.rate == Fraction(73, 85)
    assert rate.as_of == AS_OF
    assert provider.get_rate("EUR", "INR") is None
    assert provider.currencies() == ["EUR", "GBP", "USD"]


def test_lookup_rate_without_provider():
    with pytest.raises(NoRateProvided):
        lookup_rate(None, "USD", "EUR")
