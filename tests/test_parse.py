from fractions import Fraction

import pytest

from settleup.services.money import Money
from settleup.services.split import Equal, Exact, Percentage, Shares
from settleup.utils.parse import parse_amount, parse_split_entries, parse_split_method


def test_parse_amount_without_float():
    assert parse_amount("12.50", "usd") == Money(1250, "USD")
    assert parse_amount("12,5", "EUR") == Money(1250, "EUR")
    assert parse_amount("1 234.56", "USD") == Money(123456, "USD")
    assert parse_amount("0.1", "USD") == Money(10, "USD")


def test_parse_amount_currency_suffix():
    assert parse_amount("500 jpy", "USD") == Money(500, "JPY")


def test_parse_amount_rejects_garbage_and_excess_precision():
    with pytest.raises(ValueError):
        parse_amount("twelve", "USD")
    with pytest.raises(ValueError):
        parse_amount("1.005", "USD")


def test_parse_split_entries():
    assert parse_split_entries("alice:60 bob=40") == {"alice": "60", "bob": "40"}
    with pytest.raises(ValueError):
        parse_split_entries("alice:60 alice:40")
    with pytest.raises(ValueError):
        parse_split_entries("alice")


def test_parse_split_method():
    assert parse_split_method("equal", None, "USD") == Equal()
    assert parse_split_method("percentage", "a:62.5% b:37.5%", "USD") == Percentage(
        {"a": Fraction(125, 2), "b": Fraction(75, 2)}
    )
    assert parse_split_method("shares", "a:2, b:1", "USD") == Shares({"a": Fraction(2), "b": Fraction(1)})
    assert parse_split_method("exact", "a:7.50 b:2.50", "USD") == Exact(
        {"a": Money(750, "USD"), "b": Money(250, "USD")}
    )
    with pytest.raises(ValueError):
        parse_split_method("random", "a:1", "USD")
