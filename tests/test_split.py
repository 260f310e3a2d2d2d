from decimal import Decimal

import pytest

from settleup.services.errors import CurrencyMismatch, EmptyParticipants, InvalidSplit, SplitMismatch
from settleup.services.money import Money
from settleup.services.split import Equal, Exact, Percentage, Shares, compute_splits, split_equally


def amounts(splits):
    return {p: m.amount for p, m in splits.items()}


def test_split_equally_even():
    shares = split_equally(Money(1000, "USD"), [1, 2, 3, 4])
    assert amounts(shares) == {1: 250, 2: 250, 3: 250, 4: 250}


def test_split_equally_remainder():
    shares = split_equally(Money(1001, "USD"), [1, 2, 3])
    assert sum(m.amount for m in shares.values()) == 1001
    assert sorted(m.amount for m in shares.values()) == [333, 334, 334]


def test_equal_remainder_goes_by_ascending_id():
    splits = compute_splits(Money(100, "USD"), Equal(), ["C", "A", "B"])
    assert list(splits) == ["A", "B", "C"]
    assert amounts(splits) == {"A": 34, "B": 33, "C": 33}


def test_percentage_last_participant_absorbs_residual():
    splits = compute_splits(
        Money(1001, "USD"),
        Percentage({"A": 50, "B": 30, "C": 20}),
        ["A", "B", "C"],
    )
    assert amounts(splits) == {"A": 500, "B": 300, "C": 201}


def test_percentage_accepts_decimal_strings():
    splits = compute_splits(
        Money(1000, "USD"),
        Percentage({"A": Decimal("33.5"), "B": "66.5"}),
        ["A", "B"],
    )
    assert amounts(splits) == {"A": 335, "B": 665}


def test_percentage_must_total_hundred():
    with pytest.raises(SplitMismatch):
        compute_splits(Money(1000, "USD"), Percentage({"A": 50, "B": 40}), ["A", "B"])


def test_percentage_rejects_floats():
    with pytest.raises(InvalidSplit):
        compute_splits(Money(1000, "USD"), Percentage({"A": 50.0, "B": 50}), ["A", "B"])


def test_percentage_rounding_that_drives_last_share_negative():
    participants = ["a", "b", "c", "d", "e", "f", "g"]
    percentages = {p: 15 for p in participants[:-1]}
    percentages["g"] = 10
    with pytest.raises(InvalidSplit):
        compute_splits(Money(10, "USD"), Percentage(percentages), participants)


def test_shares_are_proportional():
    splits = compute_splits(Money(100, "USD"), Shares({"A": 2, "B": 1}), ["A", "B"])
    assert amounts(splits) == {"A": 67, "B": 33}


def test_zero_weight_never_absorbs_residual():
    splits = compute_splits(Money(101, "USD"), Shares({"A": 1, "B": 0, "C": 1}), ["A", "B", "C"])
    assert amounts(splits) == {"A": 50, "B": 0, "C": 51}


def test_exact_amounts_must_reconcile():
    splits = compute_splits(
        Money(100, "USD"),
        Exact({"A": Money(60, "USD"), "B": Money(40, "USD")}),
        ["A", "B"],
    )
    assert amounts(splits) == {"A": 60, "B": 40}

    with pytest.raises(SplitMismatch):
        compute_splits(
            Money(100, "USD"),
            Exact({"A": Money(60, "USD"), "B": Money(30, "USD")}),
            ["A", "B"],
        )


def test_exact_amount_currency_mismatch():
    with pytest.raises(CurrencyMismatch):
        compute_splits(
            Money(100, "USD"),
            Exact({"A": Money(60, "USD"), "B": Money(40, "EUR")}),
            ["A", "B"],
        )


def test_exact_negative_amount():
    with pytest.raises(InvalidSplit):
        compute_splits(
            Money(100, "USD"),
            Exact({"A": Money(110, "USD"), "B": Money(-10, "USD")}),
            ["A", "B"],
        )


def test_empty_participants():
    with pytest.raises(EmptyParticipants):
        compute_splits(Money(100, "USD"), Equal(), [])


def test_split_entries_must_match_participants():
    with pytest.raises(InvalidSplit):
        compute_splits(Money(100, "USD"), Shares({"A": 1, "Z": 1}), ["A", "B"])
    with pytest.raises(InvalidSplit):
        compute_splits(Money(100, "USD"), Shares({"A": 1}), ["A", "B"])


def test_total_must_be_positive():
    with pytest.raises(InvalidSplit):
        compute_splits(Money(0, "USD"), Equal(), ["A"])


def test_shares_residual_can_go_negative():
    # 9 over six equal weights rounds each leading share to 2, leaving -1 for the last
    people = ["a", "b", "c", "d", "e", "f"]
    with pytest.raises(InvalidSplit):
        compute_splits(Money(9, "USD"), Shares({p: 1 for p in people}), people)

    assert amounts(compute_splits(Money(9, "USD"), Equal(), people)) == {
        "a": 2,
        "b": 2,
        "c": 2,
        "d": 1,
        "e": 1,
        "f": 1,
    }
