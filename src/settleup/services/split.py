from __future__ import annotations

from dataclasses import dataclass, field
from fractions import Fraction
from typing import Hashable, Mapping, Sequence, Union

from settleup.services.errors import CurrencyMismatch, EmptyParticipants, InvalidSplit, SplitMismatch
from settleup.services.money import Money, Rational, to_fraction

ParticipantId = Hashable


@dataclass(frozen=True, slots=True)
class Equal:
    kind = "equal"


@dataclass(frozen=True, slots=True)
class Percentage:
    percentages: Mapping[ParticipantId, Rational] = field(default_factory=dict)
    kind = "percentage"


@dataclass(frozen=True, slots=True)
class Shares:
    weights: Mapping[ParticipantId, Rational] = field(default_factory=dict)
    kind = "shares"


@dataclass(frozen=True, slots=True)
class Exact:
    amounts: Mapping[ParticipantId, Money] = field(default_factory=dict)
    kind = "exact"


SplitMethod = Union[Equal, Percentage, Shares, Exact]

HUNDRED = Fraction(100)


def ordered_participants(participants: Sequence[ParticipantId]) -> list[ParticipantId]:
    if not participants:
        raise EmptyParticipants("participants must not be empty")
    if len(set(participants)) != len(participants):
        raise InvalidSplit("participants must be unique")
    try:
        return sorted(participants)
    except TypeError as exc:
        raise InvalidSplit("participant ids must be mutually comparable") from exc


def split_equally(total: Money, participants: Sequence[ParticipantId]) -> dict[ParticipantId, Money]:
    order = ordered_participants(participants)
    return dict(zip(order, total.split_evenly(len(order))))


def _check_keys(declared: Mapping[ParticipantId, object], order: list[ParticipantId]) -> None:
    unknown = [p for p in declared if p not in order]
    if unknown:
        raise InvalidSplit(f"split names non-participants: {unknown}")
    missing = [p for p in order if p not in declared]
    if missing:
        raise InvalidSplit(f"split has no entry for: {missing}")


def _weighted_split(
    total: Money,
    order: list[ParticipantId],
    weights: Mapping[ParticipantId, Fraction],
) -> dict[ParticipantId, Money]:
    # zero-weight participants never absorb the rounding residual
    weighted = [p for p in order if weights[p] != 0]
    if not weighted:
        raise InvalidSplit("at least one participant needs a non-zero weight")
    parts = dict(zip(weighted, total.allocate([weights[p] for p in weighted])))
    return {p: parts.get(p, Money.zero(total.currency)) for p in order}


def _exact_weights(declared: Mapping[ParticipantId, Rational], label: str) -> dict[ParticipantId, Fraction]:
    weights: dict[ParticipantId, Fraction] = {}
    for participant, value in declared.items():
        try:
            weight = to_fraction(value)
        except (TypeError, ValueError, ZeroDivisionError) as exc:
            raise InvalidSplit(f"{label} for {participant!r} is not an exact number") from exc
        if weight < 0:
            raise InvalidSplit(f"{label} for {participant!r} is negative")
        weights[participant] = weight
    return weights


def compute_splits(
    total: Money,
    method: SplitMethod,
    participants: Sequence[ParticipantId],
) -> dict[ParticipantId, Money]:
    """Derive each participant's share of ``total``.

    The returned mapping is ordered by ascending participant id and always sums
    to ``total`` exactly.
    """
    order = ordered_participants(participants)
    if total.amount <= 0:
        raise InvalidSplit("expense total must be positive")

    if isinstance(method, Equal):
        splits = split_equally(total, order)
    elif isinstance(method, Percentage):
        _check_keys(method.percentages, order)
        weights = _exact_weights(method.percentages, "percentage")
        declared = sum(weights.values(), Fraction(0))
        if declared != HUNDRED:
            raise SplitMismatch(f"percentages sum to {declared}, expected 100")
        splits = _weighted_split(total, order, weights)
    elif isinstance(method, Shares):
        _check_keys(method.weights, order)
        splits = _weighted_split(total, order, _exact_weights(method.weights, "share"))
    elif isinstance(method, Exact):
        _check_keys(method.amounts, order)
        for amount in method.amounts.values():
            if amount.currency != total.currency:
                raise CurrencyMismatch(total.currency, amount.currency)
            if amount.is_negative():
                raise InvalidSplit("exact amounts must not be negative")
        declared_total = sum(a.amount for a in method.amounts.values())
        if declared_total != total.amount:
            raise SplitMismatch(f"exact amounts sum to {declared_total}, expected {total.amount}")
        splits = {p: method.amounts[p] for p in order}
    else:
        raise InvalidSplit(f"unknown split method: {method!r}")

    if any(share.is_negative() for share in splits.values()):
        raise InvalidSplit("split produced a negative share")
    return splits
