from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from fractions import Fraction
from typing import Optional

from settleup.services.money import Money, normalize_currency
from settleup.services.split import Equal, Exact, Percentage, Shares, SplitMethod


_AMOUNT_RE = re.compile(r"^\s*(?P<number>[+-]?[\d\s]*[\d](?:[.,]\d+)?)\s*(?P<currency>[A-Za-z]{3})?\s*$")
_ENTRY_RE = re.compile(r"^(?P<who>[^:=\s]+)\s*[:=]\s*(?P<value>[^\s]+)$")


def parse_amount(text: str, currency: str) -> Money:
    """
    Parse a user-typed amount into minor units without going through float.

    Supported forms:
    - 12.50
    - 12,50
    - 1 234.50
    - 12.50 EUR (the suffix overrides ``currency``)
    """
    match = _AMOUNT_RE.match(text)
    if not match:
        raise ValueError(f"not an amount: {text!r}")

    number = match.group("number").replace(" ", "").replace(",", ".")
    code = normalize_currency(match.group("currency") or currency)
    try:
        value = Decimal(number)
    except InvalidOperation as exc:
        raise ValueError(f"not an amount: {text!r}") from exc
    return Money.from_decimal(value, code)


def parse_split_entries(text: str) -> dict[str, str]:
    """Parse ``"alice:60 bob:40"`` (or ``alice=60``) into raw per-participant values."""
    entries: dict[str, str] = {}
    for token in text.replace(",", " ").split():
        match = _ENTRY_RE.match(token)
        if not match:
            raise ValueError(f"expected name:value, got {token!r}")
        who = match.group("who")
        if who in entries:
            raise ValueError(f"{who} is listed twice")
        entries[who] = match.group("value")
    if not entries:
        raise ValueError("no split entries given")
    return entries


def _ratio(value: str) -> Fraction:
    try:
        return Fraction(value.rstrip("%"))
    except (ValueError, ZeroDivisionError) as exc:
        raise ValueError(f"not a number: {value!r}") from exc


def parse_split_method(kind: str, text: Optional[str], currency: str) -> SplitMethod:
    kind = kind.strip().lower()
    if kind == Equal.kind:
        return Equal()
    if text is None:
        raise ValueError(f"{kind} split needs per-participant values")
    entries = parse_split_entries(text)
    if kind == Percentage.kind:
        return Percentage({who: _ratio(v) for who, v in entries.items()})
    if kind == Shares.kind:
        return Shares({who: _ratio(v) for who, v in entries.items()})
    if kind == Exact.kind:
        return Exact({who: parse_amount(v, currency) for who, v in entries.items()})
    raise ValueError(f"unknown split kind: {kind}")
