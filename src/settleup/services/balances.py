from __future__ import annotations

from dataclasses import dataclass, field
from fractions import Fraction
from typing import Hashable, Iterable, Mapping, Optional

from settleup.db.models import PAID_STATUSES, Expense, SettlementTransaction
from settleup.logging import get_logger
from settleup.services.currency import Conversion, RateProvider, lookup_rate, normalize
from settleup.services.errors import CurrencyMismatch, ImbalanceDetected
from settleup.services.money import Money, normalize_currency

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class BalanceReport:
    scope_id: Hashable
    currency: str
    balances: dict[Hashable, Money]
    conversions: tuple[Conversion, ...] = ()


@dataclass(slots=True)
class ParticipantTotals:
    participant: Hashable
    owed_to_you: Money
    you_owe: Money
    by_scope: dict[Hashable, Money] = field(default_factory=dict)

    @property
    def net(self) -> Money:
        return self.owed_to_you - self.you_owe


class _Fold:
    def __init__(self, reporting_currency: str, rate_provider: Optional[RateProvider]) -> None:
        self.currency = reporting_currency
        self.rate_provider = rate_provider
        self.balances: dict[Hashable, Money] = {}
        self.conversions: list[Conversion] = []

    def credit(self, participant: Hashable, amount: Money) -> None:
        current = self.balances.get(participant, Money.zero(self.currency))
        self.balances[participant] = current + amount

    def convert(self, money: Money) -> Money:
        if money.currency == self.currency:
            return money
        rate = lookup_rate(self.rate_provider, money.currency, self.currency)
        conversion = normalize(money, self.currency, rate)
        self.conversions.append(conversion)
        return conversion.money

    def add_expense(self, expense: Expense) -> None:
        total = self.convert(expense.total)
        if expense.currency == self.currency:
            splits = dict(expense.splits)
        else:
            splits = _reallocate(total, expense.splits)
        self.credit(expense.payer, total)
        for participant, share in splits.items():
            self.credit(participant, -share)

    def add_settlement(self, transaction: SettlementTransaction) -> None:
        if transaction.status not in PAID_STATUSES:
            return
        paid = self.convert(transaction.paid)
        self.credit(transaction.from_participant, paid)
        self.credit(transaction.to_participant, -paid)


def _reallocate(total: Money, splits: Mapping[Hashable, Money]) -> dict[Hashable, Money]:
    """Carry an expense's split proportions over to its converted total.

    Each share is floored, then the leftover minor units go one at a time to
    the largest fractional remainders (ties in split order). No share can go
    negative and none moves more than one unit from its exact value.
    """
    original = sum(share.amount for share in splits.values())
    if original == 0:
        return {p: Money.zero(total.currency) for p in splits}

    floors: dict[Hashable, int] = {}
    remainders: list[tuple[Fraction, int, Hashable]] = []
    for index, (participant, share) in enumerate(splits.items()):
        exact = Fraction(total.amount * share.amount, original)
        floors[participant] = exact.numerator // exact.denominator
        remainders.append((exact - floors[participant], index, participant))

    leftover = total.amount - sum(floors.values())
    remainders.sort(key=lambda r: (-r[0], r[1]))
    for _, _, participant in remainders[:leftover]:
        floors[participant] += 1
    return {p: Money(amount, total.currency) for p, amount in floors.items()}


def build_balance_report(
    scope_id: Hashable,
    expenses: Iterable[Expense],
    settlements: Iterable[SettlementTransaction],
    reporting_currency: str,
    rate_provider: Optional[RateProvider] = None,
) -> BalanceReport:
    """Fold a scope's ledger into signed per-participant balances.

    Positive means the participant is owed money, negative means they owe.
    Amounts in other currencies are converted to ``reporting_currency`` through
    ``rate_provider`` before they are summed.
    """
    fold = _Fold(normalize_currency(reporting_currency), rate_provider)
    for expense in expenses:
        fold.add_expense(expense)
    for transaction in settlements:
        fold.add_settlement(transaction)

    try:
        balances = {p: fold.balances[p] for p in sorted(fold.balances)}
    except TypeError:
        balances = dict(fold.balances)

    residual = sum(b.amount for b in balances.values())
    if residual != 0:
        vector = {p: b.amount for p, b in balances.items()}
        log.error("balances.imbalance", scope_id=scope_id, residual=residual, balances=vector)
        raise ImbalanceDetected(f"balances of scope {scope_id} sum to {residual}, expected 0", vector)

    return BalanceReport(
        scope_id=scope_id,
        currency=fold.currency,
        balances=balances,
        conversions=tuple(fold.conversions),
    )


def compute_balances(
    scope_id: Hashable,
    expenses: Iterable[Expense],
    settlements: Iterable[SettlementTransaction],
    reporting_currency: str,
    rate_provider: Optional[RateProvider] = None,
) -> dict[Hashable, Money]:
    return build_balance_report(scope_id, expenses, settlements, reporting_currency, rate_provider).balances


def summarize_participant(
    participant: Hashable,
    scope_balances: Mapping[Hashable, Mapping[Hashable, Money]],
    currency: str,
) -> ParticipantTotals:
    """Add up one participant's balances across independent scopes.

    Each scope is settled on its own; this is only a sum for display.
    """
    currency = normalize_currency(currency)
    owed = Money.zero(currency)
    owing = Money.zero(currency)
    by_scope: dict[Hashable, Money] = {}
    for scope_id, balances in scope_balances.items():
        balance = balances.get(participant)
        if balance is None:
            continue
        if balance.currency != currency:
            raise CurrencyMismatch(currency, balance.currency)
        by_scope[scope_id] = balance
        if balance.is_positive():
            owed = owed + balance
        elif balance.is_negative():
            owing = owing - balance
    return ParticipantTotals(participant=participant, owed_to_you=owed, you_owe=owing, by_scope=by_scope)
