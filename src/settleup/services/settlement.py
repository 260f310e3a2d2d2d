from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction
from typing import Hashable, Iterable, List, Mapping, Optional

from settleup.db.models import Expense
from settleup.logging import get_logger
from settleup.services.currency import RateProvider, lookup_rate, normalize
from settleup.services.errors import CurrencyMismatch, InvalidSplit, NonZeroSumInput
from settleup.services.money import Money, normalize_currency

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Transfer:
    from_participant: Hashable
    to_participant: Hashable
    amount: Money


@dataclass(frozen=True, slots=True)
class SettlementSummary:
    total_expensed: Money
    naive_transactions: int
    simplified_transactions: int

    @property
    def saved_transactions(self) -> int:
        return max(self.naive_transactions - self.simplified_transactions, 0)

    @property
    def savings_ratio(self) -> Fraction:
        if self.naive_transactions == 0:
            return Fraction(0)
        return Fraction(self.saved_transactions, self.naive_transactions)


def _order(parties: list[tuple[Hashable, int]]) -> list[tuple[Hashable, int]]:
    # largest magnitude first, ties by ascending participant id
    try:
        parties.sort(key=lambda x: x[0])
    except TypeError as exc:
        raise InvalidSplit("participant ids must be mutually comparable") from exc
    parties.sort(key=lambda x: x[1], reverse=True)
    return parties


def plan_settlement(balances: Mapping[Hashable, Money]) -> List[Transfer]:
    """Turn a zero-sum balance vector into an ordered list of payments.

    Debtors and creditors are each ranked by the size of their balance, ties
    broken by ascending participant id. The leading debtor pays the leading
    creditor the smaller of the two magnitudes; whichever side reaches zero is
    dropped and the other keeps its place until it is zeroed too. Every
    payment zeroes at least one party, so ``n`` non-zero balances never need
    more than ``n - 1`` payments.
    """
    if not balances:
        return []

    currencies = {money.currency for money in balances.values()}
    if len(currencies) > 1:
        first, *rest = sorted(currencies)
        raise CurrencyMismatch(first, rest[0])
    currency = currencies.pop()

    residual = sum(money.amount for money in balances.values())
    if residual != 0:
        vector = {p: m.amount for p, m in balances.items()}
        log.error("settlement.nonzero_input", residual=residual, balances=vector)
        raise NonZeroSumInput(f"balances sum to {residual}, expected 0", vector)

    creditors: list[tuple[Hashable, int]] = []
    debtors: list[tuple[Hashable, int]] = []
    for participant, money in balances.items():
        if money.amount > 0:
            creditors.append((participant, money.amount))
        elif money.amount < 0:
            debtors.append((participant, -money.amount))

    _order(creditors)
    _order(debtors)

    transfers: list[Transfer] = []
    i, j = 0, 0

    while i < len(creditors) and j < len(debtors):
        cred_id, cred_amount = creditors[i]
        debt_id, debt_amount = debtors[j]

        transfer_amount = min(cred_amount, debt_amount)
        transfers.append(Transfer(debt_id, cred_id, Money(transfer_amount, currency)))

        cred_amount -= transfer_amount
        debt_amount -= transfer_amount

        if cred_amount == 0:
            i += 1
        else:
            creditors[i] = (cred_id, cred_amount)

        if debt_amount == 0:
            j += 1
        else:
            debtors[j] = (debt_id, debt_amount)

    if i < len(creditors) or j < len(debtors):
        # unreachable for zero-sum input
        log.error("settlement.unmatched", creditors=creditors[i:], debtors=debtors[j:])
        raise NonZeroSumInput("settlement left unmatched balances")

    return transfers


def apply_transfers(
    balances: Mapping[Hashable, Money],
    transfers: Iterable[Transfer],
) -> dict[Hashable, Money]:
    """Balances after every transfer is paid: payers go up, payees go down."""
    result = dict(balances)
    for transfer in transfers:
        result[transfer.from_participant] = result[transfer.from_participant] + transfer.amount
        result[transfer.to_participant] = result[transfer.to_participant] - transfer.amount
    return result


def summarize_plan(
    expenses: Iterable[Expense],
    transfers: List[Transfer],
    currency: str,
    rate_provider: Optional[RateProvider] = None,
) -> SettlementSummary:
    currency = normalize_currency(currency)
    total = Money.zero(currency)
    naive = 0
    for expense in expenses:
        amount = expense.total
        if amount.currency != currency:
            amount = normalize(amount, currency, lookup_rate(rate_provider, amount.currency, currency)).money
        total = total + amount
        naive += sum(
            1 for participant, share in expense.splits.items()
            if participant != expense.payer and not share.is_zero()
        )
    return SettlementSummary(
        total_expensed=total,
        naive_transactions=naive,
        simplified_transactions=len(transfers),
    )
