from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Hashable, Mapping, Optional

from settleup.services.money import Money
from settleup.services.split import SplitMethod


class ScopeKind(str, Enum):
    GROUP = "group"
    FRIEND_PAIR = "friend_pair"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# statuses whose paid amount has moved money between the two parties
PAID_STATUSES = frozenset({SettlementStatus.PARTIALLY_PAID, SettlementStatus.COMPLETED})


@dataclass(frozen=True, slots=True)
class Expense:
    id: str
    scope_id: Hashable
    payer: Hashable
    total: Money
    split_method: SplitMethod
    splits: Mapping[Hashable, Money]
    created_at: datetime
    title: Optional[str] = None
    replaces: Optional[str] = None

    @property
    def currency(self) -> str:
        return self.total.currency


@dataclass(frozen=True, slots=True)
class SettlementTransaction:
    id: str
    scope_id: Hashable
    from_participant: Hashable
    to_participant: Hashable
    amount: Money
    paid: Money
    status: SettlementStatus
    created_at: datetime
    updated_at: datetime
    note: Optional[str] = None
    method: Optional[str] = None

    @property
    def currency(self) -> str:
        return self.amount.currency

    @property
    def outstanding(self) -> Money:
        return self.amount - self.paid


@dataclass(frozen=True, slots=True)
class PaymentKey:
    """An idempotency key already applied to a settlement, with the amount it paid."""

    key: str
    transaction_id: str
    paid: Money


@dataclass(frozen=True, slots=True)
class ScopeSnapshot:
    scope_id: Hashable
    version: int
    expenses: tuple[Expense, ...] = ()
    settlements: tuple[SettlementTransaction, ...] = ()
    kind: ScopeKind = ScopeKind.GROUP
    members: frozenset = field(default_factory=frozenset)
    payments: tuple[PaymentKey, ...] = ()
