from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Hashable, Iterable, Optional, Sequence

from settleup.db.models import Expense, PaymentKey, ScopeKind, ScopeSnapshot, SettlementTransaction
from settleup.logging import get_logger
from settleup.services.errors import (
    ConcurrentModification,
    CurrencyMismatch,
    DuplicatePayment,
    ExpenseNotFound,
    InvalidSplit,
    SettlementNotFound,
)
from settleup.services.money import Money, normalize_currency
from settleup.services.split import SplitMethod, compute_splits

Listener = Callable[[Hashable, int], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(slots=True)
class _ScopeState:
    kind: ScopeKind
    members: frozenset
    version: int = 0
    expenses: dict[str, Expense] = field(default_factory=dict)
    settlements: dict[str, SettlementTransaction] = field(default_factory=dict)
    payments: dict[str, PaymentKey] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def snapshot(self, scope_id: Hashable) -> ScopeSnapshot:
        return ScopeSnapshot(
            scope_id=scope_id,
            version=self.version,
            expenses=tuple(self.expenses.values()),
            settlements=tuple(self.settlements.values()),
            kind=self.kind,
            members=self.members,
            payments=tuple(self.payments.values()),
        )


class ExpenseLedger:
    """Append-only per-scope store of expenses and settlement records.

    Every mutation bumps the scope's version. A writer may pass the version it
    read as ``expected_version``; a mismatch at commit time raises
    :class:`ConcurrentModification` and nothing is written. Writers to
    different scopes never share a lock.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._clock = clock
        self._id_factory = id_factory
        self._scopes: dict[Hashable, _ScopeState] = {}
        self._expense_scope: dict[str, Hashable] = {}
        self._settlement_scope: dict[str, Hashable] = {}
        self._registry_lock = threading.Lock()
        self._listeners: list[Listener] = []
        self._log = get_logger(__name__)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def open_scope(
        self,
        scope_id: Hashable,
        kind: ScopeKind = ScopeKind.GROUP,
        members: Iterable[Hashable] = (),
    ) -> ScopeSnapshot:
        members = frozenset(members)
        if kind == ScopeKind.FRIEND_PAIR and len(members) != 2:
            raise InvalidSplit("a friend pair scope has exactly two members")
        with self._registry_lock:
            state = self._scopes.get(scope_id)
            if state is None:
                state = _ScopeState(kind=kind, members=members)
                self._scopes[scope_id] = state
                self._log.info("ledger.scope.opened", scope_id=scope_id, kind=kind.value)
            elif state.kind != kind or (members and state.members != members):
                raise InvalidSplit(f"scope {scope_id} already exists with a different definition")
        return state.snapshot(scope_id)

    def restore(self, snapshot: ScopeSnapshot) -> None:
        """Load a persisted scope, replacing whatever is held for it in memory."""
        state = _ScopeState(
            kind=snapshot.kind,
            members=snapshot.members,
            version=snapshot.version,
            expenses={e.id: e for e in snapshot.expenses},
            settlements={s.id: s for s in snapshot.settlements},
            payments={p.key: p for p in snapshot.payments},
        )
        with self._registry_lock:
            previous = self._scopes.get(snapshot.scope_id)
            if previous is not None:
                for expense_id in previous.expenses:
                    self._expense_scope.pop(expense_id, None)
                for transaction_id in previous.settlements:
                    self._settlement_scope.pop(transaction_id, None)
            self._scopes[snapshot.scope_id] = state
            for expense_id in state.expenses:
                self._expense_scope[expense_id] = snapshot.scope_id
            for transaction_id in state.settlements:
                self._settlement_scope[transaction_id] = snapshot.scope_id
        self._log.info("ledger.scope.restored", scope_id=snapshot.scope_id, version=snapshot.version)
        self._notify(snapshot.scope_id, snapshot.version)

    def snapshot(self, scope_id: Hashable) -> ScopeSnapshot:
        state = self._scopes.get(scope_id)
        if state is None:
            return ScopeSnapshot(scope_id=scope_id, version=0)
        with state.lock:
            return state.snapshot(scope_id)

    def version(self, scope_id: Hashable) -> int:
        state = self._scopes.get(scope_id)
        return state.version if state else 0

    def scope_ids(self) -> list[Hashable]:
        return list(self._scopes)

    def get_expense(self, expense_id: str) -> Expense:
        scope_id = self._expense_scope.get(expense_id)
        if scope_id is None:
            raise ExpenseNotFound(expense_id)
        expense = self._scopes[scope_id].expenses.get(expense_id)
        if expense is None:
            raise ExpenseNotFound(expense_id)
        return expense

    def get_settlement(self, transaction_id: str) -> SettlementTransaction:
        scope_id = self._settlement_scope.get(transaction_id)
        if scope_id is None:
            raise SettlementNotFound(transaction_id)
        return self._scopes[scope_id].settlements[transaction_id]

    def applied_payment(self, scope_id: Hashable, key: str) -> Optional[PaymentKey]:
        state = self._scopes.get(scope_id)
        if state is None:
            return None
        return state.payments.get(key)

    def record_expense(
        self,
        scope_id: Hashable,
        payer: Hashable,
        total: Money | int,
        currency: str,
        split_method: SplitMethod,
        participants: Sequence[Hashable],
        *,
        expected_version: Optional[int] = None,
        title: Optional[str] = None,
    ) -> Expense:
        expense = self._build_expense(scope_id, payer, total, currency, split_method, participants, title)
        state = self._state_for_write(scope_id)
        with state.lock:
            self._check_version(scope_id, state, expected_version)
            state.expenses[expense.id] = expense
            self._expense_scope[expense.id] = scope_id
            version = self._bump(state)
        self._log.info(
            "ledger.expense.recorded",
            scope_id=scope_id,
            expense_id=expense.id,
            payer=payer,
            total=expense.total.amount,
            currency=expense.currency,
            version=version,
        )
        self._notify(scope_id, version)
        return expense

    def remove_expense(self, expense_id: str, *, expected_version: Optional[int] = None) -> None:
        scope_id = self._expense_scope.get(expense_id)
        if scope_id is None:
            raise ExpenseNotFound(expense_id)
        state = self._scopes[scope_id]
        with state.lock:
            self._check_version(scope_id, state, expected_version)
            if state.expenses.pop(expense_id, None) is None:
                raise ExpenseNotFound(expense_id)
            del self._expense_scope[expense_id]
            version = self._bump(state)
        self._log.info("ledger.expense.removed", scope_id=scope_id, expense_id=expense_id, version=version)
        self._notify(scope_id, version)

    def edit_expense(
        self,
        expense_id: str,
        payer: Hashable,
        total: Money | int,
        currency: str,
        split_method: SplitMethod,
        participants: Sequence[Hashable],
        *,
        expected_version: Optional[int] = None,
        title: Optional[str] = None,
    ) -> Expense:
        """Replace an expense: the old record is deleted and a new one is recorded.

        Both halves commit under one version bump, so readers never observe the
        scope with the expense missing.
        """
        original = self.get_expense(expense_id)
        scope_id = original.scope_id
        expense = self._build_expense(
            scope_id,
            payer,
            total,
            currency,
            split_method,
            participants,
            title if title is not None else original.title,
        )
        expense = replace(expense, replaces=expense_id)
        state = self._scopes[scope_id]
        with state.lock:
            self._check_version(scope_id, state, expected_version)
            if state.expenses.pop(expense_id, None) is None:
                raise ExpenseNotFound(expense_id)
            del self._expense_scope[expense_id]
            state.expenses[expense.id] = expense
            self._expense_scope[expense.id] = scope_id
            version = self._bump(state)
        self._log.info(
            "ledger.expense.edited",
            scope_id=scope_id,
            expense_id=expense.id,
            replaces=expense_id,
            version=version,
        )
        self._notify(scope_id, version)
        return expense

    def put_settlement(
        self,
        transaction: SettlementTransaction,
        *,
        expected_version: Optional[int] = None,
        payment: Optional[PaymentKey] = None,
    ) -> int:
        """Store a settlement record; ``payment`` claims its idempotency key in the same commit."""
        state = self._state_for_write(transaction.scope_id)
        with state.lock:
            self._check_version(transaction.scope_id, state, expected_version)
            if payment is not None:
                claimed = state.payments.get(payment.key)
                if claimed is not None:
                    raise DuplicatePayment(payment.key, claimed.transaction_id)
                state.payments[payment.key] = payment
            state.settlements[transaction.id] = transaction
            self._settlement_scope[transaction.id] = transaction.scope_id
            version = self._bump(state)
        self._log.info(
            "ledger.settlement.stored",
            scope_id=transaction.scope_id,
            transaction_id=transaction.id,
            status=transaction.status.value,
            version=version,
        )
        self._notify(transaction.scope_id, version)
        return version

    def _build_expense(
        self,
        scope_id: Hashable,
        payer: Hashable,
        total: Money | int,
        currency: str,
        split_method: SplitMethod,
        participants: Sequence[Hashable],
        title: Optional[str],
    ) -> Expense:
        currency = normalize_currency(currency)
        if isinstance(total, Money):
            if total.currency != currency:
                raise CurrencyMismatch(currency, total.currency)
        else:
            total = Money(total, currency)

        splits = compute_splits(total, split_method, participants)
        if payer not in splits:
            raise InvalidSplit("payer must be one of the participants")
        state = self._scopes.get(scope_id)
        if state is not None and state.members:
            outsiders = [p for p in splits if p not in state.members]
            if outsiders:
                raise InvalidSplit(f"not members of scope {scope_id}: {outsiders}")

        return Expense(
            id=self._id_factory(),
            scope_id=scope_id,
            payer=payer,
            total=total,
            split_method=split_method,
            splits=MappingProxyType(splits),
            created_at=self._clock(),
            title=title,
        )

    def _state_for_write(self, scope_id: Hashable) -> _ScopeState:
        state = self._scopes.get(scope_id)
        if state is None:
            self.open_scope(scope_id)
            state = self._scopes[scope_id]
        return state

    def _check_version(self, scope_id: Hashable, state: _ScopeState, expected: Optional[int]) -> None:
        if expected is not None and expected != state.version:
            self._log.warning("ledger.conflict", scope_id=scope_id, expected=expected, actual=state.version)
            raise ConcurrentModification(scope_id, expected, state.version)

    @staticmethod
    def _bump(state: _ScopeState) -> int:
        state.version += 1
        return state.version

    def _notify(self, scope_id: Hashable, version: int) -> None:
        for listener in self._listeners:
            listener(scope_id, version)

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    @property
    def id_factory(self) -> Callable[[], str]:
        return self._id_factory
