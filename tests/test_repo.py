from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fractions import Fraction
from types import MappingProxyType

import pytest

from settleup.db.models import Expense, PaymentKey, ScopeKind, SettlementStatus, SettlementTransaction
from settleup.db.repo import (
    LedgerRepository,
    decode_participant,
    decode_split_method,
    encode_participant,
    encode_split_method,
)
from settleup.services.errors import ConcurrentModification, DuplicatePayment, ValidationError
from settleup.services.ledger import ExpenseLedger
from settleup.services.money import Money
from settleup.services.recorder import SettlementRecorder
from settleup.services.split import Exact, Percentage, compute_splits

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


class DummyDB:
    def __init__(self, version: int = 0) -> None:
        self.version = version
        self.rows: dict[str, list[dict]] = {}
        self.claimed: dict[str, str] = {}
        self.executed: list[tuple[str, tuple]] = []
        self.transactions: list[dict] = []
        self.reads_outside_transaction = 0
        self._depth = 0

    async def fetch(self, query: str, *args):
        if not self._depth:
            self.reads_outside_transaction += 1
        for table in ("scope_members", "expense_splits", "expenses", "settlement_payments", "settlements"):
            if f"FROM {table}" in query:
                return self.rows.get(table, [])
        return []

    async def fetchrow(self, query: str, *args):
        if not self._depth:
            self.reads_outside_transaction += 1
        if "FROM scopes" in query:
            scopes = self.rows.get("scopes", [])
            return scopes[0] if scopes else None
        return None

    async def fetchval(self, query: str, *args):
        if query.startswith("UPDATE scopes"):
            if args[1] != self.version:
                return None
            self.version += 1
            return self.version
        if "SELECT version" in query:
            return self.version
        if "FROM settlement_payments" in query:
            return self.claimed.get(args[0])
        return None

    async def execute(self, query: str, *args):
        self.executed.append((query, args))
        return "OK"

    async def executemany(self, query: str, args):
        for row in args:
            self.executed.append((query, tuple(row)))

    @asynccontextmanager
    async def transaction(self, **options):
        self.transactions.append(options)
        self._depth += 1
        try:
            yield self
        finally:
            self._depth -= 1


def make_expense() -> Expense:
    return Expense(
        id="e1",
        scope_id="trip",
        payer="A",
        total=Money(100, "USD"),
        split_method=Percentage({"A": 60, "B": 40}),
        splits=MappingProxyType({"A": Money(60, "USD"), "B": Money(40, "USD")}),
        created_at=NOW,
        title="dinner",
    )


@pytest.mark.asyncio
async def test_load_scope_builds_snapshot():
    db = DummyDB()
    db.rows = {
        "scopes": [{"id": "trip", "kind": "friend_pair", "version": 4}],
        "scope_members": [{"participant_id": '"A"'}, {"participant_id": '"B"'}],
        "expenses": [
            {
                "id": "e1",
                "scope_id": "trip",
                "payer_id": '"A"',
                "title": "dinner",
                "amount_minor": 100,
                "currency": "USD",
                "split_method": encode_split_method(Percentage({"A": 60, "B": 40})),
                "replaces": None,
                "created_at": NOW,
            }
        ],
        "expense_splits": [
            {"expense_id": "e1", "participant_id": '"B"', "amount_minor": 40},
            {"expense_id": "e1", "participant_id": '"A"', "amount_minor": 60},
        ],
        "settlements": [
            {
                "id": "s1",
                "scope_id": "trip",
                "from_participant": '"B"',
                "to_participant": '"A"',
                "amount_minor": 40,
                "paid_minor": 10,
                "currency": "USD",
                "status": "partially_paid",
                "note": None,
                "method": "cash",
                "created_at": NOW,
                "updated_at": NOW,
            }
        ],
        "settlement_payments": [
            {"idempotency_key": "key-1", "settlement_id": "s1", "amount_minor": 10, "currency": "USD", "recorded_at": NOW}
        ],
    }
    repo = LedgerRepository(db)  # type: ignore[arg-type]

    snapshot = await repo.load_scope("trip")

    assert snapshot.version == 4
    assert snapshot.kind == ScopeKind.FRIEND_PAIR
    assert snapshot.members == frozenset({"A", "B"})
    assert list(snapshot.expenses[0].splits) == ["A", "B"]
    assert snapshot.expenses[0].split_method == Percentage({"A": Fraction(60), "B": Fraction(40)})
    assert snapshot.settlements[0].status == SettlementStatus.PARTIALLY_PAID
    assert snapshot.settlements[0].outstanding == Money(30, "USD")
    assert snapshot.payments == (PaymentKey("key-1", "s1", Money(10, "USD")),)
    assert db.transactions == [{"isolation": "repeatable_read", "readonly": True}]
    assert db.reads_outside_transaction == 0


@pytest.mark.asyncio
async def test_unknown_scope_is_empty():
    repo = LedgerRepository(DummyDB())  # type: ignore[arg-type]
    snapshot = await repo.load_scope("nowhere")
    assert snapshot.version == 0
    assert snapshot.expenses == ()


@pytest.mark.asyncio
async def test_append_expense_writes_splits():
    db = DummyDB(version=2)
    repo = LedgerRepository(db)  # type: ignore[arg-type]

    version = await repo.append_expense(make_expense(), expected_version=2)

    assert version == 3
    split_rows = [args for query, args in db.executed if "expense_splits" in query]
    assert split_rows == [("e1", '"A"', 60), ("e1", '"B"', 40)]


@pytest.mark.asyncio
async def test_stale_version_raises():
    db = DummyDB(version=3)
    repo = LedgerRepository(db)  # type: ignore[arg-type]

    with pytest.raises(ConcurrentModification) as excinfo:
        await repo.append_expense(make_expense(), expected_version=2)

    assert excinfo.value.actual == 3
    assert db.executed == []


@pytest.mark.asyncio
async def test_claimed_idempotency_key_is_rejected():
    db = DummyDB(version=1)
    db.claimed["key-1"] = "s1"
    repo = LedgerRepository(db)  # type: ignore[arg-type]
    transaction = SettlementTransaction(
        id="s1",
        scope_id="trip",
        from_participant="B",
        to_participant="A",
        amount=Money(40, "USD"),
        paid=Money(40, "USD"),
        status=SettlementStatus.COMPLETED,
        created_at=NOW,
        updated_at=NOW,
    )

    with pytest.raises(DuplicatePayment):
        await repo.save_settlement(transaction, expected_version=1, idempotency_key="key-1")
    assert db.version == 1

    await repo.save_settlement(transaction, expected_version=1, idempotency_key="key-2")
    assert db.version == 2
    assert any("settlement_payments" in query for query, _ in db.executed)


def test_exact_split_method_encoding():
    method = Exact({"A": Money(60, "USD"), "B": Money(40, "USD")})
    assert decode_split_method(encode_split_method(method), "USD") == method


def test_integer_participant_ids_keep_their_type():
    method = decode_split_method(encode_split_method(Percentage({1: 50, 2: 50})), "USD")

    assert method == Percentage({1: Fraction(50), 2: Fraction(50)})
    assert compute_splits(Money(100, "USD"), method, [1, 2]) == {1: Money(50, "USD"), 2: Money(50, "USD")}
    assert decode_participant(encode_participant(1)) == 1
    assert decode_participant(encode_participant("1")) == "1"


def test_unstorable_participant_id_is_rejected():
    with pytest.raises(ValidationError):
        encode_participant(True)
    with pytest.raises(ValidationError):
        encode_split_method(Percentage({(1, 2): 100}))


@pytest.mark.asyncio
async def test_reloaded_scope_absorbs_replayed_payment():
    db = DummyDB()
    db.rows = {
        "scopes": [{"id": "trip", "kind": "group", "version": 2}],
        "settlements": [
            {
                "id": "s1",
                "scope_id": "trip",
                "from_participant": "7",
                "to_participant": "9",
                "amount_minor": 50,
                "paid_minor": 50,
                "currency": "USD",
                "status": "completed",
                "note": None,
                "method": None,
                "created_at": NOW,
                "updated_at": NOW,
            }
        ],
        "settlement_payments": [
            {"idempotency_key": "key-1", "settlement_id": "s1", "amount_minor": 50, "currency": "USD", "recorded_at": NOW}
        ],
    }
    ledger = ExpenseLedger()
    ledger.restore(await LedgerRepository(db).load_scope("trip"))  # type: ignore[arg-type]

    replayed = SettlementRecorder(ledger).record_payment("trip", "s1", 50, "key-1", actor=7)

    assert replayed.status == SettlementStatus.COMPLETED
    assert replayed.from_participant == 7
    assert ledger.version("trip") == 2
