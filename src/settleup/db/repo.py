from __future__ import annotations

import json
from contextlib import asynccontextmanager
from fractions import Fraction
from types import MappingProxyType
from typing import Any, AsyncIterator, Hashable, Iterable, Optional

import asyncpg

from settleup.db.models import (
    Expense,
    PaymentKey,
    ScopeKind,
    ScopeSnapshot,
    SettlementStatus,
    SettlementTransaction,
)
from settleup.logging import get_logger, sql_logger
from settleup.services.errors import ConcurrentModification, DuplicatePayment, ExpenseNotFound, ValidationError
from settleup.services.money import Money
from settleup.services.split import Equal, Exact, Percentage, Shares, SplitMethod


class Database:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None
        self._log = get_logger(__name__)

    async def connect(self) -> None:
        if self._pool is None:
            # asyncpg expects a postgresql:// or postgres:// scheme, without "+asyncpg"
            dsn = self._dsn.replace("+asyncpg", "")
            self._pool = await asyncpg.create_pool(dsn)
            self._log.info("db.pool.created")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._log.info("db.pool.closed")

    async def execute(self, query: str, *args: Any) -> str:
        await self._ensure_pool()
        assert self._pool
        sql_logger.info("sql.execute", query=query, args=args)
        return await self._pool.execute(query, *args)

    @asynccontextmanager
    async def transaction(self, **options: Any) -> AsyncIterator[asyncpg.Connection]:
        """Yield a pooled connection inside ``conn.transaction(**options)``, e.g. ``isolation="repeatable_read"``."""
        await self._ensure_pool()
        assert self._pool
        async with self._pool.acquire() as conn:
            async with conn.transaction(**options):
                sql_logger.info("sql.transaction.begin", **options)
                yield conn

    async def _ensure_pool(self) -> None:
        if self._pool is None:
            await self.connect()


def _check_participant(participant: Hashable) -> Hashable:
    if isinstance(participant, bool) or not isinstance(participant, (str, int)):
        raise ValidationError(f"participant id {participant!r} cannot be stored, use str or int")
    return participant


def encode_participant(participant: Hashable) -> str:
    """Store a participant id as a JSON scalar so ``1`` and ``"1"`` stay distinct."""
    return json.dumps(_check_participant(participant))


def decode_participant(raw: str) -> Hashable:
    return json.loads(raw)


def encode_split_method(method: SplitMethod) -> str:
    # params are [participant, value] pairs; JSON object keys would turn ids into text
    if isinstance(method, Equal):
        params: list[list[Any]] = []
    elif isinstance(method, Percentage):
        params = [[_check_participant(p), str(Fraction(v))] for p, v in method.percentages.items()]
    elif isinstance(method, Shares):
        params = [[_check_participant(p), str(Fraction(v))] for p, v in method.weights.items()]
    elif isinstance(method, Exact):
        params = [[_check_participant(p), m.amount] for p, m in method.amounts.items()]
    else:
        raise ValueError(f"unknown split method: {method!r}")
    return json.dumps({"kind": method.kind, "params": params}, sort_keys=True)


def decode_split_method(raw: str, currency: str) -> SplitMethod:
    data = json.loads(raw)
    kind, params = data["kind"], data.get("params", [])
    if kind == Equal.kind:
        return Equal()
    if kind == Percentage.kind:
        return Percentage({p: Fraction(v) for p, v in params})
    if kind == Shares.kind:
        return Shares({p: Fraction(v) for p, v in params})
    if kind == Exact.kind:
        return Exact({p: Money(int(v), currency) for p, v in params})
    raise ValueError(f"unknown split method kind: {kind}")


def _expense_from_rows(row: Any, split_rows: Iterable[Any]) -> Expense:
    currency = row["currency"]
    splits = {decode_participant(r["participant_id"]): Money(int(r["amount_minor"]), currency) for r in split_rows}
    return Expense(
        id=row["id"],
        scope_id=row["scope_id"],
        payer=decode_participant(row["payer_id"]),
        total=Money(int(row["amount_minor"]), currency),
        split_method=decode_split_method(row["split_method"], currency),
        splits=MappingProxyType(dict(sorted(splits.items()))),
        created_at=row["created_at"],
        title=row["title"],
        replaces=row["replaces"],
    )


def _settlement_from_row(row: Any) -> SettlementTransaction:
    currency = row["currency"]
    return SettlementTransaction(
        id=row["id"],
        scope_id=row["scope_id"],
        from_participant=decode_participant(row["from_participant"]),
        to_participant=decode_participant(row["to_participant"]),
        amount=Money(int(row["amount_minor"]), currency),
        paid=Money(int(row["paid_minor"]), currency),
        status=SettlementStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        note=row["note"],
        method=row["method"],
    )


class LedgerRepository:
    """Persistence for scope ledgers.

    Participant ids are stored as JSON-encoded text; every write runs in one transaction
    together with a version-checked bump of the scope row.
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self._log = get_logger(__name__)

    async def ensure_scope(self, scope_id: str, kind: ScopeKind, members: Iterable[Hashable] = ()) -> None:
        await self.db.execute(
            """
            INSERT INTO scopes (id, kind, version)
            VALUES ($1, $2, 0)
            ON CONFLICT (id) DO NOTHING
            """,
            scope_id,
            kind.value,
        )
        for member in members:
            await self.db.execute(
                """
                INSERT INTO scope_members (scope_id, participant_id)
                VALUES ($1, $2)
                ON CONFLICT DO NOTHING
                """,
                scope_id,
                encode_participant(member),
            )

    async def load_scope(self, scope_id: str) -> ScopeSnapshot:
        """Read a scope as of one point in time; the stamped version matches the rows."""
        async with self.db.transaction(isolation="repeatable_read", readonly=True) as conn:
            scope = await conn.fetchrow("SELECT * FROM scopes WHERE id = $1", scope_id)
            if scope is None:
                return ScopeSnapshot(scope_id=scope_id, version=0)

            members = await conn.fetch(
                "SELECT participant_id FROM scope_members WHERE scope_id = $1",
                scope_id,
            )
            expense_rows = await conn.fetch(
                "SELECT * FROM expenses WHERE scope_id = $1 ORDER BY created_at, id",
                scope_id,
            )
            split_rows = await conn.fetch(
                """
                SELECT s.*
                FROM expense_splits s
                JOIN expenses e ON e.id = s.expense_id
                WHERE e.scope_id = $1
                """,
                scope_id,
            )
            settlement_rows = await conn.fetch(
                "SELECT * FROM settlements WHERE scope_id = $1 ORDER BY created_at, id",
                scope_id,
            )
            payment_rows = await conn.fetch(
                """
                SELECT p.*
                FROM settlement_payments p
                JOIN settlements s ON s.id = p.settlement_id
                WHERE s.scope_id = $1
                ORDER BY p.recorded_at, p.idempotency_key
                """,
                scope_id,
            )

        splits_by_expense: dict[str, list[Any]] = {}
        for row in split_rows:
            splits_by_expense.setdefault(row["expense_id"], []).append(row)

        return ScopeSnapshot(
            scope_id=scope_id,
            version=int(scope["version"]),
            expenses=tuple(_expense_from_rows(r, splits_by_expense.get(r["id"], [])) for r in expense_rows),
            settlements=tuple(_settlement_from_row(r) for r in settlement_rows),
            kind=ScopeKind(scope["kind"]),
            members=frozenset(decode_participant(r["participant_id"]) for r in members),
            payments=tuple(
                PaymentKey(
                    key=r["idempotency_key"],
                    transaction_id=r["settlement_id"],
                    paid=Money(int(r["amount_minor"]), r["currency"]),
                )
                for r in payment_rows
            ),
        )

    async def _bump_version(self, conn: Any, scope_id: Hashable, expected: int) -> int:
        version = await conn.fetchval(
            "UPDATE scopes SET version = version + 1 WHERE id = $1 AND version = $2 RETURNING version",
            scope_id,
            expected,
        )
        if version is None:
            actual = await conn.fetchval("SELECT version FROM scopes WHERE id = $1", scope_id)
            self._log.warning("ledger.conflict", scope_id=scope_id, expected=expected, actual=actual)
            raise ConcurrentModification(scope_id, expected, int(actual or 0))
        return int(version)

    async def append_expense(self, expense: Expense, expected_version: int) -> int:
        async with self.db.transaction() as conn:
            version = await self._bump_version(conn, expense.scope_id, expected_version)
            if expense.replaces is not None:
                await conn.execute("DELETE FROM expenses WHERE id = $1", expense.replaces)
            await conn.execute(
                """
                INSERT INTO expenses (id, scope_id, payer_id, title, amount_minor, currency, split_method, replaces, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                expense.id,
                expense.scope_id,
                encode_participant(expense.payer),
                expense.title,
                expense.total.amount,
                expense.currency,
                encode_split_method(expense.split_method),
                expense.replaces,
                expense.created_at,
            )
            await conn.executemany(
                """
                INSERT INTO expense_splits (expense_id, participant_id, amount_minor)
                VALUES ($1, $2, $3)
                """,
                [(expense.id, encode_participant(p), share.amount) for p, share in expense.splits.items()],
            )
        return version

    async def delete_expense(self, scope_id: str, expense_id: str, expected_version: int) -> int:
        async with self.db.transaction() as conn:
            version = await self._bump_version(conn, scope_id, expected_version)
            result = await conn.execute(
                "DELETE FROM expenses WHERE id = $1 AND scope_id = $2",
                expense_id,
                scope_id,
            )
            if result.endswith(" 0"):
                raise ExpenseNotFound(expense_id)
        return version

    async def save_settlement(
        self,
        transaction: SettlementTransaction,
        expected_version: int,
        idempotency_key: Optional[str] = None,
        paid: Optional[Money] = None,
    ) -> int:
        """Upsert a settlement; with ``idempotency_key`` the payment is claimed in the same transaction."""
        async with self.db.transaction() as conn:
            if idempotency_key is not None:
                owner = await conn.fetchval(
                    "SELECT settlement_id FROM settlement_payments WHERE idempotency_key = $1",
                    idempotency_key,
                )
                if owner is not None:
                    raise DuplicatePayment(idempotency_key, str(owner))
            version = await self._bump_version(conn, transaction.scope_id, expected_version)
            await conn.execute(
                """
                INSERT INTO settlements (
                    id, scope_id, from_participant, to_participant, amount_minor, paid_minor,
                    currency, status, note, method, created_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (id) DO UPDATE
                    SET paid_minor = EXCLUDED.paid_minor,
                        status = EXCLUDED.status,
                        note = EXCLUDED.note,
                        method = EXCLUDED.method,
                        updated_at = EXCLUDED.updated_at
                """,
                transaction.id,
                transaction.scope_id,
                encode_participant(transaction.from_participant),
                encode_participant(transaction.to_participant),
                transaction.amount.amount,
                transaction.paid.amount,
                transaction.currency,
                transaction.status.value,
                transaction.note,
                transaction.method,
                transaction.created_at,
                transaction.updated_at,
            )
            if idempotency_key is not None:
                applied = paid if paid is not None else transaction.paid
                await conn.execute(
                    """
                    INSERT INTO settlement_payments (idempotency_key, settlement_id, amount_minor, currency)
                    VALUES ($1, $2, $3, $4)
                    """,
                    idempotency_key,
                    transaction.id,
                    applied.amount,
                    applied.currency,
                )
        return version
