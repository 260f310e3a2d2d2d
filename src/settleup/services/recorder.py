from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Hashable, Optional, Union

from settleup.db.models import PaymentKey, SettlementStatus, SettlementTransaction
from settleup.logging import get_logger
from settleup.services.authz import assert_settlement_party
from settleup.services.errors import (
    CurrencyMismatch,
    DuplicatePayment,
    InvalidTransition,
    OverpaymentRejected,
    SettlementNotFound,
    ValidationError,
)
from settleup.services.ledger import ExpenseLedger
from settleup.services.money import Money
from settleup.services.settlement import Transfer

SettlementRef = Union[str, Transfer]

OPEN_STATUSES = frozenset({SettlementStatus.PENDING, SettlementStatus.PARTIALLY_PAID})


@dataclass(slots=True)
class PendingTotals:
    participant: Hashable
    to_pay: dict[str, Money] = field(default_factory=dict)
    to_receive: dict[str, Money] = field(default_factory=dict)


class SettlementRecorder:
    """Owns the status of settlement transactions once a payment is confirmed.

    Pending -> PartiallyPaid -> Completed, or Pending -> Cancelled. Records are
    written back through the ledger so every change bumps the scope version.
    """

    def __init__(self, ledger: ExpenseLedger) -> None:
        self._ledger = ledger
        self._locks: dict[Hashable, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._log = get_logger(__name__)

    def _scope_lock(self, scope_id: Hashable) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(scope_id, threading.Lock())

    def _new_transaction(
        self,
        scope_id: Hashable,
        proposal: Transfer,
        note: Optional[str],
        method: Optional[str],
    ) -> SettlementTransaction:
        if not proposal.amount.is_positive():
            raise ValidationError("settlement amount must be positive")
        if proposal.from_participant == proposal.to_participant:
            raise ValidationError("a participant cannot settle with themselves")
        now = self._ledger.clock()
        return SettlementTransaction(
            id=self._ledger.id_factory(),
            scope_id=scope_id,
            from_participant=proposal.from_participant,
            to_participant=proposal.to_participant,
            amount=proposal.amount,
            paid=Money.zero(proposal.amount.currency),
            status=SettlementStatus.PENDING,
            created_at=now,
            updated_at=now,
            note=note,
            method=method,
        )

    def _resolve(self, scope_id: Hashable, transaction_id: str) -> SettlementTransaction:
        transaction = self._ledger.get_settlement(transaction_id)
        if transaction.scope_id != scope_id:
            raise SettlementNotFound(transaction_id)
        return transaction

    def promote(
        self,
        scope_id: Hashable,
        proposal: Transfer,
        *,
        note: Optional[str] = None,
        method: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> SettlementTransaction:
        """Persist a proposed transfer as a Pending settlement."""
        transaction = self._new_transaction(scope_id, proposal, note, method)
        with self._scope_lock(scope_id):
            self._ledger.put_settlement(transaction, expected_version=expected_version)
        return transaction

    def record_payment(
        self,
        scope_id: Hashable,
        ref: SettlementRef,
        paid_amount: Money | int,
        idempotency_key: str,
        *,
        actor: Optional[Hashable] = None,
        note: Optional[str] = None,
        method: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> SettlementTransaction:
        """Apply a full or partial payment to a settlement.

        ``ref`` is either the id of a recorded transaction or a proposed
        :class:`Transfer`, which is recorded as part of this payment. Replaying
        an ``idempotency_key`` with the same parameters returns the current
        state without applying anything twice.
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")

        with self._scope_lock(scope_id):
            try:
                self._check_idempotency(scope_id, ref, paid_amount, idempotency_key)
            except DuplicatePayment as exc:
                if exc.conflicting:
                    raise
                self._log.info(
                    "settlement.payment.duplicate",
                    scope_id=scope_id,
                    transaction_id=exc.transaction_id,
                    idempotency_key=idempotency_key,
                )
                return self._ledger.get_settlement(exc.transaction_id)

            if isinstance(ref, Transfer):
                transaction = self._new_transaction(scope_id, ref, note, method)
            else:
                transaction = self._resolve(scope_id, ref)

            if actor is not None:
                assert_settlement_party(actor, transaction)

            paid = self._as_money(paid_amount, transaction.currency)
            if transaction.status == SettlementStatus.CANCELLED:
                raise InvalidTransition(f"cannot pay a {transaction.status.value} settlement")
            outstanding = transaction.outstanding
            if paid > outstanding:
                raise OverpaymentRejected(
                    f"payment of {paid} exceeds outstanding {outstanding} on {transaction.id}"
                )

            total_paid = transaction.paid + paid
            status = (
                SettlementStatus.COMPLETED if total_paid == transaction.amount else SettlementStatus.PARTIALLY_PAID
            )
            updated = replace(
                transaction,
                paid=total_paid,
                status=status,
                updated_at=self._ledger.clock(),
                note=note if note is not None else transaction.note,
                method=method if method is not None else transaction.method,
            )
            self._ledger.put_settlement(
                updated,
                expected_version=expected_version,
                payment=PaymentKey(idempotency_key, updated.id, paid),
            )

        self._log.info(
            "settlement.payment.recorded",
            scope_id=scope_id,
            transaction_id=updated.id,
            paid=paid.amount,
            outstanding=updated.outstanding.amount,
            status=updated.status.value,
        )
        return updated

    def cancel(self, transaction_id: str, *, expected_version: Optional[int] = None) -> SettlementTransaction:
        transaction = self._ledger.get_settlement(transaction_id)
        with self._scope_lock(transaction.scope_id):
            transaction = self._ledger.get_settlement(transaction_id)
            if transaction.status != SettlementStatus.PENDING:
                raise InvalidTransition(f"cannot cancel a {transaction.status.value} settlement")
            updated = replace(transaction, status=SettlementStatus.CANCELLED, updated_at=self._ledger.clock())
            self._ledger.put_settlement(updated, expected_version=expected_version)
        self._log.info("settlement.cancelled", scope_id=updated.scope_id, transaction_id=transaction_id)
        return updated

    def pending_totals(self, scope_id: Hashable, participant: Hashable) -> PendingTotals:
        totals = PendingTotals(participant=participant)
        for transaction in self._ledger.snapshot(scope_id).settlements:
            if transaction.status not in OPEN_STATUSES:
                continue
            if transaction.from_participant == participant:
                bucket = totals.to_pay
            elif transaction.to_participant == participant:
                bucket = totals.to_receive
            else:
                continue
            currency = transaction.currency
            bucket[currency] = bucket.get(currency, Money.zero(currency)) + transaction.outstanding
        return totals

    def _check_idempotency(
        self,
        scope_id: Hashable,
        ref: SettlementRef,
        paid_amount: Money | int,
        key: str,
    ) -> None:
        applied = self._ledger.applied_payment(scope_id, key)
        if applied is None:
            return
        paid = paid_amount if isinstance(paid_amount, Money) else Money(paid_amount, applied.paid.currency)
        if isinstance(ref, Transfer):
            settled = self._ledger.get_settlement(applied.transaction_id)
            same_ref = (settled.from_participant, settled.to_participant, settled.amount) == (
                ref.from_participant,
                ref.to_participant,
                ref.amount,
            )
        else:
            same_ref = ref == applied.transaction_id
        raise DuplicatePayment(key, applied.transaction_id, conflicting=not (same_ref and paid == applied.paid))

    @staticmethod
    def _as_money(paid_amount: Money | int, currency: str) -> Money:
        paid = paid_amount if isinstance(paid_amount, Money) else Money(paid_amount, currency)
        if paid.currency != currency:
            raise CurrencyMismatch(currency, paid.currency)
        if not paid.is_positive():
            raise ValidationError("paid amount must be positive")
        return paid
