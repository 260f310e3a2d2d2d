from __future__ import annotations

from typing import Hashable, List, Optional, Sequence

from settleup.config import get_settings
from settleup.db.models import Expense, ScopeKind, ScopeSnapshot, SettlementTransaction
from settleup.logging import get_logger
from settleup.services.balances import BalanceReport, ParticipantTotals, build_balance_report, summarize_participant
from settleup.services.currency import RateProvider
from settleup.services.ledger import ExpenseLedger
from settleup.services.money import Money, normalize_currency
from settleup.services.recorder import PendingTotals, SettlementRecorder, SettlementRef
from settleup.services.settlement import SettlementSummary, Transfer, plan_settlement, summarize_plan
from settleup.services.split import SplitMethod
from settleup.state import CachedPlan, PlanCache


class SettlementEngine:
    """Entry point tying the ledger, balances, optimizer and recorder together.

    Plans are cached per scope and reporting currency. Every successful write
    to a scope drops its cached plans before the write call returns.
    """

    def __init__(
        self,
        ledger: Optional[ExpenseLedger] = None,
        rate_provider: Optional[RateProvider] = None,
        reporting_currency: Optional[str] = None,
        cache: Optional[PlanCache] = None,
    ) -> None:
        self.ledger = ledger or ExpenseLedger()
        self.recorder = SettlementRecorder(self.ledger)
        self.cache = cache or PlanCache()
        self._rate_provider = rate_provider
        self.reporting_currency = normalize_currency(reporting_currency or get_settings().reporting_currency)
        self._log = get_logger(__name__)
        self.ledger.subscribe(self._on_mutation)

    def _on_mutation(self, scope_id: Hashable, version: int) -> None:
        if self.cache.invalidate(scope_id):
            self._log.info("engine.cache.invalidated", scope_id=scope_id, version=version)

    @property
    def rate_provider(self) -> Optional[RateProvider]:
        return self._rate_provider

    def set_rate_provider(self, rate_provider: Optional[RateProvider]) -> None:
        self._rate_provider = rate_provider
        self.cache.clear()

    def open_scope(
        self,
        scope_id: Hashable,
        kind: ScopeKind = ScopeKind.GROUP,
        members: Sequence[Hashable] = (),
    ) -> ScopeSnapshot:
        return self.ledger.open_scope(scope_id, kind, members)

    def snapshot(self, scope_id: Hashable) -> ScopeSnapshot:
        return self.ledger.snapshot(scope_id)

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
        return self.ledger.record_expense(
            scope_id,
            payer,
            total,
            currency,
            split_method,
            participants,
            expected_version=expected_version,
            title=title,
        )

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
        return self.ledger.edit_expense(
            expense_id,
            payer,
            total,
            currency,
            split_method,
            participants,
            expected_version=expected_version,
            title=title,
        )

    def remove_expense(self, expense_id: str, *, expected_version: Optional[int] = None) -> None:
        self.ledger.remove_expense(expense_id, expected_version=expected_version)

    def _cached_plan(
        self,
        scope_id: Hashable,
        reporting_currency: Optional[str],
        rate_provider: Optional[RateProvider],
    ) -> CachedPlan:
        currency = normalize_currency(reporting_currency or self.reporting_currency)
        # only plans built with the engine's own rates are shared
        cacheable = rate_provider is None
        snapshot = self.ledger.snapshot(scope_id)
        if cacheable:
            cached = self.cache.get(scope_id, currency, snapshot.version)
            if cached is not None:
                return cached

        report = build_balance_report(
            scope_id,
            snapshot.expenses,
            snapshot.settlements,
            currency,
            rate_provider or self._rate_provider,
        )
        transfers = plan_settlement(report.balances)
        plan = CachedPlan(version=snapshot.version, report=report, transfers=tuple(transfers))
        if cacheable:
            self.cache.put(scope_id, currency, plan)
        self._log.info(
            "settlement.planned",
            scope_id=scope_id,
            version=snapshot.version,
            currency=currency,
            transfers=len(transfers),
        )
        return plan

    def balance_report(
        self,
        scope_id: Hashable,
        reporting_currency: Optional[str] = None,
        rate_provider: Optional[RateProvider] = None,
    ) -> BalanceReport:
        return self._cached_plan(scope_id, reporting_currency, rate_provider).report

    def compute_balances(
        self,
        scope_id: Hashable,
        reporting_currency: Optional[str] = None,
        rate_provider: Optional[RateProvider] = None,
    ) -> dict[Hashable, Money]:
        return dict(self.balance_report(scope_id, reporting_currency, rate_provider).balances)

    @staticmethod
    def plan_settlement(balances: dict[Hashable, Money]) -> List[Transfer]:
        return plan_settlement(balances)

    def settle_scope(
        self,
        scope_id: Hashable,
        reporting_currency: Optional[str] = None,
        rate_provider: Optional[RateProvider] = None,
    ) -> List[Transfer]:
        return list(self._cached_plan(scope_id, reporting_currency, rate_provider).transfers)

    def summary(
        self,
        scope_id: Hashable,
        reporting_currency: Optional[str] = None,
        rate_provider: Optional[RateProvider] = None,
    ) -> SettlementSummary:
        plan = self._cached_plan(scope_id, reporting_currency, rate_provider)
        return summarize_plan(
            self.ledger.snapshot(scope_id).expenses,
            list(plan.transfers),
            plan.report.currency,
            rate_provider or self._rate_provider,
        )

    def promote(
        self,
        scope_id: Hashable,
        proposal: Transfer,
        *,
        note: Optional[str] = None,
        method: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> SettlementTransaction:
        return self.recorder.promote(scope_id, proposal, note=note, method=method, expected_version=expected_version)

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
        return self.recorder.record_payment(
            scope_id,
            ref,
            paid_amount,
            idempotency_key,
            actor=actor,
            note=note,
            method=method,
            expected_version=expected_version,
        )

    def cancel_settlement(self, transaction_id: str, *, expected_version: Optional[int] = None) -> SettlementTransaction:
        return self.recorder.cancel(transaction_id, expected_version=expected_version)

    def pending_totals(self, scope_id: Hashable, participant: Hashable) -> PendingTotals:
        return self.recorder.pending_totals(scope_id, participant)

    def participant_totals(self, participant: Hashable, reporting_currency: Optional[str] = None) -> ParticipantTotals:
        currency = normalize_currency(reporting_currency or self.reporting_currency)
        scope_balances = {
            scope_id: self.compute_balances(scope_id, currency)
            for scope_id in self.ledger.scope_ids()
        }
        return summarize_participant(participant, scope_balances, currency)
