"""Per-scope cache of computed balances and settlement plans."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Hashable, Optional

from settleup.services.balances import BalanceReport
from settleup.services.settlement import Transfer


@dataclass(frozen=True, slots=True)
class CachedPlan:
    version: int
    report: BalanceReport
    transfers: tuple[Transfer, ...]


class PlanCache:
    def __init__(self) -> None:
        self._plans: dict[Hashable, dict[str, CachedPlan]] = {}
        self._lock = threading.Lock()

    def get(self, scope_id: Hashable, currency: str, version: int) -> Optional[CachedPlan]:
        with self._lock:
            cached = self._plans.get(scope_id, {}).get(currency)
        # an entry computed from an older snapshot is never served
        if cached is None or cached.version != version:
            return None
        return cached

    def put(self, scope_id: Hashable, currency: str, plan: CachedPlan) -> None:
        with self._lock:
            self._plans.setdefault(scope_id, {})[currency] = plan

    def invalidate(self, scope_id: Hashable) -> bool:
        with self._lock:
            return self._plans.pop(scope_id, None) is not None

    def cached_scopes(self) -> list[Hashable]:
        with self._lock:
            return list(self._plans)

    def clear(self) -> None:
        with self._lock:
            self._plans.clear()
