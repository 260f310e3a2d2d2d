from __future__ import annotations

from typing import Hashable

from settleup.db.models import SettlementTransaction


class AuthorizationError(PermissionError):
    pass


def is_settlement_party(participant: Hashable, transaction: SettlementTransaction) -> bool:
    return participant in (transaction.from_participant, transaction.to_participant)


def assert_settlement_party(participant: Hashable, transaction: SettlementTransaction) -> None:
    if not is_settlement_party(participant, transaction):
        raise AuthorizationError("Only the payer or the payee can record a payment on this settlement.")
