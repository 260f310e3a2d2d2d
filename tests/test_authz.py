from datetime import datetime, timezone

import pytest

from settleup.db.models import SettlementStatus, SettlementTransaction
from settleup.services.authz import AuthorizationError, assert_settlement_party, is_settlement_party
from settleup.services.money import Money

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_transaction() -> SettlementTransaction:
    return SettlementTransaction(
        id="tx-1",
        scope_id="trip",
        from_participant=10,
        to_participant=20,
        amount=Money(500, "USD"),
        paid=Money(0, "USD"),
        status=SettlementStatus.PENDING,
        created_at=NOW,
        updated_at=NOW,
    )


def test_is_settlement_party():
    transaction = make_transaction()
    assert is_settlement_party(10, transaction) is True
    assert is_settlement_party(20, transaction) is True
    assert is_settlement_party(30, transaction) is False


def test_assert_settlement_party():
    assert_settlement_party(20, make_transaction())


def test_assert_settlement_party_denied():
    with pytest.raises(AuthorizationError):
        assert_settlement_party(99, make_transaction())
