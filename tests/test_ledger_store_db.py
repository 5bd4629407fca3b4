import os
import uuid
from datetime import datetime, timezone

import pytest

from errors import BalanceInvariantError, ReferralError
from models import AffiliateRef, CommissionEntry, EntryKind, EntryStatus, SubscriptionStatus

DSN = os.environ.get("AFFILIATE_TEST_DATABASE_DSN")

pytestmark = pytest.mark.skipif(not DSN, reason="AFFILIATE_TEST_DATABASE_DSN not set")


@pytest.fixture
def store():
    from ledger_store_db import PostgresLedgerStore

    s = PostgresLedgerStore(DSN)
    s.create_schema()
    return s


@pytest.fixture
def resolver(store):
    from referral_db import PostgresHierarchyResolver

    return PostgresHierarchyResolver(DSN)


def _uid(prefix):
    """unique ids so tests don't trip over each other's rows."""
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


def _make_entry(affiliate_id, event_id, amount=800):
    return CommissionEntry(
        affiliate_id=affiliate_id,
        subscription_id="S1",
        event_id=event_id,
        depth=1,
        kind=EntryKind.INITIAL,
        amount=amount,
        base_amount=4900,
        created_at=datetime.now(timezone.utc),
        billing_period_start=1735689600,
    )


def test_commit_entry_is_idempotent(store):
    affiliate = _uid("A")
    event = _uid("ev")

    balance = store.commit_entry(_make_entry(affiliate, event))
    assert balance.pending_balance == 800

    assert store.commit_entry(_make_entry(affiliate, event)) is None
    assert store.get_balance(affiliate).pending_balance == 800
    assert len(store.list_entries(affiliate)) == 1


def test_mark_paid_out(store):
    affiliate = _uid("A")
    store.commit_entry(_make_entry(affiliate, _uid("ev"), amount=3000))
    store.commit_entry(_make_entry(affiliate, _uid("ev"), amount=2200))

    balance = store.mark_paid_out(affiliate, 5200)

    assert balance.pending_balance == 0
    assert balance.lifetime_earned == 5200
    assert {e.status for e in store.list_entries(affiliate)} == {EntryStatus.PAID}

    with pytest.raises(BalanceInvariantError):
        store.mark_paid_out(affiliate, 1)


def test_subscription_state_and_suppression(store):
    sub = _uid("S")
    event = _uid("ev")

    assert store.get_subscription_status(sub) is None
    assert store.ensure_subscription(sub) is True
    assert store.ensure_subscription(sub) is False

    store.set_accrual_suspended(sub, True)
    assert store.get_subscription_status(sub) is SubscriptionStatus.CANCELLED

    store.suppress_event(sub, event)
    assert store.is_event_suppressed(event) is True
    assert store.is_event_suppressed(_uid("ev")) is False


def test_resolver_chain_and_rules(resolver):
    a, b, c = _uid("A"), _uid("B"), _uid("C")
    resolver.register(a, b)
    resolver.register(b, c)

    assert resolver.resolve(a) == [AffiliateRef(a, 1), AffiliateRef(b, 2), AffiliateRef(c, 3)]
    assert resolver.resolve(_uid("nobody")) == []

    with pytest.raises(ReferralError):
        resolver.register(a, c)

    with pytest.raises(ReferralError):
        resolver.register(c, a)
