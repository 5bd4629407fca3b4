from datetime import datetime, timezone

from commission_engine import compute_commissions
from commission_schedule import build_schedule
from models import AffiliateRef, BillingEvent, EntryKind, EntryStatus, EventKind

OCCURRED_AT = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _make_event(kind=EventKind.SUBSCRIPTION_CREATED, event_id="ev_1", base_amount=4900):
    return BillingEvent(
        event_id=event_id,
        kind=kind,
        subscription_id="S1",
        base_amount=base_amount,
        occurred_at=OCCURRED_AT,
        affiliate_id="A",
        billing_period_start=1735689600,
        event_type="subscription_created",
    )


def _full_chain():
    return [AffiliateRef(f"L{depth}", depth) for depth in range(1, 9)]


def test_three_level_chain_on_creation():
    """
    S1 created, chain A(1) B(2) C(3) -> 8.00 / 4.00 / 2.00, all initial.
    """
    chain = [AffiliateRef("A", 1), AffiliateRef("B", 2), AffiliateRef("C", 3)]
    entries = compute_commissions(_make_event(), chain)

    assert [(e.affiliate_id, e.depth, e.amount) for e in entries] == [
        ("A", 1, 800),
        ("B", 2, 400),
        ("C", 3, 200),
    ]
    for e in entries:
        assert e.kind is EntryKind.INITIAL
        assert e.status is EntryStatus.PENDING
        assert e.event_id == "ev_1"
        assert e.subscription_id == "S1"
        assert e.base_amount == 4900
        assert e.billing_period_start == 1735689600
        assert e.created_at == OCCURRED_AT


def test_full_chain_matches_schedule():
    entries = compute_commissions(_make_event(), _full_chain())

    assert len(entries) == 8
    assert [e.amount for e in entries] == [800, 400, 200, 100, 100, 100, 100, 100]
    assert sum(e.amount for e in entries) == 1900


def test_recurring_charge_produces_recurring_entries():
    entries = compute_commissions(_make_event(kind=EventKind.RECURRING_CHARGE), _full_chain())
    assert {e.kind for e in entries} == {EntryKind.RECURRING}


def test_cancel_and_reactivate_produce_nothing():
    chain = _full_chain()
    assert compute_commissions(_make_event(kind=EventKind.SUBSCRIPTION_CANCELLED), chain) == []
    assert compute_commissions(_make_event(kind=EventKind.SUBSCRIPTION_REACTIVATED), chain) == []


def test_empty_chain():
    assert compute_commissions(_make_event(), []) == []


def test_bad_depths_are_skipped_not_fatal():
    """
    one malformed ancestor must not block the rest of the chain.
    """
    chain = [
        AffiliateRef("A", 1),
        AffiliateRef("X", 0),
        AffiliateRef("B", 2),
        AffiliateRef("Y", 9),
        AffiliateRef("C", 3),
    ]
    entries = compute_commissions(_make_event(), chain)

    assert [e.affiliate_id for e in entries] == ["A", "B", "C"]


def test_chain_order_is_preserved():
    chain = [AffiliateRef("C", 3), AffiliateRef("A", 1), AffiliateRef("B", 2)]
    entries = compute_commissions(_make_event(), chain)
    assert [e.affiliate_id for e in entries] == ["C", "A", "B"]


def test_base_amount_never_scales_commission():
    small = compute_commissions(_make_event(base_amount=100), _full_chain())
    large = compute_commissions(_make_event(base_amount=10_000_000), _full_chain())
    assert [e.amount for e in small] == [e.amount for e in large]


def test_repeated_affiliate_gets_one_entry():
    chain = [AffiliateRef("A", 1), AffiliateRef("A", 2)]
    entries = compute_commissions(_make_event(), chain)
    assert len(entries) == 1
    assert entries[0].amount == 800


def test_repeated_affiliate_paid_at_shallowest_depth():
    chain = [AffiliateRef("A", 2), AffiliateRef("B", 3), AffiliateRef("A", 1)]
    entries = compute_commissions(_make_event(), chain)
    assert [(e.affiliate_id, e.depth, e.amount) for e in entries] == [("A", 1, 800), ("B", 3, 200)]


def test_custom_schedule():
    schedule = build_schedule([500, 0, 0, 0, 0, 0, 0, 0])
    entries = compute_commissions(_make_event(), [AffiliateRef("A", 1), AffiliateRef("B", 2)], schedule)
    assert [(e.affiliate_id, e.amount) for e in entries] == [("A", 500), ("B", 0)]
