from typing import List, Mapping, Sequence

import structlog

from commission_schedule import DEFAULT_SCHEDULE, amount_for
from models import (
    AffiliateRef,
    BillingEvent,
    CommissionEntry,
    EntryKind,
    EntryStatus,
    EventKind,
)

logger = structlog.get_logger(__name__)

ENTRY_KIND_BY_EVENT = {
    EventKind.SUBSCRIPTION_CREATED: EntryKind.INITIAL,
    EventKind.RECURRING_CHARGE: EntryKind.RECURRING,
}


def compute_commissions(
    event: BillingEvent,
    chain: Sequence[AffiliateRef],
    schedule: Mapping[int, int] = DEFAULT_SCHEDULE,
) -> List[CommissionEntry]:
    """
    turn one billing event + its ancestor chain into commission entries.

    - one entry per ancestor whose depth has a scheduled amount, in chain order
    - ancestors with an unknown depth are dropped, the rest still get paid
    - cancel/reactivate events never produce entries
    - base_amount is copied for audit only; amounts are fixed per level

    no I/O happens here; everything needed comes in as arguments.
    """
    entry_kind = ENTRY_KIND_BY_EVENT.get(event.kind)
    if entry_kind is None:
        return []

    # one entry per (event, affiliate); a repeated affiliate is paid at its shallowest depth
    payable = {}
    for ref in chain:
        amount = amount_for(ref.depth, schedule)
        if amount is None:
            logger.warning(
                "commission_depth_skipped",
                event_id=event.event_id,
                affiliate_id=ref.affiliate_id,
                depth=ref.depth,
            )
            continue
        current = payable.get(ref.affiliate_id)
        if current is None or ref.depth < current[0].depth:
            payable[ref.affiliate_id] = (ref, amount)

    entries = []
    for ref, amount in payable.values():
        entries.append(
            CommissionEntry(
                affiliate_id=ref.affiliate_id,
                subscription_id=event.subscription_id,
                event_id=event.event_id,
                depth=ref.depth,
                kind=entry_kind,
                amount=amount,
                base_amount=event.base_amount,
                created_at=event.occurred_at,
                status=EntryStatus.PENDING,
                billing_period_start=event.billing_period_start,
            )
        )

    return entries

