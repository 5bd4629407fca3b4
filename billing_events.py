import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from errors import MalformedEventError
from models import BillingEvent, EventKind

# provider event_type -> what the dispatcher does with it
EVENT_KINDS = {
    "subscription_created": EventKind.SUBSCRIPTION_CREATED,
    "subscription_renewed": EventKind.RECURRING_CHARGE,
    "invoice_generated": EventKind.RECURRING_CHARGE,
    "subscription_cancelled": EventKind.SUBSCRIPTION_CANCELLED,
    "subscription_reactivated": EventKind.SUBSCRIPTION_REACTIVATED,
}


def classify(event_type: Optional[str]) -> Optional[EventKind]:
    """None means the event type is not one we act on."""
    if not event_type:
        return None
    return EVENT_KINDS.get(event_type)


def extract_affiliate_id(customer: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    affiliate identity lives on the customer record, either as the
    cf_affiliate_id custom field or under meta_data.affiliate_id.
    """
    if not isinstance(customer, dict):
        return None

    affiliate_id = customer.get("cf_affiliate_id")
    if not affiliate_id:
        meta = customer.get("meta_data")
        if isinstance(meta, dict):
            affiliate_id = meta.get("affiliate_id")

    if affiliate_id is None:
        return None
    affiliate_id = str(affiliate_id).strip()
    return affiliate_id or None


def _minor_units(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise MalformedEventError(f"{field} must be an integer amount in minor units")
    try:
        amount = int(value)
    except ValueError:
        raise MalformedEventError(f"{field} must be an integer amount in minor units")
    if amount < 0:
        raise MalformedEventError(f"{field} cannot be negative")
    return amount


def _epoch(value, field: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedEventError(f"{field} must be epoch seconds")
    if isinstance(value, float) and not math.isfinite(value):
        raise MalformedEventError(f"{field} must be a finite number")
    seconds = int(value)
    try:
        datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise MalformedEventError(f"{field} is out of range")
    return seconds


def parse_billing_event(payload: Dict[str, Any], kind: EventKind) -> BillingEvent:
    """
    build a BillingEvent from a raw webhook body.

    payload shape:
        {
          "id": "ev_...",               # provider event id (optional)
          "event_type": "...",
          "occurred_at": 1700000000,    # optional
          "content": {
            "subscription": {"id", "plan_amount" | "plan_unit_price", "current_term_start"},
            "customer": {"cf_affiliate_id" | "meta_data": {"affiliate_id"}},
            "invoice": {...},
          },
        }

    raises MalformedEventError when required fields are missing.
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("payload must be a JSON object")

    event_type = payload.get("event_type") or ""
    content = payload.get("content")
    if not isinstance(content, dict):
        raise MalformedEventError("missing content")

    subscription = content.get("subscription")
    if not isinstance(subscription, dict):
        raise MalformedEventError("missing content.subscription")

    subscription_id = subscription.get("id")
    if not subscription_id:
        raise MalformedEventError("missing content.subscription.id")
    subscription_id = str(subscription_id)

    raw_amount = subscription.get("plan_amount")
    if raw_amount is None:
        raw_amount = subscription.get("plan_unit_price")

    # amount only matters when we accrue; cancel/reactivate can omit it
    if raw_amount is None:
        if kind in (EventKind.SUBSCRIPTION_CREATED, EventKind.RECURRING_CHARGE):
            raise MalformedEventError("missing plan_amount / plan_unit_price")
        base_amount = 0
    else:
        base_amount = _minor_units(raw_amount, "plan_amount")

    term_start = _epoch(subscription.get("current_term_start"), "current_term_start")
    occurred = _epoch(payload.get("occurred_at"), "occurred_at")
    if occurred is None:
        occurred = term_start
    occurred_at = (
        datetime.fromtimestamp(occurred, tz=timezone.utc)
        if occurred is not None
        else datetime.now(timezone.utc)
    )

    # the provider id is the idempotency namespace. without one, fall back
    # to something stable across redeliveries of the same billing period.
    event_id = payload.get("id")
    if not event_id:
        event_id = f"{event_type}:{subscription_id}:{term_start if term_start is not None else ''}"

    return BillingEvent(
        event_id=str(event_id),
        kind=kind,
        subscription_id=subscription_id,
        base_amount=base_amount,
        occurred_at=occurred_at,
        affiliate_id=extract_affiliate_id(content.get("customer")),
        billing_period_start=term_start,
        event_type=event_type,
    )
