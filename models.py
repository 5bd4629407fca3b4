from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional


class EventKind(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    RECURRING_CHARGE = "recurring_charge"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"


class EntryKind(str, Enum):
    INITIAL = "initial"
    RECURRING = "recurring"


class EntryStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REVERSED = "reversed"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AffiliateRef:
    """
    one ancestor in the referral chain.
    depth 1 is the direct referrer of the paying customer.
    """
    affiliate_id: str
    depth: int


@dataclass(frozen=True)
class BillingEvent:
    event_id: str
    kind: EventKind
    subscription_id: str
    base_amount: int  # minor units
    occurred_at: datetime
    affiliate_id: Optional[str] = None
    billing_period_start: Optional[int] = None  # epoch seconds
    event_type: str = ""


@dataclass(frozen=True)
class CommissionEntry:
    """
    one affiliate's commission for one billing event.
    (event_id, affiliate_id) is unique across the ledger.
    """
    affiliate_id: str
    subscription_id: str
    event_id: str
    depth: int
    kind: EntryKind
    amount: int
    base_amount: int
    created_at: datetime
    status: EntryStatus = EntryStatus.PENDING
    billing_period_start: Optional[int] = None

    @property
    def key(self):
        return (self.event_id, self.affiliate_id)


@dataclass(frozen=True)
class AffiliateBalance:
    affiliate_id: str
    pending_balance: int = 0
    lifetime_earned: int = 0


@dataclass(frozen=True)
class PayoutInstruction:
    affiliate_id: str
    amount: int
    triggered_by: str
    provider: str = field(default="stripe")


# ---------
# money helpers
# ---------

CENTS = Decimal("0.01")


def to_minor_units(amount) -> int:
    """
    convert a major-unit amount (Decimal, str or int) into integer cents.
    floats are rejected so config values never pick up binary drift.
    """
    if isinstance(amount, float):
        raise TypeError("use Decimal or str for money, not float")
    value = Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)
    return int(value * 100)


def format_minor_units(amount: int) -> str:
    """render cents as a major-unit string, e.g. 800 -> '8.00'."""
    return f"{(Decimal(amount) / 100):.2f}"
