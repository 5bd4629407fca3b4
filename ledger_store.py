import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

from errors import BalanceInvariantError
from models import (
    AffiliateBalance,
    CommissionEntry,
    EntryStatus,
    SubscriptionStatus,
)


class RecordResult(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"


class Admission(str, Enum):
    ADMITTED = "admitted"
    ALREADY_PROCESSED = "already_processed"


class LedgerStore(ABC):
    """
    owns commission entries, affiliate balances and subscription accrual state.

    rules every implementation keeps:
      - (event_id, affiliate_id) is inserted at most once, via a conditional
        insert rather than read-then-write
      - balance mutation is serialized per affiliate
      - pending_balance never goes negative; lifetime_earned never decreases
    """

    @abstractmethod
    def record_entry(self, entry: CommissionEntry) -> RecordResult:
        ...

    @abstractmethod
    def increment_balance(self, affiliate_id: str, amount: int) -> AffiliateBalance:
        ...

    @abstractmethod
    def commit_entry(self, entry: CommissionEntry) -> Optional[AffiliateBalance]:
        """
        record the entry and credit the affiliate as one unit.
        returns the post-update balance, or None for a duplicate.
        """

    @abstractmethod
    def get_balance(self, affiliate_id: str) -> AffiliateBalance:
        ...

    @abstractmethod
    def mark_paid_out(self, affiliate_id: str, amount: int) -> AffiliateBalance:
        ...

    @abstractmethod
    def set_accrual_suspended(self, subscription_id: str, suspended: bool) -> None:
        ...

    @abstractmethod
    def ensure_subscription(self, subscription_id: str) -> bool:
        """register an unknown subscription as active; True if it was new."""

    @abstractmethod
    def get_subscription_status(self, subscription_id: str) -> Optional[SubscriptionStatus]:
        ...

    @abstractmethod
    def suppress_event(self, subscription_id: str, event_id: str) -> None:
        """remember an accrual event that arrived while the subscription was cancelled."""

    @abstractmethod
    def is_event_suppressed(self, event_id: str) -> bool:
        ...

    @abstractmethod
    def list_entries(self, affiliate_id: str, limit: int = 50) -> List[CommissionEntry]:
        ...


class IdempotencyGuard:
    """
    check-and-record for (event_id, affiliate_id) pairs.

    the dispatcher does not need this: commit_entry already performs the
    same check atomically at insert time. this is for callers that want to
    claim a pair before doing their own work with it.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    def admit(self, entry: CommissionEntry) -> Admission:
        result = self.store.record_entry(entry)
        if result is RecordResult.DUPLICATE:
            return Admission.ALREADY_PROCESSED
        return Admission.ADMITTED


def check_payout_amount(balance: AffiliateBalance, amount: int) -> None:
    if amount <= 0:
        raise BalanceInvariantError(
            f"payout amount must be positive, got {amount} for {balance.affiliate_id}"
        )
    if amount > balance.pending_balance:
        raise BalanceInvariantError(
            f"payout of {amount} exceeds pending balance {balance.pending_balance} "
            f"for affiliate {balance.affiliate_id}"
        )


class InMemoryLedgerStore(LedgerStore):
    """
    dict-backed ledger for tests and single-process deployments.

    _lock guards the entry index and subscription table.
    per-affiliate locks serialize balance read-modify-write.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._affiliate_locks: Dict[str, threading.Lock] = {}
        self._entries: Dict[Tuple[str, str], CommissionEntry] = {}
        self._journal: List[Tuple[str, str]] = []  # insertion order
        self._balances: Dict[str, AffiliateBalance] = {}
        self._subscriptions: Dict[str, SubscriptionStatus] = {}
        self._suppressed: Dict[str, str] = {}  # event_id -> subscription_id

    def _affiliate_lock(self, affiliate_id: str) -> threading.Lock:
        with self._lock:
            lock = self._affiliate_locks.get(affiliate_id)
            if lock is None:
                lock = threading.Lock()
                self._affiliate_locks[affiliate_id] = lock
            return lock

    # ---------
    # entries
    # ---------

    def record_entry(self, entry: CommissionEntry) -> RecordResult:
        with self._lock:
            if entry.key in self._entries:
                return RecordResult.DUPLICATE
            self._entries[entry.key] = entry
            self._journal.append(entry.key)
            return RecordResult.CREATED

    def commit_entry(self, entry: CommissionEntry) -> Optional[AffiliateBalance]:
        # holding the affiliate lock across both steps means no reader sees
        # the entry without its credit
        with self._affiliate_lock(entry.affiliate_id):
            if self.record_entry(entry) is RecordResult.DUPLICATE:
                return None
            return self._apply_increment(entry.affiliate_id, entry.amount)

    def list_entries(self, affiliate_id: str, limit: int = 50) -> List[CommissionEntry]:
        with self._lock:
            rows = [
                self._entries[key]
                for key in reversed(self._journal)
                if key[1] == affiliate_id
            ]
        return rows[:limit]

    # ---------
    # balances
    # ---------

    def _apply_increment(self, affiliate_id: str, amount: int) -> AffiliateBalance:
        # caller holds the affiliate lock
        current = self._balances.get(affiliate_id) or AffiliateBalance(affiliate_id)
        updated = AffiliateBalance(
            affiliate_id=affiliate_id,
            pending_balance=current.pending_balance + amount,
            lifetime_earned=current.lifetime_earned + amount,
        )
        self._balances[affiliate_id] = updated
        return updated

    def increment_balance(self, affiliate_id: str, amount: int) -> AffiliateBalance:
        with self._affiliate_lock(affiliate_id):
            return self._apply_increment(affiliate_id, amount)

    def get_balance(self, affiliate_id: str) -> AffiliateBalance:
        with self._affiliate_lock(affiliate_id):
            balance = self._balances.get(affiliate_id)
            if balance is None:
                balance = AffiliateBalance(affiliate_id)
                self._balances[affiliate_id] = balance
            return balance

    def mark_paid_out(self, affiliate_id: str, amount: int) -> AffiliateBalance:
        with self._affiliate_lock(affiliate_id):
            current = self._balances.get(affiliate_id) or AffiliateBalance(affiliate_id)
            check_payout_amount(current, amount)

            updated = replace(current, pending_balance=current.pending_balance - amount)
            self._balances[affiliate_id] = updated
            self._settle_entries(affiliate_id, amount)
            return updated

    def _settle_entries(self, affiliate_id: str, amount: int) -> None:
        """flip the oldest pending entries to PAID while they fit in `amount`."""
        remaining = amount
        with self._lock:
            for key in self._journal:
                if key[1] != affiliate_id:
                    continue
                entry = self._entries[key]
                if entry.status is not EntryStatus.PENDING:
                    continue
                if entry.amount > remaining:
                    break
                self._entries[key] = replace(entry, status=EntryStatus.PAID)
                remaining -= entry.amount

    # ---------
    # subscriptions
    # ---------

    def ensure_subscription(self, subscription_id: str) -> bool:
        with self._lock:
            if subscription_id in self._subscriptions:
                return False
            self._subscriptions[subscription_id] = SubscriptionStatus.ACTIVE
            return True

    def set_accrual_suspended(self, subscription_id: str, suspended: bool) -> None:
        status = SubscriptionStatus.CANCELLED if suspended else SubscriptionStatus.ACTIVE
        with self._lock:
            self._subscriptions[subscription_id] = status

    def get_subscription_status(self, subscription_id: str) -> Optional[SubscriptionStatus]:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def suppress_event(self, subscription_id: str, event_id: str) -> None:
        with self._lock:
            self._suppressed.setdefault(event_id, subscription_id)

    def is_event_suppressed(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._suppressed
