import threading
from abc import ABC, abstractmethod
from typing import List, Optional

import structlog

from ledger_store import LedgerStore
from models import AffiliateBalance, PayoutInstruction, format_minor_units

logger = structlog.get_logger(__name__)


def payout_for_balance(
    balance: AffiliateBalance,
    threshold: int,
    triggered_by: str,
    provider: str = "stripe",
) -> Optional[PayoutInstruction]:
    """
    sweep rule: once pending_balance reaches the threshold, pay out
    all of it, not just the increment that tipped it over.
    """
    pending = balance.pending_balance
    if pending <= 0 or pending < threshold:
        return None

    return PayoutInstruction(
        affiliate_id=balance.affiliate_id,
        amount=pending,
        triggered_by=triggered_by,
        provider=provider,
    )


def evaluate_payout(
    store: LedgerStore,
    affiliate_id: str,
    threshold: int,
    triggered_by: str,
    provider: str = "stripe",
) -> Optional[PayoutInstruction]:
    """read the balance as it is right now and apply the sweep rule."""
    balance = store.get_balance(affiliate_id)
    return payout_for_balance(balance, threshold, triggered_by, provider)


class PayoutExecutor(ABC):
    """
    hands a payout instruction to whatever moves the money.
    the executor owns disbursement idempotency and reports success back
    through LedgerStore.mark_paid_out.
    """

    @abstractmethod
    def submit(self, instruction: PayoutInstruction) -> None:
        ...


class RecordingPayoutExecutor(PayoutExecutor):
    """
    queues instructions for an external disburser to drain.
    no funds move here.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: List[PayoutInstruction] = []

    def submit(self, instruction: PayoutInstruction) -> None:
        with self._lock:
            self._pending.append(instruction)
        logger.info(
            "payout_queued",
            affiliate_id=instruction.affiliate_id,
            amount=format_minor_units(instruction.amount),
            provider=instruction.provider,
            triggered_by=instruction.triggered_by,
        )

    def drain(self) -> List[PayoutInstruction]:
        with self._lock:
            drained, self._pending = self._pending, []
        return drained

    def pending(self) -> List[PayoutInstruction]:
        with self._lock:
            return list(self._pending)
